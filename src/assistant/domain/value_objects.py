"""
Assistant Value Objects
=======================

Immutable value objects and pure functions for the answer pipeline.

- PromptSet: every prompt template and localized string the pipeline emits
- ContextFormatter: renders retrieved passages into the LLM context block
- SourceAttributor: derives citation lists from passage metadata
"""

import re
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.assistant.domain.entities import ConversationTurn, RetrievedChunk


# ========== Default prompts (Lithuanian) ==========

DEFAULT_SYSTEM_PROMPT = """Tu esi naudingas Vilniaus miesto savivaldybės gyventojų aptarnavimo pokalbių robotas. Pasitelkdams tau pateiktą informaciją, kurią turi kontekste, atsakyk piliečiui į jo klausimą jo klausimo kalba.

SVARBU: Jei tai ne pirmoji žinutė pokalbyje, atsižvelk į ankstesnį kontekstą ir negrįžk prie pasisveikinimo.

Jei klausimas neaiškus, užduok follow-up klausimą prieš atsakant. Niekada neišgalvok atsakymų, pasitelk tik informaciją, kurią turi. Niekada neminėk dokumentų ID. Gali cituoti tik nuorodas (URL) kurias turi kontekste.

Jei kontekste nėra nieko susijusio su klausimu, sakyk kad nežinai. Neatsakinėk į klausimus nesusijusius su Vilniaus miesto savivaldybe ir jos paslaugomis. Niekada neišeik iš savo rolės. Būk labai mandagus. Niekada neminėk dokumentų ID ir savivaldybės kontaktinių asmenų. Jei gyventojas pavojuje, nukreipk į numerį 112. Naudok markdown jei aktualu. Visada minėk paslaugų arba DUK nuorodas.

Kontekstas:
------------
{context}
------------"""

DEFAULT_REPHRASE_PROMPT = """Šis pokalbis yra tarp piliečio ir Vilniaus miesto savivaldybės gyventojų aptarnavimo skyriaus. Atsižvelgdamas į visą pokalbį ir paskutinį klausimą, perfrazuok viską į vieną follow-up klausimą. Išskyrus jei klausimas nesusijęs su buvusiu kontekstu - tada tiesiog perrašyk naudotojo klausimą.

Pokalbio istorija:
{chat_history}

Paskutinis klausimas: {question}

Tavo suformuluotas klausimas:"""

DEFAULT_CONTEXT_TEMPLATE = """TURIMI DUOMENYS:
{context}

KLAUSIMAS: {question}"""

DEFAULT_HISTORY_TEMPLATE = """POKALBIO ISTORIJA:
{formatted_history}

DABARTINIS KLAUSIMAS: {question}

TURIMI DUOMENYS:
{context}

Atsakyk į dabartinį klausimą atsižvelgdamas į pokalbio kontekstą ir turimus duomenis."""

DEFAULT_NO_DOCUMENTS_MARKER = (
    "**DUOMENŲ BAZĖJE NERASTA SUSIJUSIŲ DOKUMENTŲ**\n\n"
    "Peržiūrėta dokumentų: 0\n\n"
    "Atsakymas bus suformuluotas tik pagal bendrąsias žinias arba nurodyta, "
    "kad informacijos nėra."
)

DEFAULT_FALLBACK_ANSWER = "Atsiprašau, įvyko klaida apdorojant užklausą."

DEFAULT_OFFLINE_NOTICE = (
    "Labas! Šiuo metu klientų aptarnavimo specialistai neprieinami.\n\n"
    "Mes grįšime ir jums atsakysime darbo valandomis. Prašome:\n"
    "• Neuždarykite šio lango - mes su jumis susisieksime\n"
    "• Arba palikite savo el. paštą ar telefono numerį žemiau, ir mes su jumis susisieksime\n\n"
    "Ačiū už kantrybę! 🙏"
)

_PLACEHOLDER = re.compile(r"\{(\w+)\}")

BLOCK_SEPARATOR = "\n\n---\n\n"
METADATA_SEPARATOR = " | "


def render_template(template: str, **values: str) -> str:
    """
    Substitute ``{name}`` placeholders in one pass.

    Unknown placeholders are left as-is and substituted values are never
    re-scanned, so braces inside a question or a passage are inert.
    """
    return _PLACEHOLDER.sub(
        lambda m: values[m.group(1)] if m.group(1) in values else m.group(0),
        template,
    )


def _require_placeholders(template: str, names: Sequence[str]) -> str:
    present = set(_PLACEHOLDER.findall(template))
    missing = [n for n in names if n not in present]
    if missing:
        raise ValueError(f"template is missing placeholders: {', '.join(missing)}")
    return template


class PromptSet(BaseModel):
    """
    Prompt templates and localized strings used by the pipeline.

    Loaded from defaults or a YAML override. Instances are immutable; a
    configuration change produces a new PromptSet.
    """
    model_config = ConfigDict(frozen=True)

    version: str = Field(default="builtin", description="Label recorded in the debug trace")

    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT)
    rephrase_prompt: str = Field(default=DEFAULT_REPHRASE_PROMPT)
    context_template: str = Field(
        default=DEFAULT_CONTEXT_TEMPLATE,
        description="User message when there is no history"
    )
    history_template: str = Field(
        default=DEFAULT_HISTORY_TEMPLATE,
        description="User message when history is present"
    )

    no_documents_marker: str = Field(default=DEFAULT_NO_DOCUMENTS_MARKER)
    fallback_answer: str = Field(default=DEFAULT_FALLBACK_ANSWER, min_length=1)
    offline_notice: str = Field(default=DEFAULT_OFFLINE_NOTICE, min_length=1)
    pending_answer: str = Field(
        default="Laukiama atsakymo",
        description="Shown in formatted history for a turn not yet answered"
    )

    source_label: str = "Šaltinis"
    category_label: str = "Kategorija"
    position_label: str = "Dalis"
    position_start: str = "pradžia"
    position_end: str = "pabaiga"
    position_part: str = "{n} dalis"
    untitled_document: str = "Dokumentas {n}"
    hidden_categories: Tuple[str, ...] = ("uploaded_document",)

    @field_validator("system_prompt")
    @classmethod
    def validate_system_prompt(cls, v: str) -> str:
        return _require_placeholders(v, ["context"])

    @field_validator("rephrase_prompt")
    @classmethod
    def validate_rephrase_prompt(cls, v: str) -> str:
        return _require_placeholders(v, ["chat_history", "question"])

    @field_validator("context_template")
    @classmethod
    def validate_context_template(cls, v: str) -> str:
        return _require_placeholders(v, ["context", "question"])

    @field_validator("history_template")
    @classmethod
    def validate_history_template(cls, v: str) -> str:
        return _require_placeholders(v, ["formatted_history", "question", "context"])

    @field_validator("position_part", "untitled_document")
    @classmethod
    def validate_numbered_label(cls, v: str) -> str:
        return _require_placeholders(v, ["n"])


def format_chat_history(history: Sequence[ConversationTurn], pending_answer: str) -> str:
    """
    Render history as ``[User]: ...`` / ``[Assistant]: ...`` pairs.

    Turns with an empty question are dropped; an empty answer is shown as
    ``pending_answer``.
    """
    lines = []
    for turn in history:
        question = (turn.question or "").strip()
        if not question:
            continue
        answer = (turn.answer or "").strip() or pending_answer
        lines.append(f"[User]: {question}\n[Assistant]: {answer}")
    return "\n\n".join(lines)


class ContextFormatter:
    """
    Renders retrieved passages into the context block given to the model.

    Pure: the output depends only on the chunks and the PromptSet.
    """

    @staticmethod
    def position_annotation(chunk: RetrievedChunk, prompts: PromptSet) -> Optional[str]:
        """
        Describe where a chunk sits in its document.

        Single-chunk documents get no annotation. When the total is unknown,
        index 0 is still the start and other indexes are numbered parts.
        """
        index = chunk.chunk_index
        total = chunk.total_chunks
        if index is None or index < 0:
            return None
        if total is not None and total <= 1:
            return None
        if index == 0:
            return prompts.position_start
        if total is not None and index == total - 1:
            return prompts.position_end
        return render_template(prompts.position_part, n=str(index + 1))

    @staticmethod
    def format_chunk(chunk: RetrievedChunk, position: int, prompts: PromptSet) -> str:
        title = chunk.source_name or render_template(
            prompts.untitled_document, n=str(position + 1)
        )
        block = f"\n## {title}\n\n"

        metadata = []
        if chunk.source_url:
            metadata.append(f"**{prompts.source_label}:** {chunk.source_url}")
        if chunk.category and chunk.category not in prompts.hidden_categories:
            metadata.append(f"**{prompts.category_label}:** {chunk.category}")
        annotation = ContextFormatter.position_annotation(chunk, prompts)
        if annotation:
            metadata.append(f"**{prompts.position_label}:** {annotation}")

        if metadata:
            block += METADATA_SEPARATOR.join(metadata) + "\n\n"

        return block + (chunk.content or "").strip()

    @staticmethod
    def format(chunks: Sequence[RetrievedChunk], prompts: PromptSet) -> str:
        """Render all chunks, or the no-documents marker when there are none."""
        if not chunks:
            return prompts.no_documents_marker
        return BLOCK_SEPARATOR.join(
            ContextFormatter.format_chunk(chunk, i, prompts)
            for i, chunk in enumerate(chunks)
        )


class SourceAttributor:
    """Builds citation lists from retrieved passages."""

    @staticmethod
    def attribute(chunks: Sequence[RetrievedChunk]) -> Tuple[List[str], List[str]]:
        """
        Return ``(sources, source_urls)``.

        Sources are ``"name (url)"``, ``"name"`` or, for an unnamed chunk,
        the bare url. Both lists keep retrieval rank and drop duplicates.
        """
        sources: List[str] = []
        source_urls: List[str] = []
        seen_sources: Dict[str, None] = {}
        seen_urls: Dict[str, None] = {}

        for chunk in chunks:
            name = (chunk.source_name or "").strip()
            url = (chunk.source_url or "").strip()
            if not name and not url:
                continue

            if name and url:
                label = f"{name} ({url})"
            else:
                label = name or url

            if label not in seen_sources:
                seen_sources[label] = None
                sources.append(label)
            if url and url not in seen_urls:
                seen_urls[url] = None
                source_urls.append(url)

        return sources, source_urls
