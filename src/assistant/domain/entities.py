"""
Assistant Domain Entities
=========================

Domain entities for the answer pipeline.

Contains pure Python objects describing one generation run: the history
snapshot it was given, the passages it retrieved, the stage records it
produced and the final result.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from src.config import ResultOutcome, StageOutcome
from src.core import ValidationException


class PipelineState(str, Enum):
    """States of a single pipeline run. Every run ends in DONE."""
    STARTED = "started"
    REPHRASING = "rephrasing"
    RETRIEVING = "retrieving"
    FORMATTING = "formatting"
    GENERATING = "generating"
    ATTRIBUTING = "attributing"
    DONE = "done"


@dataclass(frozen=True)
class ConversationTurn:
    """One (question, answer) exchange. ``answer`` is empty while unanswered."""
    question: str
    answer: str = ""


History = Tuple[ConversationTurn, ...]


def freeze_history(turns: Optional[Sequence[Any]]) -> History:
    """
    Build an immutable history snapshot.

    Accepts ConversationTurn objects, (question, answer) pairs or dicts with
    ``question``/``answer`` keys. Order is preserved, most recent last.

    Raises:
        ValidationException: If a turn has none of these shapes
    """
    if not turns:
        return ()

    frozen = []
    for position, turn in enumerate(turns):
        if isinstance(turn, ConversationTurn):
            frozen.append(turn)
        elif isinstance(turn, dict):
            frozen.append(ConversationTurn(
                question=turn.get("question") or "",
                answer=turn.get("answer") or "",
            ))
        elif isinstance(turn, (list, tuple)) and 1 <= len(turn) <= 2 and all(
            item is None or isinstance(item, str) for item in turn
        ):
            question, answer = (list(turn) + [""])[:2]
            frozen.append(ConversationTurn(question=question or "", answer=answer or ""))
        else:
            raise ValidationException(
                "History turn must be a (question, answer) pair or a mapping",
                {"position": position, "type": type(turn).__name__}
            )
    return tuple(frozen)


@dataclass(frozen=True)
class RetrievedChunk:
    """A knowledge-base passage returned for one query."""
    content: str
    source_name: Optional[str]
    similarity: float
    source_url: Optional[str] = None
    chunk_index: Optional[int] = None
    total_chunks: Optional[int] = None
    category: Optional[str] = None


@dataclass
class StageRecord:
    """
    Debug record for one attempted pipeline stage.

    Field names are read by the operator debug viewer; add fields rather
    than renaming them.
    """
    stage: str
    action: str
    outcome: str = StageOutcome.SUCCESS
    inputs: Dict[str, Any] = field(default_factory=dict)
    model: Optional[str] = None
    temperature: Optional[float] = None
    response_length: Optional[int] = None
    error: Optional[str] = None
    reason: Optional[str] = None
    duration_ms: int = 0
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return self.outcome == StageOutcome.FAILED

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DebugTrace:
    """Ordered stage records for one pipeline run."""
    records: List[StageRecord] = field(default_factory=list)

    def add(self, record: StageRecord) -> StageRecord:
        self.records.append(record)
        return record

    def get(self, stage: str) -> Optional[StageRecord]:
        for record in self.records:
            if record.stage == stage:
                return record
        return None

    @property
    def stages(self) -> List[str]:
        return [r.stage for r in self.records]

    def to_list(self) -> List[Dict[str, Any]]:
        return [r.to_dict() for r in self.records]


@dataclass(frozen=True)
class RephraseResult:
    """Outcome of the rephrase stage."""
    query: str
    was_rephrased: bool
    action: str
    error: Optional[str] = None


@dataclass(frozen=True)
class GenerationOutcome:
    """Outcome of the generate stage. ``reason`` is set when it fell back."""
    answer: str
    succeeded: bool
    reason: Optional[str] = None
    error: Optional[str] = None
    model: Optional[str] = None


@dataclass
class GenerationResult:
    """
    Result of a full pipeline run.

    Always fully populated: a failed run still carries an answer (the
    fallback apology) and a complete debug trace.
    """
    answer: str
    sources: List[str]
    source_urls: List[str]
    contexts_used: int
    debug_trace: DebugTrace
    outcome: str = ResultOutcome.SUCCESS

    @property
    def is_degraded(self) -> bool:
        return self.outcome == ResultOutcome.DEGRADED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "answer": self.answer,
            "sources": list(self.sources),
            "source_urls": list(self.source_urls),
            "contexts_used": self.contexts_used,
            "outcome": self.outcome,
            "debug_trace": self.debug_trace.to_list(),
        }
