"""
Tests for the answer pipeline stages and orchestrator.

Organization
------------
- TestQueryRephraseService: skip rules, rewrite, failure fallback
- TestRetrievalService: hit mapping, failure isolation
- TestAnswerGenerationService: template choice, timeout and error fallbacks
- TestRAGPipeline: end-to-end runs over fake collaborators
"""

import asyncio

import pytest

from src.assistant.application import (
    AnswerGenerationService,
    PipelineConfig,
    QueryRephraseService,
    RetrievalService,
)
from src.assistant.domain import PromptSet, freeze_history
from src.core import LLMTimeoutException, ValidationException
from tests.fakes import FakeChatModel, FakeSearch, make_hit


HISTORY = freeze_history([("Kada dirba biblioteka?", "Biblioteka dirba I-V 10:00-19:00.")])


class TestQueryRephraseService:
    @pytest.mark.asyncio
    async def test_skipped_by_config(self, prompts: PromptSet) -> None:
        chat = FakeChatModel()
        config = PipelineConfig(skip_rephrasing=True)

        result, record = await QueryRephraseService(chat).rephrase("O šeštadienį?", HISTORY, prompts, config)

        assert result.query == "O šeštadienį?"
        assert result.was_rephrased is False
        assert record.action == "skipped_by_config"
        assert record.outcome == "skipped"
        assert chat.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("history_length", [0, 1, 2])
    async def test_skipped_below_min_history(self, prompts: PromptSet, history_length: int) -> None:
        chat = FakeChatModel()
        config = PipelineConfig(min_history_length=3)
        history = freeze_history([("K", "A")] * history_length)

        result, record = await QueryRephraseService(chat).rephrase("Klausimas", history, prompts, config)

        assert result.query == "Klausimas"
        assert result.was_rephrased is False
        assert record.reason == "skipped_no_history"
        assert chat.calls == []

    @pytest.mark.asyncio
    async def test_rewrites_with_history(self, prompts: PromptSet) -> None:
        chat = FakeChatModel({"rephrase": "  Kada biblioteka dirba šeštadienį?  "})
        config = PipelineConfig()

        result, record = await QueryRephraseService(chat).rephrase("O šeštadienį?", HISTORY, prompts, config)

        assert result.query == "Kada biblioteka dirba šeštadienį?"
        assert result.was_rephrased is True
        assert record.action == "rephrased"
        assert record.model == config.rephrasing_model
        assert record.temperature == config.rephrasing_temperature

        call = chat.calls_for("rephrase")[0]
        assert call["temperature"] == config.rephrasing_temperature
        prompt = call["messages"][0]["content"]
        assert "[User]: Kada dirba biblioteka?" in prompt
        assert "Paskutinis klausimas: O šeštadienį?" in prompt

    @pytest.mark.asyncio
    async def test_unchanged_rewrite_is_not_rephrased(self, prompts: PromptSet) -> None:
        chat = FakeChatModel({"rephrase": "O šeštadienį?"})

        result, _ = await QueryRephraseService(chat).rephrase("O šeštadienį?", HISTORY, prompts, PipelineConfig())

        assert result.was_rephrased is False

    @pytest.mark.asyncio
    async def test_failure_falls_back_to_question(self, prompts: PromptSet) -> None:
        chat = FakeChatModel({"rephrase": RuntimeError("rate limited")})

        result, record = await QueryRephraseService(chat).rephrase("O šeštadienį?", HISTORY, prompts, PipelineConfig())

        assert result.query == "O šeštadienį?"
        assert result.was_rephrased is False
        assert result.action == "failed"
        assert record.failed
        assert record.reason == "upstream_error"
        assert record.error == "rate limited"


class TestRetrievalService:
    def test_distance_maps_to_similarity(self) -> None:
        c = RetrievalService.to_chunk(
            make_hit("x", name="A", url="https://a", distance=0.2, chunk_index="2", total_chunks=5),
            rank=0,
        )

        assert c.similarity == pytest.approx(0.8)
        assert c.source_name == "A"
        assert c.source_url == "https://a"
        assert c.chunk_index == 2
        assert c.total_chunks == 5

    @pytest.mark.parametrize("distance,expected", [(-0.5, 1.0), (1.7, 0.0)])
    def test_similarity_is_clamped(self, distance: float, expected: float) -> None:
        assert RetrievalService.to_chunk(make_hit("x", distance=distance), 0).similarity == expected

    def test_unnamed_hit_gets_numbered_name(self) -> None:
        assert RetrievalService.to_chunk(make_hit("x"), rank=2).source_name == "Document 3"

    @pytest.mark.asyncio
    async def test_retrieve_records_details(self, library_hits) -> None:
        search = FakeSearch(library_hits)

        chunks, record = await RetrievalService(search).retrieve("biblioteka", 2)

        assert len(chunks) == 2
        assert search.queries == [{"query": "biblioteka", "k": 2}]
        assert record.outcome == "success"
        assert record.details["results"] == 2
        assert record.details["similarities"] == [0.9, 0.75]

    @pytest.mark.asyncio
    async def test_empty_results_are_valid(self) -> None:
        chunks, record = await RetrievalService(FakeSearch([])).retrieve("nieko", 3)

        assert chunks == []
        assert record.outcome == "success"

    @pytest.mark.asyncio
    async def test_failure_yields_empty_list(self) -> None:
        search = FakeSearch(error=ConnectionError("milvus down"))

        chunks, record = await RetrievalService(search).retrieve("biblioteka", 3)

        assert chunks == []
        assert record.failed
        assert record.reason == "upstream_error"
        assert record.error == "milvus down"


class TestAnswerGenerationService:
    def test_simple_template_without_history(self, prompts: PromptSet) -> None:
        messages, template = AnswerGenerationService.build_messages("Klausimas?", "KONTEKSTAS", (), prompts)

        assert template == "simple"
        assert "KONTEKSTAS" in messages[0]["content"]
        assert messages[1]["content"] == "TURIMI DUOMENYS:\nKONTEKSTAS\n\nKLAUSIMAS: Klausimas?"

    def test_history_template_with_history(self, prompts: PromptSet) -> None:
        messages, template = AnswerGenerationService.build_messages("O šeštadienį?", "CTX", HISTORY, prompts)

        assert template == "history"
        assert messages[1]["content"].startswith("POKALBIO ISTORIJA:\n[User]: Kada dirba biblioteka?")
        assert "DABARTINIS KLAUSIMAS: O šeštadienį?" in messages[1]["content"]

    @pytest.mark.asyncio
    async def test_success(self, prompts: PromptSet, config: PipelineConfig) -> None:
        chat = FakeChatModel({"generate": "  Atsakymas.  "})

        outcome, record = await AnswerGenerationService(chat).generate("K?", "CTX", (), prompts, config)

        assert outcome.succeeded
        assert outcome.answer == "Atsakymas."
        assert record.action == "generated"
        assert record.model == config.generation_model
        assert record.temperature == config.generation_temperature
        assert record.response_length == len("Atsakymas.")
        assert chat.calls[0]["timeout_ms"] == config.timeout_ms

    @pytest.mark.asyncio
    async def test_timeout_returns_fallback(self, prompts: PromptSet) -> None:
        chat = FakeChatModel(gate=asyncio.Event())
        config = PipelineConfig(timeout_ms=50)

        outcome, record = await AnswerGenerationService(chat).generate("K?", "CTX", (), prompts, config)

        assert not outcome.succeeded
        assert outcome.answer == prompts.fallback_answer
        assert record.failed
        assert record.reason == "timeout"

    @pytest.mark.asyncio
    async def test_client_timeout_is_reported_as_timeout(self, prompts: PromptSet, config: PipelineConfig) -> None:
        chat = FakeChatModel({"generate": LLMTimeoutException(1000)})

        outcome, record = await AnswerGenerationService(chat).generate("K?", "CTX", (), prompts, config)

        assert outcome.reason == "timeout"
        assert record.reason == "timeout"

    @pytest.mark.asyncio
    async def test_upstream_error_returns_fallback(self, prompts: PromptSet, config: PipelineConfig) -> None:
        chat = FakeChatModel({"generate": RuntimeError("502 Bad Gateway")})

        outcome, record = await AnswerGenerationService(chat).generate("K?", "CTX", (), prompts, config)

        assert outcome.answer == prompts.fallback_answer
        assert record.reason == "upstream_error"
        assert record.error == "502 Bad Gateway"

    @pytest.mark.asyncio
    async def test_empty_response_returns_fallback(self, prompts: PromptSet, config: PipelineConfig) -> None:
        chat = FakeChatModel({"generate": "   "})

        outcome, record = await AnswerGenerationService(chat).generate("K?", "CTX", (), prompts, config)

        assert outcome.answer == prompts.fallback_answer
        assert record.reason == "empty_response"


class TestRAGPipeline:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("question", ["", "   ", None])
    async def test_empty_question_rejected_before_any_stage(self, make_pipeline, question) -> None:
        chat = FakeChatModel()
        search = FakeSearch()
        pipeline = make_pipeline(chat=chat, search=search)

        with pytest.raises(ValidationException):
            await pipeline.run(question, [])

        assert chat.calls == []
        assert search.queries == []

    @pytest.mark.asyncio
    async def test_malformed_history_rejected_before_any_stage(self, make_pipeline) -> None:
        chat = FakeChatModel()
        search = FakeSearch()
        pipeline = make_pipeline(chat=chat, search=search)

        with pytest.raises(ValidationException):
            await pipeline.run("Kada dirba biblioteka?", ["hello"])

        assert chat.calls == []
        assert search.queries == []

    @pytest.mark.asyncio
    async def test_first_question_uses_simple_template(self, make_pipeline, library_hits) -> None:
        chat = FakeChatModel({"generate": "Biblioteka dirba iki 19 val."})
        search = FakeSearch(library_hits)
        pipeline = make_pipeline(chat=chat, search=search)

        result = await pipeline.generate_answer("Library hours?", [])

        assert search.queries == [{"query": "Library hours?", "k": 3}]
        rephrase = result.debug_trace.get("rephrase")
        assert rephrase.action == "skipped_no_history"
        assert result.debug_trace.get("generate").details["template"] == "simple"
        assert chat.calls_for("rephrase") == []

        assert result.outcome == "success"
        assert not result.is_degraded
        assert result.answer == "Biblioteka dirba iki 19 val."
        assert result.contexts_used == 3
        assert result.sources == [
            "Bibliotekos darbo laikas (https://www.vilnius.lt/biblioteka)",
            "Skaityklos taisyklės",
        ]
        assert result.source_urls == ["https://www.vilnius.lt/biblioteka"]

    @pytest.mark.asyncio
    async def test_trace_has_one_record_per_stage_in_order(self, make_pipeline) -> None:
        result = await make_pipeline().run("Klausimas?", HISTORY)

        assert result.debug_trace.stages == ["rephrase", "retrieve", "format", "generate", "attribute"]

    @pytest.mark.asyncio
    async def test_empty_retrieval_still_generates(self, make_pipeline, prompts: PromptSet) -> None:
        chat = FakeChatModel({"generate": "Nežinau."})
        pipeline = make_pipeline(chat=chat, search=FakeSearch([]))

        result = await pipeline.run("Kas yra kvarkas?", [])

        assert result.contexts_used == 0
        assert result.sources == []
        assert result.outcome == "success"
        assert result.debug_trace.get("format").action == "no_documents"
        system_message = chat.calls_for("generate")[0]["messages"][0]["content"]
        assert prompts.no_documents_marker in system_message

    @pytest.mark.asyncio
    async def test_retrieval_failure_degrades_but_answers(self, make_pipeline) -> None:
        chat = FakeChatModel({"generate": "Bendras atsakymas."})
        pipeline = make_pipeline(chat=chat, search=FakeSearch(error=RuntimeError("down")))

        result = await pipeline.run("Klausimas?", [])

        assert result.answer == "Bendras atsakymas."
        assert result.outcome == "degraded"
        assert result.is_degraded
        assert result.contexts_used == 0
        assert result.debug_trace.get("retrieve").failed

    @pytest.mark.asyncio
    async def test_generation_timeout_returns_apology(self, make_pipeline, prompts: PromptSet) -> None:
        chat = FakeChatModel(gate=asyncio.Event())
        pipeline = make_pipeline(chat=chat, pipeline_config=PipelineConfig(timeout_ms=50))

        result = await pipeline.run("Library hours?", [])

        assert result.answer == prompts.fallback_answer
        assert result.outcome == "degraded"
        generate = result.debug_trace.get("generate")
        assert generate.failed
        assert generate.reason == "timeout"

    @pytest.mark.asyncio
    async def test_rephrase_failure_is_silent_by_default(self, make_pipeline) -> None:
        chat = FakeChatModel({"rephrase": RuntimeError("boom"), "generate": "Atsakymas."})
        search = FakeSearch()
        pipeline = make_pipeline(chat=chat, search=search)

        result = await pipeline.run("O šeštadienį?", HISTORY)

        assert result.outcome == "success"
        assert search.queries[0]["query"] == "O šeštadienį?"
        assert result.debug_trace.get("rephrase").failed

    @pytest.mark.asyncio
    async def test_rephrase_failure_can_degrade(self, make_pipeline) -> None:
        chat = FakeChatModel({"rephrase": RuntimeError("boom"), "generate": "Atsakymas."})
        pipeline = make_pipeline(chat=chat, pipeline_config=PipelineConfig(rephrase_failure_degrades=True))

        result = await pipeline.run("O šeštadienį?", HISTORY)

        assert result.outcome == "degraded"

    @pytest.mark.asyncio
    async def test_retrieval_uses_rephrased_query_generation_uses_question(self, make_pipeline) -> None:
        chat = FakeChatModel({"rephrase": "Kada biblioteka dirba šeštadienį?", "generate": "10-16."})
        search = FakeSearch()
        pipeline = make_pipeline(chat=chat, search=search)

        result = await pipeline.run("O šeštadienį?", HISTORY)

        assert search.queries[0]["query"] == "Kada biblioteka dirba šeštadienį?"
        user_message = chat.calls_for("generate")[0]["messages"][1]["content"]
        assert "DABARTINIS KLAUSIMAS: O šeštadienį?" in user_message
        assert result.debug_trace.get("generate").details["template"] == "history"

    @pytest.mark.asyncio
    async def test_history_snapshot_is_not_affected_by_caller_mutation(self, make_pipeline) -> None:
        gate = asyncio.Event()
        chat = FakeChatModel({"rephrase": "Perfrazuota?", "generate": "Atsakymas."}, gate=gate)
        pipeline = make_pipeline(chat=chat)
        history = [("Pirmas", "Atsakytas")]

        run = asyncio.create_task(pipeline.run("Antras?", history))
        await asyncio.sleep(0)
        history.append(("Trečias", ""))
        gate.set()
        await run

        prompt = chat.calls_for("generate")[0]["messages"][1]["content"]
        assert "Trečias" not in prompt

    @pytest.mark.asyncio
    async def test_applied_prompts_are_used_by_next_run(self, make_pipeline) -> None:
        chat = FakeChatModel({"generate": RuntimeError("down")})
        pipeline = make_pipeline(chat=chat)

        pipeline.apply_prompts(PromptSet(version="v2", fallback_answer="Sorry, something went wrong."))
        result = await pipeline.run("Klausimas?", [])

        assert pipeline.prompts.version == "v2"
        assert result.answer == "Sorry, something went wrong."
        assert result.debug_trace.get("generate").inputs["prompt_version"] == "v2"

    @pytest.mark.asyncio
    async def test_result_serializes_with_trace(self, make_pipeline) -> None:
        result = await make_pipeline().run("Klausimas?", [])

        body = result.to_dict()

        assert set(body) == {"answer", "sources", "source_urls", "contexts_used", "outcome", "debug_trace"}
        assert {"stage", "action", "model", "temperature", "response_length", "error"} <= set(body["debug_trace"][0])
