"""
Shared test fixtures.
"""

from typing import Callable, List, Optional

import pytest

from src.assistant.application import (
    AnswerGenerationService,
    PipelineConfig,
    QueryRephraseService,
    RAGPipeline,
    RetrievalService,
)
from src.assistant.domain import PromptSet
from tests.fakes import FakeChatModel, FakeSearch, make_hit


@pytest.fixture
def prompts() -> PromptSet:
    return PromptSet()


@pytest.fixture
def config() -> PipelineConfig:
    return PipelineConfig(k=3, timeout_ms=1000)


@pytest.fixture
def library_hits() -> List[dict]:
    return [
        make_hit(
            "Biblioteka dirba I-V 10:00-19:00.",
            name="Bibliotekos darbo laikas",
            url="https://www.vilnius.lt/biblioteka",
            distance=0.1,
            chunk_index=0,
            total_chunks=2,
            category="kultura",
        ),
        make_hit(
            "Šeštadieniais 10:00-16:00.",
            name="Bibliotekos darbo laikas",
            url="https://www.vilnius.lt/biblioteka",
            distance=0.25,
            chunk_index=1,
            total_chunks=2,
        ),
        make_hit("Skaityklos taisyklės.", name="Skaityklos taisyklės", distance=0.4),
    ]


@pytest.fixture
def make_pipeline(config: PipelineConfig) -> Callable[..., RAGPipeline]:
    """Factory: ``make_pipeline(chat=..., search=..., pipeline_config=...)``."""

    def factory(
        chat: Optional[FakeChatModel] = None,
        search: Optional[FakeSearch] = None,
        pipeline_config: Optional[PipelineConfig] = None,
        prompt_set: Optional[PromptSet] = None,
    ) -> RAGPipeline:
        chat = chat or FakeChatModel()
        search = search or FakeSearch()
        return RAGPipeline(
            rephraser=QueryRephraseService(chat),
            retriever=RetrievalService(search),
            generator=AnswerGenerationService(chat),
            config=pipeline_config or config,
            prompts=prompt_set,
        )

    return factory
