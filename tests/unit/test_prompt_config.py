"""
Tests for prompt configuration loading and hot-reload.
"""

from pathlib import Path

import pytest
import yaml
from watchdog.events import FileModifiedEvent

from src.assistant.domain import PromptSet
from src.assistant.infrastructure import PromptConfigManager, PromptFileHandler
from src.core import ConfigurationException


def write_yaml(path: Path, data) -> Path:
    path.write_text(yaml.safe_dump(data, allow_unicode=True), encoding="utf-8")
    return path


class TestPromptSet:
    def test_defaults_are_valid(self) -> None:
        prompts = PromptSet()
        assert "{context}" in prompts.system_prompt
        assert prompts.fallback_answer == "Atsiprašau, įvyko klaida apdorojant užklausą."

    def test_missing_placeholder_rejected(self) -> None:
        with pytest.raises(ValueError):
            PromptSet(system_prompt="No context here")

    def test_history_template_needs_all_placeholders(self) -> None:
        with pytest.raises(ValueError):
            PromptSet(history_template="{formatted_history} {question}")

    def test_immutable(self) -> None:
        prompts = PromptSet()
        with pytest.raises(Exception):
            prompts.fallback_answer = "changed"


class TestPromptConfigManager:
    def test_without_path_uses_defaults(self) -> None:
        manager = PromptConfigManager()

        prompts = manager.load(None)

        assert prompts == PromptSet()
        assert manager.source == "builtin"

    def test_missing_file_uses_defaults(self, tmp_path: Path) -> None:
        manager = PromptConfigManager()

        manager.load(tmp_path / "absent.yaml")

        assert manager.prompts.version == "builtin"

    def test_partial_override(self, tmp_path: Path) -> None:
        path = write_yaml(tmp_path / "prompts.yaml", {
            "version": "2025-01",
            "fallback_answer": "Atsiprašome, bandykite vėliau.",
        })
        manager = PromptConfigManager()

        prompts = manager.load(path)

        assert prompts.version == "2025-01"
        assert prompts.fallback_answer == "Atsiprašome, bandykite vėliau."
        assert prompts.system_prompt == PromptSet().system_prompt
        assert manager.source == str(path)

    @pytest.mark.parametrize(
        "content",
        [
            "- just\n- a list\n",
            "rephrase_prompt: 'no placeholders'\n",
            "key: [unclosed\n",
        ],
    )
    def test_invalid_file_rejected_on_load(self, tmp_path: Path, content: str) -> None:
        path = tmp_path / "prompts.yaml"
        path.write_text(content, encoding="utf-8")

        with pytest.raises(ConfigurationException):
            PromptConfigManager().load(path)

    def test_listeners_receive_new_prompts(self, tmp_path: Path, make_pipeline) -> None:
        path = write_yaml(tmp_path / "prompts.yaml", {"version": "v1"})
        pipeline = make_pipeline()
        manager = PromptConfigManager()
        manager.subscribe(pipeline.apply_prompts)

        manager.load(path)
        assert pipeline.prompts.version == "v1"

        write_yaml(path, {"version": "v2"})
        assert manager.reload() is True
        assert pipeline.prompts.version == "v2"

    def test_failed_reload_keeps_current_prompts(self, tmp_path: Path, make_pipeline) -> None:
        path = write_yaml(tmp_path / "prompts.yaml", {"version": "v1"})
        pipeline = make_pipeline()
        manager = PromptConfigManager()
        manager.subscribe(pipeline.apply_prompts)
        manager.load(path)

        path.write_text("system_prompt: 'broken'\n", encoding="utf-8")

        assert manager.reload() is False
        assert manager.prompts.version == "v1"
        assert pipeline.prompts.version == "v1"

    def test_reload_without_file_is_noop(self) -> None:
        manager = PromptConfigManager()
        manager.load(None)
        assert manager.reload() is False

    def test_file_handler_reloads_on_change(self, tmp_path: Path) -> None:
        path = write_yaml(tmp_path / "prompts.yaml", {"version": "v1"})
        manager = PromptConfigManager()
        manager.load(path)
        handler = PromptFileHandler(manager, path)

        write_yaml(path, {"version": "v2"})
        handler.on_modified(FileModifiedEvent(str(tmp_path / "other.yaml")))
        assert manager.prompts.version == "v1"

        handler.on_modified(FileModifiedEvent(str(path)))
        assert manager.prompts.version == "v2"

    def test_watching_lifecycle(self, tmp_path: Path) -> None:
        path = write_yaml(tmp_path / "prompts.yaml", {"version": "v1"})
        manager = PromptConfigManager()
        manager.load(path)

        manager.start_watching()
        manager.stop_watching()
        manager.stop_watching()
