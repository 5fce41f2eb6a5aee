"""Tests for settings loading and schema validation."""

from pathlib import Path

import pytest

from opsagent.core.domain.errors import ConfigError
from opsagent.infrastructure.config.settings_loader import (
    CONFIG_ENV_VAR,
    load_settings,
    load_settings_async,
    parse_settings,
    resolve_config_path,
)

VALID_YAML = """
executor:
  dry_run: true
  retry_attempts: 1
decision:
  auto_execute_threshold: 0.9
llm:
  model: ollama/llama3
"""


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    return tmp_path


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "custom.yaml"
    path.write_text(VALID_YAML, encoding="utf-8")
    return path


class TestParseSettings:
    def test_empty_document_yields_defaults(self) -> None:
        settings = parse_settings("")
        assert settings.executor.dry_run is False
        assert settings.decision.auto_execute_threshold == 0.85

    def test_sections_are_applied(self) -> None:
        settings = parse_settings(VALID_YAML)
        assert settings.executor.dry_run is True
        assert settings.executor.retry_attempts == 1
        assert settings.llm.model == "ollama/llama3"

    def test_unknown_key_is_rejected(self) -> None:
        with pytest.raises(ConfigError) as exc_info:
            parse_settings("executor:\n  dryrun: true\n", "bad.yaml")
        assert exc_info.value.details["path"] == "bad.yaml"
        assert any("executor.dryrun" in e for e in exc_info.value.details["errors"])

    def test_threshold_order_is_enforced(self) -> None:
        with pytest.raises(ConfigError):
            parse_settings(
                "decision:\n  auto_execute_threshold: 0.4\n  require_approval_threshold: 0.6\n"
            )

    def test_invalid_yaml(self) -> None:
        with pytest.raises(ConfigError):
            parse_settings("executor: [unclosed")

    def test_non_mapping_root(self) -> None:
        with pytest.raises(ConfigError):
            parse_settings("- just\n- a list\n")


class TestResolveAndLoad:
    def test_defaults_when_nothing_exists(self) -> None:
        assert resolve_config_path() is None
        assert load_settings().executor.dry_run is False

    def test_explicit_missing_file(self) -> None:
        with pytest.raises(ConfigError):
            resolve_config_path("missing.yaml")

    def test_explicit_path(self, config_file: Path) -> None:
        assert load_settings(str(config_file)).executor.dry_run is True

    def test_environment_variable(self, config_file: Path, monkeypatch) -> None:
        monkeypatch.setenv(CONFIG_ENV_VAR, str(config_file))
        assert resolve_config_path() == config_file

    def test_default_location(self, isolated_cwd: Path) -> None:
        (isolated_cwd / "configs").mkdir()
        (isolated_cwd / "configs" / "opsagent.yaml").write_text(VALID_YAML, encoding="utf-8")
        assert load_settings().llm.model == "ollama/llama3"

    async def test_async_loader(self, config_file: Path) -> None:
        settings = await load_settings_async(str(config_file))
        assert settings.decision.auto_execute_threshold == 0.9

    async def test_async_loader_defaults(self) -> None:
        settings = await load_settings_async()
        assert settings.llm.model == "gpt-4.1-mini"
