"""Tests for configuration loading."""

from pathlib import Path

import pydantic
import pytest

from tool_loop_agent.config import AgentDefaults, AppConfig, load_config
from tool_loop_agent.core.types import BusyPolicy


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)


def test_defaults_without_config_file(tmp_path: Path) -> None:
    config = load_config(tmp_path / "missing.yaml", tmp_path / "missing.env")

    assert isinstance(config, AppConfig)
    assert config.anthropic is None
    assert config.agent.max_steps == 10
    assert config.agent.busy_policy is BusyPolicy.QUEUE
    assert config.agent.tools == []


def test_api_key_from_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")

    config = load_config(tmp_path / "missing.yaml", tmp_path / "missing.env")

    assert config.anthropic is not None
    assert config.anthropic.api_key == "sk-test"


def test_yaml_with_env_interpolation(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_AGENT_MODEL", "claude-test")
    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        "data_dir: /srv/agent\n"
        "agent:\n"
        "  model: ${TEST_AGENT_MODEL}\n"
        "  max_steps: 4\n"
        "  tools: [calculate]\n"
        "  busy_policy: reject\n"
        "storage:\n"
        "  db_path: ${data_dir}/agent.db\n",
        encoding="utf-8",
    )

    config = load_config(config_file, tmp_path / "missing.env")

    assert config.agent.model == "claude-test"
    assert config.agent.max_steps == 4
    assert config.agent.tools == ["calculate"]
    assert config.agent.busy_policy is BusyPolicy.REJECT
    assert config.storage.db_path == "/srv/agent/agent.db"


def test_dotenv_file_loaded(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("TOOL_LOOP_AGENT_TEST_KEY=sk-from-dotenv\n", encoding="utf-8")
    config_file = tmp_path / "config.yaml"
    config_file.write_text("anthropic:\n  api_key: ${TOOL_LOOP_AGENT_TEST_KEY}\n", encoding="utf-8")

    config = load_config(config_file, env_file)

    assert config.anthropic.api_key == "sk-from-dotenv"


def test_invalid_values_rejected(tmp_path: Path) -> None:
    config_file = tmp_path / "config.yaml"
    config_file.write_text("agent:\n  max_steps: 0\n", encoding="utf-8")

    with pytest.raises(pydantic.ValidationError):
        load_config(config_file, tmp_path / "missing.env")


def test_agent_defaults_bounds() -> None:
    with pytest.raises(pydantic.ValidationError):
        AgentDefaults(temperature=2.5)
    with pytest.raises(pydantic.ValidationError):
        AgentDefaults(tool_timeout=0)
