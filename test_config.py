"""Tests for configuration loading, environment overrides and model routing."""

from pathlib import Path

import pytest
import yaml

from bidcore.utils.config import Config
from bidcore.utils.errors import ConfigurationError, ErrorType

CONFIG_PATH = str(Path(__file__).parent / "config.yaml")

OVERRIDE_VARS = (
    "AWS_REGION",
    "LOG_LEVEL",
    "CONSENSUS_MAX_MODELS",
    "CONSENSUS_MODEL_TIMEOUT",
    "INVOICE_MODEL_ID",
    "ENABLE_AMAZON",
    "ENABLE_ANTHROPIC",
    "ENABLE_MISTRAL",
    "ENABLE_META",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in OVERRIDE_VARS:
        monkeypatch.delenv(name, raising=False)


def _write_config(tmp_path, **changes) -> str:
    with open(CONFIG_PATH) as f:
        data = yaml.safe_load(f)
    data.update(changes)
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


def test_load_defaults():
    config = Config.load(CONFIG_PATH)
    assert config.aws_region == "us-east-1"
    assert len(config.models) == 6
    assert config.provider.max_retries == 3
    assert config.consensus.max_models == 5
    assert config.consensus.min_successful_models == 2
    assert config.consensus.numeric_tolerance == 0.15
    assert config.invoice.temperature == 0.1
    assert config.invoice.max_tokens == 4000


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("AWS_REGION", "us-west-2")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("CONSENSUS_MAX_MODELS", "3")
    monkeypatch.setenv("CONSENSUS_MODEL_TIMEOUT", "15")
    monkeypatch.setenv("INVOICE_MODEL_ID", "amazon.nova-pro-v1:0")

    config = Config.load(CONFIG_PATH)
    assert config.aws_region == "us-west-2"
    assert config.logging.level == "DEBUG"
    assert config.consensus.max_models == 3
    assert config.consensus.model_timeout == 15.0
    assert config.invoice.model_id == "amazon.nova-pro-v1:0"
    assert len(config.select_models("takeoff")) == 3


@pytest.mark.parametrize("value", ["false", "0", "OFF", "no"])
def test_vendor_switch_disables_models(monkeypatch, value):
    monkeypatch.setenv("ENABLE_ANTHROPIC", value)
    config = Config.load(CONFIG_PATH)
    enabled = [m.model_id for m in config.enabled_models]
    assert len(enabled) == 4
    assert not any("anthropic" in model_id for model_id in enabled)


def test_vendor_switch_true_keeps_models(monkeypatch):
    monkeypatch.setenv("ENABLE_META", "true")
    config = Config.load(CONFIG_PATH)
    assert len(config.enabled_models) == 6


def test_select_models_ranks_by_task_score():
    config = Config.load(CONFIG_PATH)
    selected = [m.model_id for m in config.select_models("quality")]
    assert selected == [
        "us.anthropic.claude-3-5-sonnet-20241022-v2:0",
        "amazon.nova-pro-v1:0",
        "us.mistral.pixtral-large-2502-v1:0",
        "us.meta.llama3-2-90b-instruct-v1:0",
        "us.anthropic.claude-3-haiku-20240307-v1:0",
    ]
    assert len(config.select_models("takeoff", limit=1)) == 1


def test_select_models_keeps_roster_order_on_ties(config):
    for profile in config.models:
        profile.task_scores = {"takeoff": 0.5}
    assert [m.model_id for m in config.select_models("takeoff")] == [m.model_id for m in config.models]


def test_get_model():
    config = Config.load(CONFIG_PATH)
    assert config.get_model("amazon.nova-lite-v1:0").vendor == "amazon"
    assert config.get_model("unknown") is None


def test_missing_file_raises(tmp_path):
    with pytest.raises(ConfigurationError) as exc_info:
        Config.load(str(tmp_path / "nope.yaml"))
    assert exc_info.value.error_type == ErrorType.CONFIG_MISSING


def test_missing_section_is_invalid(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({"aws": {"region": "us-east-1"}}))
    with pytest.raises(ConfigurationError) as exc_info:
        Config.load(str(path))
    assert exc_info.value.error_type == ErrorType.CONFIG_INVALID


def test_too_few_enabled_models_is_invalid(tmp_path, monkeypatch):
    path = _write_config(tmp_path, consensus={"min_successful_models": 5, "max_models": 5})
    monkeypatch.setenv("ENABLE_AMAZON", "false")
    with pytest.raises(ConfigurationError) as exc_info:
        Config.load(path)
    assert exc_info.value.error_type == ErrorType.CONFIG_INVALID
    assert "4 models enabled" in str(exc_info.value)


def test_short_roster_logs_warning(tmp_path, monkeypatch, caplog):
    path = _write_config(tmp_path, consensus={"min_successful_models": 2, "max_models": 5})
    monkeypatch.setenv("ENABLE_ANTHROPIC", "false")
    with caplog.at_level("WARNING", logger="bidcore.utils.config"):
        config = Config.load(path)
    assert len(config.enabled_models) == 4
    assert "Only 4 models enabled" in caplog.text
    assert "max_models=5" in caplog.text


def test_full_roster_does_not_warn(tmp_path, caplog):
    path = _write_config(tmp_path, consensus={"min_successful_models": 2, "max_models": 5})
    with caplog.at_level("WARNING", logger="bidcore.utils.config"):
        Config.load(path)
    assert "models enabled" not in caplog.text
