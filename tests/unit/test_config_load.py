"""
Configuration loading and validation.

Verifies that the shipped YAML loads, that defaults match the documented
rules, and that environment overrides and reversal presets apply.
"""
from pathlib import Path

import pytest
from pydantic import ValidationError as PydanticValidationError

from riskgate.config.config import Config, ReversalConfig, load_config

CONFIG_PATH = Path(__file__).resolve().parents[2] / "riskgate" / "config" / "config.yaml"


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("ENVIRONMENT", "prod")


def test_config_yaml_exists():
    assert CONFIG_PATH.exists()


def test_config_loads_with_documented_defaults():
    config = load_config(str(CONFIG_PATH))

    assert config.environment == "prod"
    assert config.cooldown.severe_loss_pct == 15
    assert config.cooldown.severe_loss_cooldown_hours == 12
    assert config.cooldown.repeated_loss_cooldown_hours == 24
    assert config.cooldown.frequent_loss_cooldown_hours == 48
    assert config.cooldown.reversal_cooldown_hours == 6
    assert (config.reversal.high_threshold, config.reversal.medium_threshold, config.reversal.low_threshold) == (60, 40, 25)
    assert config.data.database_url is None


def test_database_url_from_environment(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///tmp/riskgate.db")

    config = load_config(str(CONFIG_PATH))

    assert config.require_database_url() == "sqlite:///tmp/riskgate.db"


def test_missing_database_url_is_actionable():
    with pytest.raises(ValueError, match="DATABASE_URL"):
        Config().require_database_url()


def test_env_var_expansion(tmp_path, monkeypatch):
    monkeypatch.setenv("RG_LOG_LEVEL", "DEBUG")
    path = tmp_path / "config.yaml"
    path.write_text("monitoring:\n  log_level: ${RG_LOG_LEVEL}\n")

    config = Config.from_yaml(path)

    assert config.monitoring.log_level == "DEBUG"


def test_missing_file():
    with pytest.raises(FileNotFoundError):
        Config.from_yaml("does/not/exist.yaml")


class TestReversalConfig:

    def test_legacy_preset(self):
        cfg = ReversalConfig(preset="legacy")
        assert (cfg.high_threshold, cfg.medium_threshold, cfg.low_threshold) == (70, 50, 30)

    def test_explicit_threshold_beats_preset(self):
        cfg = ReversalConfig(preset="legacy", high_threshold=80)
        assert cfg.high_threshold == 80
        assert cfg.medium_threshold == 50

    def test_thresholds_must_be_ordered(self):
        with pytest.raises(PydanticValidationError):
            ReversalConfig(high_threshold=30, medium_threshold=40, low_threshold=25)
