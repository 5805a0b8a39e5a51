"""
Configuration models for the position risk gate.

Uses Pydantic for validation and type safety.
"""
from typing import Literal, Optional
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml
from pathlib import Path
import os
import re

# Reversal tier thresholds that have shipped: (high, medium, low)
REVERSAL_PRESETS = {
    "current": (60.0, 40.0, 25.0),
    "legacy": (70.0, 50.0, 30.0),
}


class CooldownConfig(BaseSettings):
    """Per-symbol cooldown rules. Rules are evaluated in a fixed order."""
    model_config = SettingsConfigDict(extra="ignore")

    lookback_hours: float = Field(default=24.0, gt=0, le=168)

    # Rule 1: one severe loss
    severe_loss_pct: float = Field(default=15.0, gt=0, le=100)
    severe_loss_cooldown_hours: float = Field(default=12.0, gt=0, le=168)

    # Rule 2: repeated losses inside the lookback
    repeated_loss_count: int = Field(default=2, ge=1, le=20)
    repeated_loss_cooldown_hours: float = Field(default=24.0, gt=0, le=168)

    # Rule 3: frequent losses inside the lookback
    frequent_loss_count: int = Field(default=3, ge=1, le=50)
    frequent_loss_cooldown_hours: float = Field(default=48.0, gt=0, le=336)

    # Rule 4: loss closed because the trend reversed
    reversal_cooldown_hours: float = Field(default=6.0, gt=0, le=72)


class ReversalConfig(BaseSettings):
    """
    Reversal-score tiers.

    ``preset`` fills any threshold that is not given explicitly; explicit
    values always win.
    """
    model_config = SettingsConfigDict(extra="ignore")

    preset: Optional[Literal["current", "legacy"]] = None
    high_threshold: float = Field(default=60.0, ge=0, le=100, description="Immediate forced close")
    medium_threshold: float = Field(default=40.0, ge=0, le=100, description="Advisory close")
    low_threshold: float = Field(default=25.0, ge=0, le=100, description="Early warning, freeze trailing")
    advisory_max_loss_pct: float = Field(
        default=5.0, ge=0, le=100,
        description="In the advisory tier, losing positions are closed only if the loss is below this",
    )

    @model_validator(mode="before")
    @classmethod
    def _apply_preset(cls, data):
        if isinstance(data, dict) and data.get("preset"):
            high, medium, low = REVERSAL_PRESETS[data["preset"]]
            data = dict(data)
            data.setdefault("high_threshold", high)
            data.setdefault("medium_threshold", medium)
            data.setdefault("low_threshold", low)
        return data

    @model_validator(mode="after")
    def _check_ordering(self):
        if not (self.low_threshold < self.medium_threshold < self.high_threshold):
            raise ValueError(
                "reversal thresholds must satisfy low < medium < high "
                f"(got {self.low_threshold}/{self.medium_threshold}/{self.high_threshold})"
            )
        return self


class LedgerConfig(BaseSettings):
    """Protective-order ledger configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    venue_max_retries: int = Field(default=2, ge=0, le=10, description="Retries per leg on transient venue errors")
    venue_retry_base_delay: float = Field(default=0.5, ge=0.0, le=30.0)
    venue_retry_max_backoff: float = Field(default=5.0, ge=0.0, le=60.0)
    cancel_replaced_at_venue: bool = Field(
        default=True,
        description="Cancel retired legs at the venue when a stop/target is moved",
    )


class ReconciliationConfig(BaseSettings):
    """Reconciliation configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    reconcile_enabled: bool = Field(default=True, description="Reconcile protective legs at startup and periodically")
    periodic_interval_seconds: int = Field(default=300, ge=5, le=3600)


class DataConfig(BaseSettings):
    """Storage configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    # postgresql:// in production, sqlite:/// for local runs
    database_url: Optional[str] = None
    echo_sql: bool = False


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    cooldown: CooldownConfig = Field(default_factory=CooldownConfig)
    reversal: ReversalConfig = Field(default_factory=ReversalConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    data: DataConfig = Field(default_factory=DataConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "paper", "prod"] = "prod"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        # Expand ${VAR} / $VAR, leaving unknown names untouched
        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))

        expanded_content = pattern.sub(replace_match, raw_content)
        config_dict = yaml.safe_load(expanded_content) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        db_url = os.getenv("DATABASE_URL")
        if db_url:
            config_dict.setdefault("data", {})
            config_dict["data"]["database_url"] = db_url

        return cls(**config_dict)

    def require_database_url(self) -> str:
        """Return the database URL or fail with an actionable message."""
        if not self.data.database_url:
            raise ValueError(
                "DATABASE_URL is not configured. Set it in the environment or under data.database_url."
            )
        return self.data.database_url


def load_config(config_path: str | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses riskgate/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    from riskgate.config.dotenv_loader import load_dotenv_files

    load_dotenv_files()

    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    return Config.from_yaml(config_path)
