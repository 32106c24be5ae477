"""
Configuration Validation Module

Validates app.yaml, policy.yaml and profiles.yaml against Pydantic schemas.
Ensures config files are correct before system startup.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)


# ===== App Schema =====
class AppSection(BaseModel):
    mode: Literal["PAPER", "LIVE"] = Field(description="Execution mode")
    assets: List[str] = Field(min_length=1, description="Trading universe")
    paper_balance: float = Field(default=10_000.0, gt=0, description="Starting balance in PAPER mode")

    @field_validator('assets')
    @classmethod
    def validate_assets(cls, v: List[str]) -> List[str]:
        if len(set(v)) != len(v):
            raise ValueError(f"Duplicate assets in universe: {v}")
        return v


class LoggingSection(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    file: str = "logs/perptrader.log"


class ExchangeSection(BaseModel):
    base_url: str = Field(pattern="^https?://", description="Exchange API base URL")
    testnet: bool = False
    timeout_seconds: float = Field(default=10.0, gt=0, le=120)
    max_retries: int = Field(default=3, ge=0, le=10)
    wallet_env: str = Field(default="HYPERLIQUID_WALLET_ADDRESS", min_length=1)


class AlertsSection(BaseModel):
    enabled: bool = False
    webhook_env: str = "ALERT_WEBHOOK_URL"
    min_severity: Literal["info", "warning", "critical"] = "warning"
    dry_run: bool = False
    dedupe_seconds: float = Field(default=60.0, ge=0)


class MonitoringSection(BaseModel):
    metrics_enabled: bool = True
    metrics_port: int = Field(default=9100, ge=1, le=65535)


FACTORY_PATTERN = r"^[\w.]+:\w+$"


class CollaboratorsSection(BaseModel):
    """Optional "module:callable" factories for external collaborators"""
    agent: Optional[str] = Field(default=None, pattern=FACTORY_PATTERN)
    market_data: Optional[str] = Field(default=None, pattern=FACTORY_PATTERN)
    macro_strategy: Optional[str] = Field(default=None, pattern=FACTORY_PATTERN)
    readiness_source: Optional[str] = Field(default=None, pattern=FACTORY_PATTERN)
    forecast_refresher: Optional[str] = Field(default=None, pattern=FACTORY_PATTERN)


class FileSection(BaseModel):
    file: str = Field(min_length=1)


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    app: AppSection
    logging: LoggingSection = Field(default_factory=LoggingSection)
    exchange: ExchangeSection
    alerts: AlertsSection = Field(default_factory=AlertsSection)
    monitoring: MonitoringSection = Field(default_factory=MonitoringSection)
    collaborators: CollaboratorsSection = Field(default_factory=CollaboratorsSection)
    state: FileSection
    audit: FileSection


# ===== Policy Schema =====
class LoopConfig(BaseModel):
    """Scheduling parameters (minutes unless noted)"""
    default_interval_minutes: int = Field(default=12, gt=0)
    min_interval_minutes: int = Field(default=3, gt=0)
    max_interval_minutes: int = Field(default=25, gt=0)
    risk_monitor_seconds: int = Field(default=60, gt=0)
    cycle_deadline_seconds: int = Field(default=240, gt=0)
    workers: int = Field(default=4, ge=2, le=32)

    @model_validator(mode="after")
    def validate_bounds(self):
        if self.min_interval_minutes > self.max_interval_minutes:
            raise ValueError(
                f"min_interval_minutes ({self.min_interval_minutes}) must be <= "
                f"max_interval_minutes ({self.max_interval_minutes})"
            )
        if not self.min_interval_minutes <= self.default_interval_minutes <= self.max_interval_minutes:
            raise ValueError("default_interval_minutes must lie within [min, max]")
        return self


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker parameters"""
    max_daily_loss: float = Field(default=0.05, gt=0, le=1, description="Daily loss fraction of account value")
    max_consecutive_losses: int = Field(default=3, gt=0, description="Losing trades in a row")


class RiskConfig(BaseModel):
    enforce_risk_reward_ratio: bool = True


class VolatilityConfig(BaseModel):
    thresholds: Dict[str, float] = Field(default_factory=lambda: {"very_high": 0.03, "high": 0.02, "medium": 0.01})

    @field_validator('thresholds')
    @classmethod
    def validate_thresholds(cls, v: Dict[str, float]) -> Dict[str, float]:
        unknown = set(v) - {"very_high", "high", "medium"}
        if unknown:
            raise ValueError(f"Unknown volatility levels: {sorted(unknown)}")
        for level, value in v.items():
            if value <= 0 or value >= 1:
                raise ValueError(f"Threshold {level} must be 0 < value < 1, got {value}")
        ordered = [v.get(k) for k in ("very_high", "high", "medium") if v.get(k) is not None]
        if ordered != sorted(ordered, reverse=True):
            raise ValueError("Thresholds must satisfy very_high > high > medium")
        return v


class BalanceConfig(BaseModel):
    min_change_threshold: float = Field(default=0.01, ge=0)
    deposit_withdrawal_threshold: float = Field(default=1.0, gt=0)


class ReadinessConfig(BaseModel):
    require_macro_strategy: bool = True
    require_forecasts: bool = True
    require_fresh_market_data: bool = True
    require_sentiment: bool = True
    market_data_max_age_minutes: int = Field(default=5, gt=0)
    forecast_max_age_hours: int = Field(default=1, gt=0)


class PolicySchema(BaseModel):
    """Complete policy configuration schema"""
    loop: LoopConfig = Field(default_factory=LoopConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    volatility: VolatilityConfig = Field(default_factory=VolatilityConfig)
    balance: BalanceConfig = Field(default_factory=BalanceConfig)
    readiness: ReadinessConfig = Field(default_factory=ReadinessConfig)


# ===== Profiles Schema =====
class TrailingStopSchema(BaseModel):
    enabled: bool = True
    activation_profit_pct: float = Field(gt=0, lt=1)
    trail_distance_pct: float = Field(gt=0, lt=1)


class ProfileSchema(BaseModel):
    rsi_oversold: float = Field(gt=0, lt=100)
    rsi_overbought: float = Field(gt=0, lt=100)
    rsi_pullback_threshold: float = Field(gt=0, lt=100)
    rsi_bounce_threshold: float = Field(gt=0, lt=100)
    min_confidence: float = Field(ge=0, le=1)
    min_risk_reward_ratio: float = Field(gt=0)
    max_position_size: float = Field(gt=0)
    max_risk_per_trade: float = Field(gt=0, le=0.1)
    default_leverage: int = Field(ge=1, le=100)
    max_leverage: int = Field(ge=1, le=100)
    max_open_positions: int = Field(gt=0)
    trailing_stop: Optional[TrailingStopSchema] = None

    @model_validator(mode="after")
    def validate_consistency(self):
        if self.rsi_oversold >= self.rsi_overbought:
            raise ValueError("rsi_oversold must be below rsi_overbought")
        if self.default_leverage > self.max_leverage:
            raise ValueError(
                f"default_leverage ({self.default_leverage}) exceeds max_leverage ({self.max_leverage})"
            )
        return self


class ProfilesSchema(BaseModel):
    default_profile: Literal["cautious", "moderate", "fearless"] = "moderate"
    profiles: Dict[Literal["cautious", "moderate", "fearless"], ProfileSchema] = Field(default_factory=dict)


SCHEMAS = {
    "app.yaml": AppSchema,
    "policy.yaml": PolicySchema,
    "profiles.yaml": ProfilesSchema,
}


def _describe_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Point at the offending line when the parser reports a position."""
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return f"Malformed YAML in {file_path}: {error}"

    lines = file_path.read_text().splitlines()
    context = [
        f"{'▶' if idx == mark.line else ' '} {idx + 1:04d} | {lines[idx]}"
        for idx in range(max(mark.line - 2, 0), min(mark.line + 3, len(lines)))
    ]
    problem = getattr(error, "problem", None) or str(error)
    return (
        f"Malformed YAML in {file_path}: line {mark.line + 1}, column {mark.column + 1}: {problem}\n"
        + "\n".join(context)
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")
    text = file_path.read_text()
    try:
        return yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise yaml.YAMLError(_describe_yaml_error(file_path, e)) from e


def validate_file(config_dir: Path, filename: str) -> List[str]:
    """
    Validate one config file against its schema.

    Returns:
        List of error messages prefixed with the file name (empty if valid)
    """
    try:
        config = load_yaml_file(config_dir / filename)
    except FileNotFoundError as e:
        return [f"{filename}: {e}"]
    except yaml.YAMLError as e:
        return [f"{filename}: Invalid YAML - {e}"]

    if not isinstance(config, dict):
        return [f"{filename}: top level must be a mapping, got {type(config).__name__}"]

    try:
        SCHEMAS[filename](**config)
    except ValidationError as e:
        return [
            f"{filename}: {' -> '.join(str(loc) for loc in error['loc'])}: {error['msg']}"
            for error in e.errors()
        ]
    logger.info(f"✅ {filename} validation passed")
    return []


def validate_app(config_dir: Path) -> List[str]:
    return validate_file(config_dir, "app.yaml")


def validate_policy(config_dir: Path) -> List[str]:
    return validate_file(config_dir, "policy.yaml")


def validate_profiles(config_dir: Path) -> List[str]:
    return validate_file(config_dir, "profiles.yaml")


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """Validate every config file; returns all error messages (empty if all valid)."""
    config_path = Path(config_dir)
    errors = [error for filename in SCHEMAS for error in validate_file(config_path, filename)]

    if errors:
        logger.error(f"❌ {len(errors)} validation error(s) found")
    else:
        logger.info("✅ All config files validated successfully")
    return errors


def main() -> int:
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')
    errors = validate_all_configs(sys.argv[1] if len(sys.argv) > 1 else "config")
    if not errors:
        print("\n✅ All configuration files are valid!\n")
        return 0

    print("\n❌ Configuration Validation Failed:\n")
    for error in errors:
        print(f"  • {error}")
    print()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
