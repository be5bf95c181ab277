"""
Configuration Validation Module

Validates policy.yaml and app.yaml against Pydantic schemas.
Ensures config files are correct before the scheduler starts.

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
from typing import Any, Dict, List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from core.exceptions import ConfigurationError
from infra.job_scheduler import build_trigger

logger = logging.getLogger(__name__)


def _check_timezone(value: str) -> str:
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"unknown timezone '{value}'") from e
    return value


def _check_cron(value: str) -> str:
    try:
        build_trigger(value, "UTC")
    except ConfigurationError as e:
        raise ValueError(str(e)) from e
    return value


# ===== Policy Schema =====
class MarketConfig(BaseModel):
    """One market's currency, sizing and execution schedule"""
    currency: str = Field(min_length=3, max_length=3, description="ISO currency code")
    currency_symbol: str = Field(default="", description="Display symbol")
    standard_trade_size: float = Field(gt=0, description="Standard trade size in market currency")
    initial_capital: float = Field(gt=0, description="Seed capital in market currency")
    timezone: str = Field(description="IANA timezone of the market")
    execution_cron: str = Field(default="0 13 * * mon-fri", description="Execution trigger (crontab)")

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        return _check_timezone(v)

    @field_validator("execution_cron")
    @classmethod
    def validate_cron(cls, v: str) -> str:
        return _check_cron(v)


class LimitsConfig(BaseModel):
    """Position caps and sizing floor"""
    max_positions_total: int = Field(default=30, gt=0, description="Open positions across all markets")
    max_positions_per_market: int = Field(default=10, gt=0, description="Open positions per market")
    min_trade_size_fraction: float = Field(default=0.1, gt=0, le=1, description="Sizing floor vs standard size")


class ExitsConfig(BaseModel):
    """Exit thresholds and monitor schedule"""
    target_percent: float = Field(default=8.0, gt=0, description="Take-profit threshold %")
    stop_loss_percent: float = Field(default=5.0, gt=0, le=100, description="Stop-loss threshold % (positive)")
    max_holding_days: int = Field(default=30, gt=0, description="Max calendar days held")
    check_cron: str = Field(default="*/5 2-21 * * mon-fri", description="Monitor tick (crontab)")
    window_timezone: str = Field(default="Europe/London")
    window_start_hour: int = Field(default=2, ge=0, le=23)
    window_end_hour: int = Field(default=22, ge=1, le=24)

    @field_validator("window_timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        return _check_timezone(v)

    @field_validator("check_cron")
    @classmethod
    def validate_cron(cls, v: str) -> str:
        return _check_cron(v)

    @model_validator(mode="after")
    def validate_window(self) -> "ExitsConfig":
        if self.window_start_hour >= self.window_end_hour:
            raise ValueError(
                f"window_start_hour ({self.window_start_hour}) must be before "
                f"window_end_hour ({self.window_end_hour})"
            )
        return self


class ExecutionConfig(BaseModel):
    """Scheduled execution settings"""
    owner_ref: str = Field(default="default", min_length=1, description="Owner reference stamped on trades")
    stop_loss_percent: float = Field(default=5.0, gt=0, le=100, description="Stop loss stamped on new trades")
    cleanup_cron: str = Field(default="0 0 * * *", description="Pending-signal cleanup (UTC crontab)")
    cleanup_enabled: bool = Field(default=True)

    @field_validator("cleanup_cron")
    @classmethod
    def validate_cron(cls, v: str) -> str:
        return _check_cron(v)


class PolicySchema(BaseModel):
    """Complete policy.yaml schema"""
    markets: Dict[str, MarketConfig]
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    exits: ExitsConfig = Field(default_factory=ExitsConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)

    @field_validator("markets")
    @classmethod
    def validate_markets(cls, v: Dict[str, MarketConfig]) -> Dict[str, MarketConfig]:
        if not v:
            raise ValueError("at least one market must be configured")
        return v


# ===== App Schema =====
class AppSection(BaseModel):
    mode: str = Field(default="DRY_RUN", pattern="^(LIVE|DRY_RUN)$")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: str = Field(default="logs/trade-lifecycle.log")


class StateConfig(BaseModel):
    file: str = Field(default="data/.lifecycle_state.json")


class AuditConfig(BaseModel):
    file: str = Field(default="logs/exit_checks.jsonl")


class NotificationsConfig(BaseModel):
    enabled: bool = Field(default=True)
    dry_run: bool = Field(default=False, description="Log messages instead of sending")
    bot_token_env: str = Field(default="TELEGRAM_BOT_TOKEN", description="Env var holding the bot token")
    api_base: str = Field(default="https://api.telegram.org")
    batch_size: int = Field(default=30, gt=0)
    batch_pause_seconds: float = Field(default=1.0, ge=0)
    timeout_seconds: float = Field(default=10.0, gt=0)


class PriceQuotesConfig(BaseModel):
    url_template: str = Field(default="https://query1.finance.yahoo.com/v8/finance/chart/{symbol}")
    timeout_seconds: float = Field(default=5.0, gt=0)

    @field_validator("url_template")
    @classmethod
    def validate_template(cls, v: str) -> str:
        if "{symbol}" not in v:
            raise ValueError("url_template must contain '{symbol}'")
        return v


class MetricsConfig(BaseModel):
    enabled: bool = Field(default=False)
    port: int = Field(default=9100, gt=0, lt=65536)


class LeasesConfig(BaseModel):
    enabled: bool = Field(default=True)
    ttl_seconds: float = Field(default=900.0, gt=0)


class AppSchema(BaseModel):
    """Complete app.yaml schema"""
    app: AppSection = Field(default_factory=AppSection)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    price_quotes: PriceQuotesConfig = Field(default_factory=PriceQuotesConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    leases: LeasesConfig = Field(default_factory=LeasesConfig)


SCHEMAS = {
    "policy.yaml": PolicySchema,
    "app.yaml": AppSchema,
}


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return message with line/column context for YAML errors."""
    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    problem = getattr(error, "problem", str(error))
    return f"Malformed YAML in {file_path}: line {mark.line + 1}, column {mark.column + 1}: {problem}"


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r", encoding="utf-8") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def validate_file(config_dir: Path, name: str) -> List[str]:
    """
    Validate one config file against its schema.

    Returns:
        List of error messages (empty if valid)
    """
    errors = []
    schema = SCHEMAS[name]

    try:
        config = load_yaml_file(config_dir / name)
        schema(**config)
        logger.info(f"✅ {name} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{name}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{name}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            errors.append(f"{name}: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"{name}: top level must be a mapping ({e})")

    return errors


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Logical consistency checks that span sections.

    Detects:
    - Per-market caps that can never be reached under the total cap
    - Standard trade sizes larger than the market's seed capital
    """
    errors = []
    policy = PolicySchema(**load_yaml_file(config_dir / "policy.yaml"))

    if policy.limits.max_positions_per_market > policy.limits.max_positions_total:
        errors.append(
            f"policy.yaml: limits: max_positions_per_market ({policy.limits.max_positions_per_market}) "
            f"exceeds max_positions_total ({policy.limits.max_positions_total})"
        )

    for name, market in policy.markets.items():
        if market.standard_trade_size > market.initial_capital:
            errors.append(
                f"policy.yaml: markets -> {name}: standard_trade_size ({market.standard_trade_size}) "
                f"exceeds initial_capital ({market.initial_capital})"
            )

    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Args:
        config_dir: Path to config directory (string or Path)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    for name in SCHEMAS:
        all_errors.extend(validate_file(config_path, name))

    # Sanity checks (only if schema validation passed)
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


def load_config(config_dir: str = "config") -> Dict[str, Dict[str, Any]]:
    """
    Validate and load both config files with defaults applied.

    Returns:
        {"policy": {...}, "app": {...}}

    Raises:
        ValueError: any validation error (all errors listed in the message)
    """
    errors = validate_all_configs(config_dir)
    if errors:
        raise ValueError("Invalid configuration:\n" + "\n".join(f"  • {e}" for e in errors))

    config_path = Path(config_dir)
    policy = PolicySchema(**load_yaml_file(config_path / "policy.yaml"))
    app = AppSchema(**load_yaml_file(config_path / "app.yaml"))
    return {"policy": policy.model_dump(), "app": app.model_dump()}


def market_schedules(policy: Dict[str, Any]) -> Dict[str, Dict[str, str]]:
    """market -> {"timezone", "cron"} for the trade executor."""
    return {
        name: {"timezone": cfg["timezone"], "cron": cfg.get("execution_cron") or "0 13 * * mon-fri"}
        for name, cfg in (policy.get("markets") or {}).items()
    }


def seed_capital(policy: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """market -> {"currency", "initial"} for StateStore.init_portfolio_capital."""
    return {
        name: {"currency": cfg["currency"], "initial": cfg["initial_capital"]}
        for name, cfg in (policy.get("markets") or {}).items()
    }


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
