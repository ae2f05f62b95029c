"""
Configuration Validation Module

Validates app.yaml and policy.yaml against Pydantic schemas and checks the
required secrets are present in the environment. Ensures the bot never runs
a cycle with incomplete configuration.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from core.exceptions import ConfigurationError
from infra.env import REQUIRED_ENV

logger = logging.getLogger(__name__)

ADDRESS_PATTERN = "^0x[0-9a-fA-F]{40}$"


# ===== App Schema =====
class TokenConfig(BaseModel):
    """One leg of the traded pair"""
    symbol: str = Field(min_length=1)
    address: str = Field(pattern=ADDRESS_PATTERN, description="ERC-20 contract address")
    decimals: int = Field(ge=0, le=36)


class PairConfig(BaseModel):
    asset: TokenConfig
    quote: TokenConfig

    @field_validator("quote")
    @classmethod
    def distinct_tokens(cls, v: TokenConfig, info) -> TokenConfig:
        asset = info.data.get("asset")
        if asset is not None and asset.address.lower() == v.address.lower():
            raise ValueError("asset and quote must be different tokens")
        return v


class ChainConfig(BaseModel):
    chain_id: int = Field(gt=0)
    settlement_contract: str = Field(pattern=ADDRESS_PATTERN)
    rpc_env: str = Field(default="BASE_RPC_URL", min_length=1)
    rpc_timeout_seconds: float = Field(default=10.0, gt=0, le=60)


class OrderBookConfig(BaseModel):
    api_base: str = Field(pattern="^https?://")
    timeout_seconds: float = Field(default=15.0, gt=0, le=60)


class PriceSourceConfig(BaseModel):
    name: str = Field(min_length=1)
    url: str = Field(pattern="^https?://")
    path: str = Field(min_length=1, description="Dotted path to the price in the JSON response")
    timeout_seconds: float = Field(default=10.0, gt=0, le=60)


class LoopConfig(BaseModel):
    interval_seconds: float = Field(default=300.0, gt=0)
    jitter_pct: float = Field(default=0.0, ge=0, le=50)
    shutdown_grace_seconds: float = Field(default=30.0, ge=0)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: str = Field(default="logs/cowtrader.log")


class StateConfig(BaseModel):
    file: str = Field(default="data/bot_state.json")
    audit_file: str = Field(default="logs/audit.jsonl")
    lock_dir: str = Field(default="data")


class AlertsConfig(BaseModel):
    enabled: bool = True
    min_severity: str = Field(default="info", pattern="^(info|warning|critical)$")
    dedupe_seconds: float = Field(default=60.0, ge=0)
    timeout_seconds: float = Field(default=5.0, gt=0)
    dry_run: bool = False
    webhook_url: Optional[str] = None


class MetricsConfig(BaseModel):
    enabled: bool = False
    port: int = Field(default=9100, gt=0, lt=65536)


class MonitoringConfig(BaseModel):
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


class AppSection(BaseModel):
    name: str = "cowtrader"
    mode: str = Field(pattern="^(DRY_RUN|LIVE)$")


class AppSchema(BaseModel):
    """Complete app.yaml schema"""
    app: AppSection
    chain: ChainConfig
    pair: PairConfig
    order_book: OrderBookConfig
    price_sources: List[PriceSourceConfig] = Field(min_length=1)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)


# ===== Policy Schema =====
class TradingConfig(BaseModel):
    """Hard trading limits"""
    min_profit_margin: float = Field(ge=0, description="Quote units above cost basis required to sell")
    max_position_pct: float = Field(gt=0, le=1, description="Max share of either asset")
    low_concentration: float = Field(ge=0, lt=1, description="Asset share below which the fallback buys")
    min_order_size: float = Field(gt=0, description="Minimum order notional (quote units)")
    quote_reserve: float = Field(default=50.0, ge=0)
    asset_reserve: float = Field(default=0.001, ge=0)
    duplicate_threshold: float = Field(default=10.0, gt=0)
    stale_distance: float = Field(default=200.0, gt=0)
    order_validity_hours: float = Field(default=24.0, gt=0, le=24 * 30)

    @field_validator("low_concentration")
    @classmethod
    def below_cap(cls, v: float, info) -> float:
        cap = info.data.get("max_position_pct")
        if cap is not None and v >= cap:
            raise ValueError(f"low_concentration ({v}) must be < max_position_pct ({cap})")
        return v


class FallbackConfig(BaseModel):
    price_offset: float = Field(default=50.0, ge=0)
    buy_fraction: float = Field(default=0.3, gt=0, le=1)
    max_buy_quote: float = Field(default=500.0, gt=0)
    sell_fraction: float = Field(default=0.3, gt=0, le=1)


class ReconcileConfig(BaseModel):
    page_size: int = Field(default=20, gt=0, le=1000)
    max_pages: int = Field(default=1, gt=0, le=50)
    cold_start_page_size: int = Field(default=50, gt=0, le=1000)
    cold_start_max_pages: int = Field(default=1, gt=0, le=50)


class BackendConfig(BaseModel):
    provider: str = Field(pattern="^(openrouter|openai|anthropic|mock)$")
    model: Optional[str] = None
    base_url: Optional[str] = None
    response: Optional[str] = None


class AIConfig(BaseModel):
    timeout_seconds: float = Field(default=15.0, gt=0, le=120)
    temperature: float = Field(default=0.3, ge=0, le=2)
    max_tokens: int = Field(default=500, gt=0)
    backends: List[BackendConfig] = Field(default_factory=list)


class PolicySchema(BaseModel):
    """Complete policy.yaml schema"""
    trading: TradingConfig
    fallback: FallbackConfig = Field(default_factory=FallbackConfig)
    reconcile: ReconcileConfig = Field(default_factory=ReconcileConfig)
    ai: AIConfig = Field(default_factory=AIConfig)


# ===== Validation Functions =====
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
        return yaml.safe_load(f) or {}


def _validate_file(config_dir: Path, name: str, schema) -> List[str]:
    errors = []
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
        errors.append(f"{name}: expected a mapping at top level ({e})")
    return errors


def validate_app(config_dir: Path) -> List[str]:
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_policy(config_dir: Path) -> List[str]:
    return _validate_file(config_dir, "policy.yaml", PolicySchema)


def validate_environment(required: Tuple[str, ...] = REQUIRED_ENV,
                         env: Optional[Mapping[str, str]] = None) -> List[str]:
    """Required secrets that are missing or blank."""
    env = os.environ if env is None else env
    return [f"environment: {name} is not set" for name in required if not (env.get(name) or "").strip()]


def validate_all_configs(config_dir: str = "config", env: Optional[Mapping[str, str]] = None,
                         check_env: bool = True) -> List[str]:
    """
    Validate all configuration files (and, by default, required secrets).

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_policy(config_path))
    if check_env:
        all_errors.extend(validate_environment(env=env))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


def load_validated_configs(config_dir: str = "config", env: Optional[Mapping[str, str]] = None,
                           check_env: bool = True) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """
    Validate, then return (app, policy) as plain dicts with schema defaults filled in.

    Raises:
        ConfigurationError: if anything is invalid
    """
    errors = validate_all_configs(config_dir, env=env, check_env=check_env)
    if errors:
        raise ConfigurationError(errors)

    config_path = Path(config_dir)
    app = AppSchema(**load_yaml_file(config_path / "app.yaml")).model_dump()
    policy = PolicySchema(**load_yaml_file(config_path / "policy.yaml")).model_dump()
    return app, policy


if __name__ == "__main__":
    import sys

    from infra.env import load_env

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    load_env()

    errors = validate_all_configs(sys.argv[1] if len(sys.argv) > 1 else "config")
    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    print("\n✅ All configuration files are valid!\n")
    sys.exit(0)
