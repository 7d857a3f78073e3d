"""Configuration management for the settlement backend"""

import os
import json
import logging
from dataclasses import dataclass, field, fields, replace
from decimal import Decimal, InvalidOperation
from typing import Dict, Any, Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


class Config:
    """Process environment, read once at import"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///settlement.db")

    # Payout wallets that receive the admin and treasury shares of every payment
    ADMIN_PROFITS_WALLET = os.getenv("ADMIN_PROFITS_WALLET", "UQAdminTestnetWallet")
    GAME_TREASURY_WALLET = os.getenv("GAME_TREASURY_WALLET", "UQTreasuryTestnetWallet")

    # Payment provider
    PAYMENT_MODE = os.getenv("PAYMENT_MODE", "testnet").lower()
    PAYMENT_WEBHOOK_SECRET = os.getenv(
        "PAYMENT_WEBHOOK_SECRET", "sandbox_default_secret_key_change_me"
    )
    INVOICE_EXPIRY_MINUTES = int(os.getenv("INVOICE_EXPIRY_MINUTES", "30"))

    # Price sources
    CMC_API_KEY = os.getenv("CMC_API_KEY")
    ORACLE_SOURCE_TIMEOUT_SECONDS = int(os.getenv("ORACLE_SOURCE_TIMEOUT_SECONDS", "8"))

    # Scheduler / leader election
    SCHEDULER_INSTANCE_ID = os.getenv("SCHEDULER_INSTANCE_ID")
    SCHEDULER_LEASE_SECONDS = int(os.getenv("SCHEDULER_LEASE_SECONDS", "90"))

    @staticmethod
    def is_sandbox() -> bool:
        return Config.PAYMENT_MODE in ("testnet", "sandbox")

    @staticmethod
    def validate_payment_configuration() -> bool:
        """Mainnet mode must never run with the sandbox webhook secret"""
        if Config.is_sandbox():
            return True
        if Config.PAYMENT_WEBHOOK_SECRET == "sandbox_default_secret_key_change_me":
            logger.error("❌ PAYMENT_WEBHOOK_SECRET must be configured for mainnet mode")
            return False
        return True


PAID_TIERS = ("BRONZE", "SILVER", "GOLD")


@dataclass(frozen=True)
class SettlementConfig:
    """
    Validated settlement parameters.

    Built once at startup by load_settlement_config() and handed to every
    service that needs it. Defaults below are the safe fallback for any
    override that is missing, malformed or out of range.
    """

    admin_split: Decimal = Decimal("0.40")
    treasury_split: Decimal = Decimal("0.60")
    tap_pot_split: Decimal = Decimal("0.50")
    predict_pot_split: Decimal = Decimal("0.30")
    wheel_vault_split: Decimal = Decimal("0.20")

    drip_days: int = 30
    subscription_days: int = 30
    spin_tickets_per_tier: Dict[str, int] = field(
        default_factory=lambda: {"BRONZE": 4, "SILVER": 4, "GOLD": 4}
    )
    founder_limit: int = 100
    tier_prices: Dict[str, Decimal] = field(
        default_factory=lambda: {
            "BRONZE": Decimal("5.00"),
            "SILVER": Decimal("15.00"),
            "GOLD": Decimal("50.00"),
        }
    )
    tier_daily_units: Dict[str, Decimal] = field(
        default_factory=lambda: {
            "BRONZE": Decimal("0.10"),
            "SILVER": Decimal("0.30"),
            "GOLD": Decimal("1.00"),
        }
    )
    price_epsilon: Decimal = Decimal("0.01")

    audit_delay_hours: int = 24
    expiry_warning_hours: int = 48
    referral_reward_amount: Decimal = Decimal("1.00")
    withdrawal_fee: Decimal = Decimal("0.50")
    min_withdrawal: Decimal = Decimal("5.00")
    abuse_flag_threshold: int = 50

    prediction_maturity_hours: int = 12
    oracle_cache_ttl_seconds: int = 300
    oracle_max_attempts: int = 5
    oracle_deadline_seconds: int = 300
    tier_cache_ttl_seconds: int = 60
    free_locked_prize_coins: int = 5000
    free_monthly_spins: int = 1

    def tickets_for_tier(self, tier_name: str) -> int:
        return self.spin_tickets_per_tier.get(tier_name.upper(), 0)


FRACTION_FIELDS = (
    "admin_split",
    "treasury_split",
    "tap_pot_split",
    "predict_pot_split",
    "wheel_vault_split",
)
COUNT_FIELDS = (
    "drip_days",
    "subscription_days",
    "founder_limit",
    "audit_delay_hours",
    "expiry_warning_hours",
    "abuse_flag_threshold",
    "prediction_maturity_hours",
    "oracle_cache_ttl_seconds",
    "oracle_max_attempts",
    "oracle_deadline_seconds",
    "tier_cache_ttl_seconds",
    "free_locked_prize_coins",
    "free_monthly_spins",
)
AMOUNT_FIELDS = (
    "referral_reward_amount",
    "withdrawal_fee",
    "min_withdrawal",
    "price_epsilon",
)
TIER_INT_FIELDS = ("spin_tickets_per_tier",)
TIER_AMOUNT_FIELDS = ("tier_prices", "tier_daily_units")

# Fields that must be strictly positive for the arithmetic that uses them
NON_ZERO_FIELDS = ("drip_days", "subscription_days", "oracle_max_attempts")


class ConfigValidationError(ValueError):
    """A single override failed validation"""


def _parse_decimal(name: str, raw: Any) -> Decimal:
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError) as e:
        raise ConfigValidationError(f"{name}={raw!r} is not a number") from e
    if not value.is_finite():
        raise ConfigValidationError(f"{name}={raw!r} is not finite")
    return value


def _parse_count(name: str, raw: Any) -> int:
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError) as e:
        raise ConfigValidationError(f"{name}={raw!r} is not an integer") from e
    if not value.is_finite() or value != value.to_integral_value():
        raise ConfigValidationError(f"{name}={raw!r} is not an integer")
    count = int(value)
    if count < 0:
        raise ConfigValidationError(f"{name}={count} must be >= 0")
    if name in NON_ZERO_FIELDS and count == 0:
        raise ConfigValidationError(f"{name} must be > 0")
    return count


def _parse_tier_map(name: str, raw: Any, parse_value) -> Dict[str, Any]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigValidationError(f"{name} is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigValidationError(f"{name} must be a mapping of tier -> value")
    return {str(tier).upper(): parse_value(f"{name}[{tier}]", value) for tier, value in raw.items()}


def _parse_non_negative_amount(name: str, raw: Any) -> Decimal:
    value = _parse_decimal(name, raw)
    if value < 0:
        raise ConfigValidationError(f"{name}={value} must be >= 0")
    return value


def parse_field(name: str, raw: Any) -> Any:
    """Parse and range-check a single override value"""
    if name in FRACTION_FIELDS:
        value = _parse_decimal(name, raw)
        if value < 0 or value > 1:
            raise ConfigValidationError(f"{name}={value} must be within [0, 1]")
        return value
    if name in COUNT_FIELDS:
        return _parse_count(name, raw)
    if name in AMOUNT_FIELDS:
        return _parse_non_negative_amount(name, raw)
    if name in TIER_INT_FIELDS:
        return _parse_tier_map(name, raw, _parse_count)
    if name in TIER_AMOUNT_FIELDS:
        return _parse_tier_map(name, raw, _parse_non_negative_amount)
    raise ConfigValidationError(f"Unknown settlement config key: {name}")


def _check_split_groups(config: SettlementConfig) -> SettlementConfig:
    """Split groups must each sum to one; a broken group reverts to its defaults"""
    defaults = SettlementConfig()

    if config.admin_split + config.treasury_split != Decimal("1"):
        logger.warning(
            f"⚠️ SETTLEMENT_CONFIG: admin_split {config.admin_split} + treasury_split "
            f"{config.treasury_split} != 1, using defaults"
        )
        config = replace(
            config, admin_split=defaults.admin_split, treasury_split=defaults.treasury_split
        )

    pool_total = config.tap_pot_split + config.predict_pot_split + config.wheel_vault_split
    if pool_total != Decimal("1"):
        logger.warning(
            f"⚠️ SETTLEMENT_CONFIG: pool splits sum to {pool_total}, using defaults"
        )
        config = replace(
            config,
            tap_pot_split=defaults.tap_pot_split,
            predict_pot_split=defaults.predict_pot_split,
            wheel_vault_split=defaults.wheel_vault_split,
        )
    return config


def _read_env_overrides() -> Dict[str, str]:
    overrides = {}
    for f in fields(SettlementConfig):
        raw = os.getenv(f"SETTLEMENT_{f.name.upper()}")
        if raw is not None and raw.strip() != "":
            overrides[f.name] = raw
    return overrides


def _read_table_overrides(session) -> Dict[str, str]:
    from models import SystemConfig

    known = {f.name for f in fields(SettlementConfig)}
    rows = session.query(SystemConfig).filter(SystemConfig.key.in_(known)).all()
    return {row.key: row.value for row in rows}


def load_settlement_config(session=None, overrides: Optional[Dict[str, Any]] = None) -> SettlementConfig:
    """
    Build the validated SettlementConfig.

    Layers, later wins: defaults, SETTLEMENT_<FIELD> environment variables,
    system_config table rows (when a session is given), explicit overrides.
    Never raises: anything unreadable or out of range keeps its default.
    """
    layered: Dict[str, Any] = {}
    layered.update(_read_env_overrides())

    if session is not None:
        try:
            layered.update(_read_table_overrides(session))
        except Exception as e:
            logger.warning(f"⚠️ SETTLEMENT_CONFIG: system_config read failed, using env/defaults: {e}")

    if overrides:
        layered.update(overrides)

    defaults = SettlementConfig()
    accepted: Dict[str, Any] = {}
    for name, raw in layered.items():
        try:
            value = parse_field(name, raw)
            if name in TIER_INT_FIELDS or name in TIER_AMOUNT_FIELDS:
                # Partial tier maps only override the tiers they name
                value = {**getattr(defaults, name), **value}
            accepted[name] = value
        except ConfigValidationError as e:
            logger.warning(f"⚠️ SETTLEMENT_CONFIG: rejected override, keeping default: {e}")

    config = _check_split_groups(SettlementConfig(**accepted))
    if accepted:
        logger.info(f"✅ SETTLEMENT_CONFIG: loaded with overrides for {sorted(accepted)}")
    return config
