"""
Settlement configuration loading: layering, validation and safe fallback
"""

from decimal import Decimal
from unittest.mock import Mock, patch

import pytest

from config import (
    SettlementConfig, load_settlement_config, parse_field, ConfigValidationError, Config
)
from models import SystemConfig


class TestSettlementConfigDefaults:

    def test_defaults(self):
        config = SettlementConfig()
        assert config.admin_split == Decimal("0.40")
        assert config.treasury_split == Decimal("0.60")
        assert (config.tap_pot_split, config.predict_pot_split, config.wheel_vault_split) == (
            Decimal("0.50"), Decimal("0.30"), Decimal("0.20")
        )
        assert config.audit_delay_hours == 24
        assert config.expiry_warning_hours == 48
        assert config.referral_reward_amount == Decimal("1.00")
        assert config.tickets_for_tier("bronze") == 4
        assert config.tickets_for_tier("FREE") == 0

    def test_load_without_overrides_returns_defaults(self):
        assert load_settlement_config() == SettlementConfig()


class TestParseField:

    @pytest.mark.parametrize("name,raw", [
        ("admin_split", "1.5"),
        ("admin_split", "-0.1"),
        ("audit_delay_hours", "-1"),
        ("audit_delay_hours", "2.5"),
        ("drip_days", "0"),
        ("withdrawal_fee", "abc"),
        ("withdrawal_fee", "NaN"),
        ("no_such_field", "1"),
    ])
    def test_rejects_out_of_range(self, name, raw):
        with pytest.raises(ConfigValidationError):
            parse_field(name, raw)

    def test_tier_map_from_json(self):
        assert parse_field("spin_tickets_per_tier", '{"gold": 8}') == {"GOLD": 8}

    def test_tier_map_rejects_non_mapping(self):
        with pytest.raises(ConfigValidationError):
            parse_field("tier_prices", "[1, 2]")


class TestLoadSettlementConfig:

    def test_explicit_override_applied(self):
        config = load_settlement_config(overrides={"audit_delay_hours": "12", "min_withdrawal": "10"})
        assert config.audit_delay_hours == 12
        assert config.min_withdrawal == Decimal("10")

    def test_invalid_override_keeps_default(self):
        config = load_settlement_config(overrides={"audit_delay_hours": "-5", "expiry_warning_hours": "24"})
        assert config.audit_delay_hours == 24, "Rejected value must fall back to the default"
        assert config.expiry_warning_hours == 24

    def test_env_override(self):
        with patch.dict("os.environ", {"SETTLEMENT_REFERRAL_REWARD_AMOUNT": "2.50"}):
            config = load_settlement_config()
        assert config.referral_reward_amount == Decimal("2.50")

    def test_table_overrides_win_over_env(self, db_session):
        db_session.add(SystemConfig(key="audit_delay_hours", value="6"))
        db_session.flush()
        with patch.dict("os.environ", {"SETTLEMENT_AUDIT_DELAY_HOURS": "12"}):
            config = load_settlement_config(db_session)
        assert config.audit_delay_hours == 6

    def test_partial_tier_map_merges_with_defaults(self):
        config = load_settlement_config(overrides={"spin_tickets_per_tier": {"GOLD": 10}})
        assert config.spin_tickets_per_tier == {"BRONZE": 4, "SILVER": 4, "GOLD": 10}

    def test_split_group_not_summing_to_one_reverts(self):
        config = load_settlement_config(overrides={"admin_split": "0.5"})
        assert config.admin_split == Decimal("0.40")
        assert config.treasury_split == Decimal("0.60")

    def test_consistent_split_group_accepted(self):
        config = load_settlement_config(overrides={"admin_split": "0.30", "treasury_split": "0.70"})
        assert config.admin_split == Decimal("0.30")

    def test_pool_split_group_reverts_as_a_whole(self):
        config = load_settlement_config(overrides={"tap_pot_split": "0.60"})
        assert config.tap_pot_split == Decimal("0.50")
        assert config.wheel_vault_split == Decimal("0.20")

    def test_unreadable_table_falls_back(self):
        broken_session = Mock()
        broken_session.query.side_effect = RuntimeError("connection lost")
        config = load_settlement_config(broken_session)
        assert config == SettlementConfig(), "Config read failure must never crash the loader"


class TestPaymentConfiguration:

    def test_sandbox_always_valid(self):
        with patch.object(Config, "PAYMENT_MODE", "testnet"):
            assert Config.validate_payment_configuration()

    def test_mainnet_requires_real_secret(self):
        with patch.object(Config, "PAYMENT_MODE", "mainnet"), \
             patch.object(Config, "PAYMENT_WEBHOOK_SECRET", "sandbox_default_secret_key_change_me"):
            assert not Config.validate_payment_configuration()
