"""
Wheel spins against the per-tier monthly vault
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from models import WheelSpin, JackpotVault, PrizeTier
from services.errors import NoSpinAvailableError
from services.jackpot_vault import fund_vault
from services.ledger_service import LedgerService
from services.notification_sink import RecordingNotificationSink
from services.spin_engine import SpinEngine, draw_band, RNG_RANGE, JACKPOT_TRIGGER
from tests.fixtures import ScriptedRandbelow
from utils.datetime_helpers import month_key


@pytest.fixture
def sink():
    return RecordingNotificationSink()


@pytest.fixture
def spin_with(settlement_config, sink):
    def _build(*values):
        rng = ScriptedRandbelow(values)
        return SpinEngine(settlement_config, randbelow=rng, sink=sink), rng
    return _build


@pytest.fixture
def paid_user(make_user):
    def _make(tier="GOLD", tickets=4):
        user = make_user(tier=tier, spin_tickets=tickets)
        user.spin_tickets_expiry = user.subscription_expiry
        return user
    return _make


class TestDrawBand:

    @pytest.mark.parametrize("rng_value,tier,expected", [
        (JACKPOT_TRIGGER, "GOLD", PrizeTier.JACKPOT),
        (0, "BRONZE", PrizeTier.BIG_WIN),
        (49, "BRONZE", PrizeTier.BIG_WIN),
        (50, "BRONZE", PrizeTier.COMMON),
        (2349, "BRONZE", PrizeTier.COMMON),
        (2350, "BRONZE", PrizeTier.NO_CASH),
        (1549, "GOLD", PrizeTier.COMMON),
        (1550, "GOLD", PrizeTier.NO_CASH),
        (RNG_RANGE - 1, "SILVER", PrizeTier.NO_CASH),
    ])
    def test_bands(self, rng_value, tier, expected):
        assert draw_band(rng_value, tier) == expected


class TestPaidSpin:

    def test_jackpot_paid_from_vault(self, db_session, paid_user, spin_with, sink, now):
        user = paid_user("GOLD")
        fund_vault(db_session, "GOLD", month_key(now), Decimal("600"))
        engine, rng = spin_with(JACKPOT_TRIGGER)

        result = engine.spin(db_session, user.id, now)

        assert rng.calls == [(RNG_RANGE, JACKPOT_TRIGGER)]
        assert result.prize_tier == "jackpot"
        assert result.usdt_amount == Decimal("500")
        assert result.vault_balance_after == Decimal("100")
        assert user.wallet_balance == Decimal("500")
        assert user.spin_tickets == 3
        vault = db_session.query(JackpotVault).filter_by(tier_name="GOLD").one()
        assert vault.total_paid_out == Decimal("500")
        assert sink.events[0][0] == "wheel.big_win"
        assert LedgerService.verify_chain(db_session, user.id).valid

    def test_band_downgraded_to_what_vault_can_cover(self, db_session, paid_user, spin_with, now):
        user = paid_user("BRONZE")
        fund_vault(db_session, "BRONZE", month_key(now), Decimal("3.00"))
        engine, _ = spin_with(10)

        result = engine.spin(db_session, user.id, now)

        assert result.drawn_tier == "big_win"
        assert result.prize_tier == "common"
        assert result.usdt_amount == Decimal("0.50")
        assert result.vault_balance_after == Decimal("2.50")

    def test_empty_vault_pays_coins(self, db_session, paid_user, spin_with, now):
        user = paid_user("SILVER")
        fund_vault(db_session, "SILVER", month_key(now), Decimal("0.20"))
        engine, rng = spin_with(10, 0)

        result = engine.spin(db_session, user.id, now)

        assert result.prize_tier == "no_cash"
        assert result.usdt_amount == Decimal("0")
        assert result.coins_amount == 1000
        assert result.vault_balance_after == Decimal("0.20"), "Vault balance must never go below what it holds"
        assert user.total_coins == 1000
        assert len(rng.calls) == 2

    def test_spin_history_row(self, db_session, paid_user, spin_with, now):
        user = paid_user("GOLD")
        engine, _ = spin_with(9000, 40)

        result = engine.spin(db_session, user.id, now)

        row = db_session.get(WheelSpin, result.spin_id)
        assert row.rng_value == 9000
        assert row.prize_label == "2,500 Coins"
        assert row.month_key == month_key(now)

    def test_no_tickets(self, db_session, paid_user, spin_with, now):
        user = paid_user("GOLD", tickets=0)
        engine, rng = spin_with()

        with pytest.raises(NoSpinAvailableError):
            engine.spin(db_session, user.id, now)
        assert rng.calls == [], "No draw happens without a spin available"

    def test_expired_tickets(self, db_session, paid_user, spin_with, now):
        user = paid_user("GOLD")
        user.spin_tickets_expiry = now
        engine, _ = spin_with()

        with pytest.raises(NoSpinAvailableError):
            engine.spin(db_session, user.id, now)


class TestFreeSpin:

    def test_cash_band_becomes_locked_prize(self, db_session, make_user, spin_with, now):
        user = make_user()
        fund_vault(db_session, "FREE", month_key(now), Decimal("100"))
        engine, _ = spin_with(10)

        result = engine.spin(db_session, user.id, now)

        assert result.locked_prize
        assert result.prize_tier == "locked_prize"
        assert result.coins_amount == 5000
        assert result.usdt_amount == Decimal("0")
        assert user.wallet_balance == Decimal("0")
        assert user.spins_remaining == 0
        assert db_session.query(JackpotVault).filter_by(tier_name="FREE").one().total_balance == Decimal("100")

    def test_monthly_allowance_used_up(self, db_session, make_user, spin_with, now):
        user = make_user(spins_remaining=0, last_spin_refill=now)
        engine, _ = spin_with()

        with pytest.raises(NoSpinAvailableError):
            engine.spin(db_session, user.id, now)

    def test_allowance_refilled_next_month(self, db_session, make_user, spin_with, now):
        user = make_user()
        engine, rng = spin_with(9000, 40, 9000, 40)
        april = now + timedelta(days=31)

        engine.spin(db_session, user.id, now)
        assert user.spins_remaining == 0

        result = engine.spin(db_session, user.id, april)

        assert result.prize_label == "2,500 Coins"
        assert user.spins_remaining == 0
        assert user.last_spin_refill == april
        assert user.total_spins == 2
        assert len(rng.calls) == 4

    def test_allowance_not_refilled_within_month(self, db_session, make_user, spin_with, now):
        user = make_user()
        engine, _ = spin_with(9000, 40)
        engine.spin(db_session, user.id, now)

        with pytest.raises(NoSpinAvailableError):
            engine.spin(db_session, user.id, now + timedelta(days=10))
        assert user.last_spin_refill == now, "Second spin in the same month must not refill"

    def test_lapsed_subscriber_spins_as_free(self, db_session, make_user, spin_with, now):
        user = make_user(tier="GOLD", expires_in=timedelta(days=-1), spin_tickets=2)
        engine, _ = spin_with(JACKPOT_TRIGGER)

        result = engine.spin(db_session, user.id, now)

        assert result.locked_prize
        assert user.spin_tickets == 2
