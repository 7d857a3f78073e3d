"""
Vault-Backed Spin Engine

One spin = one transaction:
  check spin availability -> lock the tier's current-month vault row ->
  draw 0..10000 -> map to a prize band -> downgrade while the vault cannot
  afford the band -> pay, debit vault, consume ticket/allowance, write ledger
  and history rows.

The FOR UPDATE lock on the vault row serialises concurrent spins against the
same (tier, month), so two spins can never both pay out of a stale balance.

Users without an active subscription spin on their monthly allowance. A cash
band drawn by such a user is never paid: it becomes a fixed coin award
labelled as a locked prize.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, NamedTuple, Optional, Tuple

from sqlalchemy.orm import Session

from config import SettlementConfig
from models import (
    User, WheelSpin, PrizeTier, PoolGame, TierName,
    LedgerEntryType, LedgerDirection, LedgerCurrency
)
from services.errors import NoSpinAvailableError
from services.jackpot_vault import lock_vault
from services.ledger_service import LedgerService
from services.notification_sink import NotificationSink, LoggingNotificationSink, safe_publish
from services.wallet_service import WalletService
from utils.datetime_helpers import get_naive_utc_now, month_key

logger = logging.getLogger(__name__)

RNG_RANGE = 10001
JACKPOT_TRIGGER = 7777
BIG_WIN_CEILING = 50

TIER_JACKPOT_VALUES: Dict[str, Decimal] = {
    "BRONZE": Decimal("100"),
    "SILVER": Decimal("200"),
    "GOLD": Decimal("500"),
}
DEFAULT_JACKPOT_VALUE = Decimal("100")

TIER_COMMON_CEILINGS: Dict[str, int] = {
    "BRONZE": BIG_WIN_CEILING + 2300,
    "SILVER": BIG_WIN_CEILING + 2100,
    "GOLD": BIG_WIN_CEILING + 1500,
}

BIG_WIN_VALUE = Decimal("5.00")
COMMON_VALUE = Decimal("0.50")

LOCKED_PRIZE_LABEL = "Locked $100 USDT"


class NoCashPrize(NamedTuple):
    label: str
    coins: int
    weight: int


NO_CASH_PRIZES: Tuple[NoCashPrize, ...] = (
    NoCashPrize("1,000 Coins", 1000, 30),
    NoCashPrize("2,500 Coins", 2500, 25),
    NoCashPrize("5,000 Coins", 5000, 15),
    NoCashPrize("500 Coins", 500, 15),
)

# Cash bands from most to least valuable; a band the vault cannot cover falls to the next
_CASH_FALLBACK = (PrizeTier.JACKPOT, PrizeTier.BIG_WIN, PrizeTier.COMMON)


@dataclass
class SpinResult:
    prize_tier: str
    label: str
    usdt_amount: Decimal
    coins_amount: int
    rng_value: int
    locked_prize: bool = False
    drawn_tier: Optional[str] = None
    vault_balance_after: Optional[Decimal] = None
    spin_id: Optional[str] = None


def draw_band(rng_value: int, tier_name: str) -> PrizeTier:
    """Map a raw draw to its prize band for the tier"""
    if rng_value == JACKPOT_TRIGGER:
        return PrizeTier.JACKPOT
    if rng_value < BIG_WIN_CEILING:
        return PrizeTier.BIG_WIN
    if rng_value < TIER_COMMON_CEILINGS.get(tier_name, BIG_WIN_CEILING + 2300):
        return PrizeTier.COMMON
    return PrizeTier.NO_CASH


def cash_value(band: PrizeTier, tier_name: str) -> Decimal:
    if band == PrizeTier.JACKPOT:
        return TIER_JACKPOT_VALUES.get(tier_name, DEFAULT_JACKPOT_VALUE)
    if band == PrizeTier.BIG_WIN:
        return BIG_WIN_VALUE
    if band == PrizeTier.COMMON:
        return COMMON_VALUE
    return Decimal("0")


def cash_label(band: PrizeTier, value: Decimal) -> str:
    if band == PrizeTier.JACKPOT:
        return f"GRAND JACKPOT ${value}!"
    if band == PrizeTier.BIG_WIN:
        return f"Big Win ${value}!"
    return f"{value} USDT"


class SpinEngine:
    """Draws wheel prizes against the per-tier monthly vault"""

    def __init__(
        self,
        config: SettlementConfig,
        randbelow: Callable[[int], int] = secrets.randbelow,
        sink: Optional[NotificationSink] = None,
    ):
        self.config = config
        self._randbelow = randbelow
        self.sink = sink or LoggingNotificationSink()

    def pick_no_cash_prize(self) -> NoCashPrize:
        total_weight = sum(prize.weight for prize in NO_CASH_PRIZES)
        roll = self._randbelow(total_weight)
        for prize in NO_CASH_PRIZES:
            if roll < prize.weight:
                return prize
            roll -= prize.weight
        return NO_CASH_PRIZES[0]

    @staticmethod
    def _is_paid_spin(user: User, now: datetime) -> bool:
        return user.tier != TierName.FREE.value and user.has_active_subscription(now)

    def _refill_free_allowance(self, user: User, now: datetime) -> None:
        """Reset the free allowance once per calendar month"""
        if user.last_spin_refill is not None and month_key(user.last_spin_refill) == month_key(now):
            return
        user.spins_remaining = self.config.free_monthly_spins
        user.last_spin_refill = now
        logger.info(f"🔄 SPIN: {user.id} free allowance refilled to {user.spins_remaining} for {month_key(now)}")

    def _check_availability(self, user: User, paid: bool, now: datetime) -> None:
        if paid:
            tickets_expired = user.spin_tickets_expiry is not None and user.spin_tickets_expiry <= now
            if tickets_expired or (user.spin_tickets or 0) <= 0:
                raise NoSpinAvailableError("No spin tickets remaining. Renew your subscription!")
        elif (user.spins_remaining or 0) <= 0:
            raise NoSpinAvailableError("No spins remaining this month. Upgrade to get more spins!")

    def spin(self, session: Session, user_id: str, now: Optional[datetime] = None) -> SpinResult:
        """Run one spin inside the caller's transaction"""
        now = now or get_naive_utc_now()
        wallet = WalletService(session)
        user = wallet.get_user(user_id, for_update=True)

        paid = self._is_paid_spin(user, now)
        if not paid:
            self._refill_free_allowance(user, now)
        self._check_availability(user, paid, now)

        rng_value = self._randbelow(RNG_RANGE)
        tier_name = user.tier.upper()
        drawn = draw_band(rng_value, tier_name)
        current_month = month_key(now)
        logger.info(f"🎡 SPIN: {user_id} ({tier_name}, {'paid' if paid else 'free'}) RNG={rng_value} -> {drawn.value}")

        vault = None
        vault_before = None
        if paid:
            vault = lock_vault(session, tier_name, current_month)
            vault_before = Decimal(vault.total_balance)

        result = self._resolve_prize(drawn, tier_name, paid, vault_before, rng_value)
        result.vault_balance_after = vault_before

        # Consume the spin
        if paid:
            tickets_before = user.spin_tickets
            user.spin_tickets = tickets_before - 1
            LedgerService.append(
                session,
                user_id=user.id,
                entry_type=LedgerEntryType.SPIN_TICKET_USE,
                direction=LedgerDirection.DEBIT,
                amount=1,
                currency=LedgerCurrency.TICKETS,
                balance_before=tickets_before,
                balance_after=user.spin_tickets,
                game=PoolGame.WHEEL_VAULT.value,
                tier_at_time=tier_name,
                note="Used 1 spin ticket",
            )
        else:
            user.spins_remaining = user.spins_remaining - 1
        user.total_spins = (user.total_spins or 0) + 1

        # Pay the prize
        if result.usdt_amount > 0:
            vault.total_balance = vault_before - result.usdt_amount
            vault.total_paid_out = Decimal(vault.total_paid_out) + result.usdt_amount
            result.vault_balance_after = Decimal(vault.total_balance)
            wallet.credit_usdt(
                user,
                result.usdt_amount,
                LedgerEntryType.WHEEL_WIN,
                game=PoolGame.WHEEL_VAULT.value,
                note=(
                    f"Wheel spin: {result.label} ${result.usdt_amount} USDT credited, "
                    f"{tier_name} {current_month} vault ${vault_before} -> ${result.vault_balance_after}"
                ),
            )
        elif result.coins_amount > 0:
            wallet.credit_coins(
                user,
                result.coins_amount,
                LedgerEntryType.WHEEL_WIN,
                game=PoolGame.WHEEL_VAULT.value,
                note=f"Wheel spin: {result.label}, no USDT payout",
            )

        spin_row = WheelSpin(
            user_id=user.id,
            tier_name=tier_name,
            month_key=current_month,
            rng_value=rng_value,
            prize_tier=result.prize_tier,
            prize_label=result.label,
            usdt_amount=result.usdt_amount,
            coins_amount=result.coins_amount,
            locked_prize=result.locked_prize,
            vault_balance_before=vault_before,
            vault_balance_after=result.vault_balance_after,
            created_at=now,
        )
        session.add(spin_row)
        session.flush()
        result.spin_id = spin_row.id

        if result.prize_tier == PrizeTier.JACKPOT.value or result.usdt_amount >= BIG_WIN_VALUE:
            safe_publish(self.sink, "wheel.big_win", {
                "userId": user.id,
                "username": user.username,
                "tierName": tier_name,
                "amount": str(result.usdt_amount),
                "label": result.label,
            })

        logger.info(f"✅ SPIN: {user_id} won {result.label} ({result.prize_tier}, RNG={rng_value})")
        return result

    def _resolve_prize(self, drawn: PrizeTier, tier_name: str, paid: bool,
                       vault_balance: Optional[Decimal], rng_value: int) -> SpinResult:
        if drawn != PrizeTier.NO_CASH and not paid:
            return SpinResult(
                prize_tier=PrizeTier.LOCKED_PRIZE.value,
                label=LOCKED_PRIZE_LABEL,
                usdt_amount=Decimal("0"),
                coins_amount=self.config.free_locked_prize_coins,
                rng_value=rng_value,
                locked_prize=True,
                drawn_tier=drawn.value,
            )

        if drawn != PrizeTier.NO_CASH:
            for band in _CASH_FALLBACK[_CASH_FALLBACK.index(drawn):]:
                value = cash_value(band, tier_name)
                if vault_balance is not None and vault_balance >= value:
                    if band != drawn:
                        logger.info(
                            f"⚠️ SPIN: {tier_name} vault ${vault_balance} cannot cover {drawn.value}, "
                            f"downgraded to {band.value}"
                        )
                    return SpinResult(
                        prize_tier=band.value,
                        label=cash_label(band, value),
                        usdt_amount=value,
                        coins_amount=0,
                        rng_value=rng_value,
                        drawn_tier=drawn.value,
                    )
            logger.info(f"⚠️ SPIN: {tier_name} vault ${vault_balance} cannot cover any cash prize")

        prize = self.pick_no_cash_prize()
        return SpinResult(
            prize_tier=PrizeTier.NO_CASH.value,
            label=prize.label,
            usdt_amount=Decimal("0"),
            coins_amount=prize.coins,
            rng_value=rng_value,
            drawn_tier=drawn.value,
        )
