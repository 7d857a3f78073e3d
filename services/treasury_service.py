"""
Treasury Split & Pool Allocator

On a confirmed subscription payment:
  amount -> admin share + treasury share (less a one-time referral reward)
  treasury -> tapPot / predictPot (30-day daily drip) + wheelVault (instant, into the tier's vault)
then grants spin tickets, sets subscription expiry and founder status, and
writes the payment and ticket-grant ledger entries.

Every check (tier, amount, tx hash) runs before the first mutation.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from config import Config, SettlementConfig, PAID_TIERS
from models import (
    Transaction, PoolAllocation, User, PoolGame, DripType,
    LedgerEntryType, LedgerDirection, LedgerCurrency, TierName
)
from services.errors import UnknownTierError, AmountMismatchError, DuplicateTransactionError
from services.jackpot_vault import fund_vault
from services.ledger_service import LedgerService
from services.tier_catalog import TierCatalog
from services.wallet_service import WalletService
from utils.decimal_precision import MonetaryDecimal
from utils.datetime_helpers import get_naive_utc_now, month_key

logger = logging.getLogger(__name__)

TIER_ORDER = {name: rank for rank, name in enumerate((TierName.FREE.value,) + PAID_TIERS)}


@dataclass
class SplitResult:
    transaction_id: str
    tx_hash: str
    user_id: str
    tier_name: str
    total_amount: Decimal
    admin_amount: Decimal
    treasury_amount: Decimal
    referral_deduction: Decimal
    pools: Dict[str, Decimal] = field(default_factory=dict)
    referrer_id: Optional[str] = None
    spin_tickets_granted: int = 0
    subscription_expiry: Optional[datetime] = None
    is_founder: bool = False
    duplicate: bool = False

    @property
    def message(self) -> str:
        if self.duplicate:
            return "Transaction already processed (idempotent)"
        return f"{self.tier_name} subscription activated"


class TreasurySplitService:
    """Splits subscription revenue and allocates the treasury share into pools"""

    def __init__(self, config: SettlementConfig, catalog: Optional[TierCatalog] = None):
        self.config = config
        self.catalog = catalog or TierCatalog(config)

    # ------------------------------------------------------------------
    # Arithmetic
    # ------------------------------------------------------------------

    def split_amount(self, amount: Decimal):
        """(admin, gross_treasury); the two always sum to amount"""
        admin = MonetaryDecimal.quantize_money(amount * self.config.admin_split)
        return admin, amount - admin

    def split_pools(self, treasury: Decimal) -> Dict[str, Decimal]:
        """Per-game shares; wheel takes the rounding residue so shares sum to treasury"""
        tap = MonetaryDecimal.floor_money(treasury * self.config.tap_pot_split)
        predict = MonetaryDecimal.floor_money(treasury * self.config.predict_pot_split)
        return {
            PoolGame.TAP_POT.value: tap,
            PoolGame.PREDICT_POT.value: predict,
            PoolGame.WHEEL_VAULT.value: treasury - tap - predict,
        }

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate(self, session: Session, user_id: str, tx_hash: str, tier_name: str, amount: Decimal):
        # Hash first: a processed payment replays even if the tier price has since moved
        existing = session.query(Transaction).filter(Transaction.tx_hash == tx_hash).one_or_none()
        if existing is not None:
            same_payload = (
                existing.user_id == user_id
                and existing.tier_name == tier_name
                and MonetaryDecimal.quantize_money(existing.total_amount) == amount
            )
            if not same_payload:
                raise DuplicateTransactionError(f"Transaction hash {tx_hash} has already been used")
            return existing

        if tier_name not in self.catalog.paid_tier_names(session):
            raise UnknownTierError(f"Invalid tier: {tier_name}. Must be one of {', '.join(PAID_TIERS)}.")

        price = self.catalog.get_price(session, tier_name)
        if price is None or not MonetaryDecimal.within_tolerance(amount, price, self.config.price_epsilon):
            raise AmountMismatchError(
                f"Payment amount ${amount} does not match {tier_name} price ${price}"
            )
        return None

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    def process_subscription_payment(
        self,
        session: Session,
        user_id: str,
        tx_hash: str,
        tier_name: str,
        verified_amount,
        now: Optional[datetime] = None,
    ) -> SplitResult:
        """Apply a verified subscription payment; exact replays return the original result"""
        now = now or get_naive_utc_now()
        tier_name = tier_name.upper()
        amount = MonetaryDecimal.quantize_money(verified_amount)

        existing = self._validate(session, user_id, tx_hash, tier_name, amount)
        if existing is not None:
            logger.info(f"⚠️ TREASURY_SPLIT: {tx_hash} already processed, returning original result")
            return self._result_from_transaction(existing)

        wallet = WalletService(session)
        user = wallet.get_user(user_id, for_update=True)

        admin_amount, gross_treasury = self.split_amount(amount)
        referral_deduction, referrer_id = self._apply_referral_reward(
            session, wallet, user, gross_treasury, tx_hash
        )
        treasury_amount = gross_treasury - referral_deduction
        pools = self.split_pools(treasury_amount)

        transaction = Transaction(
            user_id=user.id,
            tx_hash=tx_hash,
            tier_name=tier_name,
            total_amount=amount,
            admin_amount=admin_amount,
            treasury_amount=treasury_amount,
            referral_deduction=referral_deduction,
            admin_wallet=Config.ADMIN_PROFITS_WALLET,
            treasury_wallet=Config.GAME_TREASURY_WALLET,
            created_at=now,
        )
        session.add(transaction)
        session.flush()

        self._allocate_pools(session, transaction, pools, now)

        previous_tier = user.tier
        tickets_granted = self._activate_subscription(session, user, tier_name, now)

        LedgerService.append(
            session,
            user_id=user.id,
            entry_type=LedgerEntryType.SUBSCRIPTION_PAYMENT,
            direction=LedgerDirection.DEBIT,
            amount=amount,
            currency=LedgerCurrency.USDT,
            balance_before=user.wallet_balance,
            balance_after=user.wallet_balance,
            ref_id=tx_hash,
            tier_at_time=tier_name,
            note=(
                f"{tier_name} subscription ${amount}: admin ${admin_amount}, treasury ${treasury_amount}"
                f"{f', referral ${referral_deduction}' if referral_deduction else ''}"
            ),
        )
        LedgerService.append(
            session,
            user_id=user.id,
            entry_type=LedgerEntryType.SPIN_TICKET_GRANT,
            direction=LedgerDirection.CREDIT,
            amount=tickets_granted,
            currency=LedgerCurrency.TICKETS,
            balance_before=user.spin_tickets - tickets_granted,
            balance_after=user.spin_tickets,
            ref_id=tx_hash,
            tier_at_time=tier_name,
            note=f"{tickets_granted} spin tickets for {tier_name}, expire {user.spin_tickets_expiry:%Y-%m-%d}",
        )
        if previous_tier != tier_name:
            upgrade = TIER_ORDER.get(tier_name, 0) > TIER_ORDER.get(previous_tier, 0)
            LedgerService.append(
                session,
                user_id=user.id,
                entry_type=LedgerEntryType.TIER_UPGRADE if upgrade else LedgerEntryType.TIER_DOWNGRADE,
                direction=LedgerDirection.CREDIT,
                amount=0,
                currency=LedgerCurrency.COINS,
                balance_before=user.total_coins,
                balance_after=user.total_coins,
                ref_id=tx_hash,
                tier_at_time=tier_name,
                note=f"Tier {previous_tier} -> {tier_name}",
            )

        session.flush()
        logger.info(
            f"✅ TREASURY_SPLIT: {tier_name} ${amount} from {user.id} -> admin ${admin_amount}, "
            f"treasury ${treasury_amount} (tap ${pools['tapPot']}, predict ${pools['predictPot']}, "
            f"wheel ${pools['wheelVault']})"
        )

        return SplitResult(
            transaction_id=transaction.id,
            tx_hash=tx_hash,
            user_id=user.id,
            tier_name=tier_name,
            total_amount=amount,
            admin_amount=admin_amount,
            treasury_amount=treasury_amount,
            referral_deduction=referral_deduction,
            pools=pools,
            referrer_id=referrer_id,
            spin_tickets_granted=tickets_granted,
            subscription_expiry=user.subscription_expiry,
            is_founder=user.is_founder,
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _apply_referral_reward(self, session: Session, wallet: WalletService, user: User,
                               gross_treasury: Decimal, tx_hash: str):
        """One-time reward to the referrer, taken out of treasury and never more than it"""
        if not user.referred_by_id or user.referral_deduction_applied:
            return Decimal("0"), None
        if user.referred_by_id == user.id:
            logger.warning(f"⚠️ REFERRAL_REWARD: {user.id} refers to itself, skipping")
            return Decimal("0"), None

        referrer = session.query(User).filter(User.id == user.referred_by_id).with_for_update().one_or_none()
        if referrer is None:
            logger.warning(f"⚠️ REFERRAL_REWARD: referrer {user.referred_by_id} of {user.id} not found")
            return Decimal("0"), None

        deduction = MonetaryDecimal.quantize_money(min(self.config.referral_reward_amount, gross_treasury))
        user.referral_deduction_applied = True
        if deduction <= 0:
            return Decimal("0"), None

        wallet.credit_usdt(
            referrer,
            deduction,
            LedgerEntryType.REFERRAL_REWARD,
            ref_id=f"referral_pay_{user.id}_{tx_hash}",
            note=f"Referral reward: {user.id} subscribed",
        )
        referrer.referral_earnings = Decimal(referrer.referral_earnings or 0) + deduction
        logger.info(f"✅ REFERRAL_REWARD: ${deduction} to {referrer.id} for referring {user.id}")
        return deduction, referrer.id

    def _allocate_pools(self, session: Session, transaction: Transaction, pools: Dict[str, Decimal], now: datetime):
        drip_days = self.config.drip_days
        expiry = now + timedelta(days=drip_days)

        for game in (PoolGame.TAP_POT.value, PoolGame.PREDICT_POT.value):
            total = pools[game]
            session.add(PoolAllocation(
                transaction_id=transaction.id,
                tier_name=transaction.tier_name,
                game=game,
                total_amount=total,
                daily_amount=MonetaryDecimal.floor_money(total / drip_days),
                total_days=drip_days,
                days_released=0,
                amount_released=Decimal("0"),
                drip_type=DripType.DAILY.value,
                deposit_date=now,
                expiry_date=expiry,
                active=True,
            ))

        wheel = pools[PoolGame.WHEEL_VAULT.value]
        session.add(PoolAllocation(
            transaction_id=transaction.id,
            tier_name=transaction.tier_name,
            game=PoolGame.WHEEL_VAULT.value,
            total_amount=wheel,
            daily_amount=wheel,
            total_days=1,
            days_released=1,
            amount_released=wheel,
            drip_type=DripType.INSTANT.value,
            deposit_date=now,
            expiry_date=expiry,
            last_drip_date=now.date(),
            active=True,
        ))
        if wheel > 0:
            vault = fund_vault(session, transaction.tier_name, month_key(now), wheel)
            logger.info(f"🏦 VAULT: +${wheel} to {transaction.tier_name} {vault.month_key} (balance ${vault.total_balance})")
        session.flush()

    def _activate_subscription(self, session: Session, user: User, tier_name: str, now: datetime) -> int:
        other_subscribers = (
            session.query(func.count(User.id))
            .filter(User.tier == tier_name, User.subscription_expiry > now, User.id != user.id)
            .scalar()
        ) or 0
        position = other_subscribers + 1

        user.tier = tier_name
        user.subscription_expiry = now + timedelta(days=self.config.subscription_days)
        user.is_founder = bool(user.is_founder) or position <= self.config.founder_limit

        tickets = self.config.tickets_for_tier(tier_name)
        user.spin_tickets = (user.spin_tickets or 0) + tickets
        user.spin_tickets_expiry = user.subscription_expiry
        return tickets

    def _result_from_transaction(self, transaction: Transaction) -> SplitResult:
        return SplitResult(
            transaction_id=transaction.id,
            tx_hash=transaction.tx_hash,
            user_id=transaction.user_id,
            tier_name=transaction.tier_name,
            total_amount=Decimal(transaction.total_amount),
            admin_amount=Decimal(transaction.admin_amount),
            treasury_amount=Decimal(transaction.treasury_amount),
            referral_deduction=Decimal(transaction.referral_deduction),
            pools={a.game: Decimal(a.total_amount) for a in transaction.allocations},
            duplicate=True,
        )
