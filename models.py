"""
Settlement Core - Database Schema
=================================

Schema for the financial settlement core of the rewards economy:
- Hash-chained, append-only ledger (one chain per account)
- Subscription payments split into admin / treasury shares and per-game pools
- Daily drip release of pool allocations and per-tier jackpot vaults
- Tap-pot and prediction-pot settlement with rollover
- Withdrawal audit / batch pipeline

All timestamps are naive UTC. Money columns are Numeric(20, 4); coins and
tickets are whole integers.
"""

import uuid
from datetime import datetime, date
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Integer, BigInteger, String, Numeric, DateTime, Date, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, JSON, event
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column, object_session

from services.errors import ImmutableRecordError
from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def generate_id() -> str:
    return str(uuid.uuid4())


MONEY = Numeric(20, 4)


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class TierName(Enum):
    """Subscription tiers; FREE is the unpaid default"""
    FREE = "FREE"
    BRONZE = "BRONZE"
    SILVER = "SILVER"
    GOLD = "GOLD"


class LedgerEntryType(Enum):
    """Every kind of balance movement the ledger records"""
    TAP_EARN = "tap_earn"
    DAILY_TAP_PAYOUT = "daily_tap_payout"
    PREDICT_WIN = "predict_win"
    PREDICT_LOSS = "predict_loss"
    PREDICT_REWARD = "predict_reward"
    WHEEL_WIN = "wheel_win"
    SUBSCRIPTION_PAYMENT = "subscription_payment"
    SPIN_TICKET_GRANT = "spin_ticket_grant"
    SPIN_TICKET_USE = "spin_ticket_use"
    SPIN_TICKET_EXPIRE = "spin_ticket_expire"
    DRIP_RELEASE = "drip_release"
    ADMIN_RECAPTURE = "admin_recapture"
    WITHDRAWAL_REQUEST = "withdrawal_request"
    WITHDRAWAL_FEE = "withdrawal_fee"
    WITHDRAWAL_NET = "withdrawal_net"
    WITHDRAWAL_PROMOTED = "withdrawal_promoted"
    WITHDRAWAL_BATCH = "withdrawal_batch"
    WITHDRAWAL_COMPLETED = "withdrawal_completed"
    WITHDRAWAL_REJECTED = "withdrawal_rejected"
    REFERRAL_REWARD = "referral_reward"
    TIER_UPGRADE = "tier_upgrade"
    TIER_DOWNGRADE = "tier_downgrade"
    SUBSCRIPTION_EXPIRY_WARNING = "subscription_expiry_warning"
    LEADERBOARD_REWARD = "leaderboard_reward"


class LedgerDirection(Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class LedgerCurrency(Enum):
    COINS = "COINS"
    USDT = "USDT"
    TICKETS = "TICKETS"


class PoolGame(Enum):
    """Per-game pools a treasury share is divided into"""
    TAP_POT = "tapPot"
    PREDICT_POT = "predictPot"
    WHEEL_VAULT = "wheelVault"


class DripType(Enum):
    DAILY = "daily"
    INSTANT = "instant"


class WithdrawalStatus(Enum):
    """Withdrawal audit pipeline states"""
    PENDING_AUDIT = "pending_audit"
    FLAGGED = "flagged"
    READY = "ready"
    BATCHED = "batched"
    APPROVED = "approved"
    REJECTED = "rejected"


class PredictionDirection(Enum):
    HIGHER = "higher"
    LOWER = "lower"


class PrizeTier(Enum):
    """Spin outcome bands, most to least valuable"""
    JACKPOT = "jackpot"
    BIG_WIN = "big_win"
    COMMON = "common"
    NO_CASH = "no_cash"
    LOCKED_PRIZE = "locked_prize"


class InvoiceStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"


class SettlementRunType(Enum):
    TAP_DISTRIBUTION = "tap_distribution"
    PREDICTION_RESOLUTION = "prediction_resolution"


# ============================================================================
# USERS AND TIERS
# ============================================================================

class User(Base):
    """Player account; balance fields are mutated only alongside a ledger write"""
    __tablename__ = 'users'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    telegram_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True, unique=True)
    username: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    # Subscription
    tier: Mapped[str] = mapped_column(String(20), default=TierName.FREE.value, nullable=False)
    subscription_expiry: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    is_founder: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Balances
    total_coins: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)  # Lifetime coins
    league: Mapped[str] = mapped_column(String(20), default="BRONZE", nullable=False)
    wallet_balance: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)

    # Wheel
    spin_tickets: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    spin_tickets_expiry: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    spins_remaining: Mapped[int] = mapped_column(Integer, default=1, nullable=False)  # Free monthly allowance
    last_spin_refill: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    total_spins: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Predictions
    correct_predictions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Referral
    referred_by_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    referral_deduction_applied: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    referral_earnings: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False
    )

    withdrawals: Mapped[list["Withdrawal"]] = relationship("Withdrawal", back_populates="user")

    __table_args__ = (
        CheckConstraint('wallet_balance >= 0', name='ck_users_wallet_balance_non_negative'),
        CheckConstraint('spin_tickets >= 0', name='ck_users_spin_tickets_non_negative'),
        CheckConstraint('spins_remaining >= 0', name='ck_users_spins_remaining_non_negative'),
        Index('ix_users_tier_expiry', 'tier', 'subscription_expiry'),
    )

    def has_active_subscription(self, now: datetime) -> bool:
        return (
            self.tier != TierName.FREE.value
            and self.subscription_expiry is not None
            and self.subscription_expiry > now
        )


class Tier(Base):
    """Tier catalogue: price and per-day pool unit"""
    __tablename__ = 'tiers'

    name: Mapped[str] = mapped_column(String(20), primary_key=True)
    price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    daily_unit: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint('price >= 0', name='ck_tiers_price_non_negative'),
    )


# ============================================================================
# LEDGER
# ============================================================================

class LedgerEntry(Base):
    """
    Immutable, hash-chained journal row.

    user_id is an account id: a user id, or a system account such as
    'admin' or 'pool:BRONZE:tapPot'. sequence orders entries per account.
    """
    __tablename__ = 'ledger_entries'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)

    entry_type: Mapped[str] = mapped_column(String(40), nullable=False)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), default=LedgerCurrency.COINS.value, nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    game: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    ref_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    tier_at_time: Mapped[str] = mapped_column(String(20), default=TierName.FREE.value, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    prev_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'sequence', name='uq_ledger_account_sequence'),
        CheckConstraint('amount >= 0', name='ck_ledger_amount_non_negative'),
        CheckConstraint("direction IN ('credit', 'debit')", name='ck_ledger_direction_valid'),
        CheckConstraint("currency IN ('COINS', 'USDT', 'TICKETS')", name='ck_ledger_currency_valid'),
        Index('ix_ledger_user_ref', 'user_id', 'ref_id'),
        Index('ix_ledger_type_created', 'entry_type', 'created_at'),
    )


class LedgerHead(Base):
    """Per-account chain tip; locked FOR UPDATE to serialise appends"""
    __tablename__ = 'ledger_heads'

    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    sequence: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    last_entry_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    last_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False
    )


# ============================================================================
# PAYMENTS AND POOLS
# ============================================================================

class Transaction(Base):
    """One confirmed subscription payment; tx_hash is the idempotency key"""
    __tablename__ = 'transactions'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey('users.id'), nullable=False, index=True)
    tx_hash: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    tier_name: Mapped[str] = mapped_column(String(20), nullable=False)

    total_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    admin_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    treasury_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)  # Net of referral deduction
    referral_deduction: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)

    admin_wallet: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    treasury_wallet: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="confirmed", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)

    allocations: Mapped[list["PoolAllocation"]] = relationship("PoolAllocation", back_populates="transaction")

    __table_args__ = (
        CheckConstraint('total_amount > 0', name='ck_transactions_total_positive'),
        CheckConstraint('admin_amount >= 0', name='ck_transactions_admin_non_negative'),
        CheckConstraint('treasury_amount >= 0', name='ck_transactions_treasury_non_negative'),
        CheckConstraint('referral_deduction >= 0', name='ck_transactions_referral_non_negative'),
    )


class PoolAllocation(Base):
    """Share of one transaction's treasury for one (tier, game) pool"""
    __tablename__ = 'pool_allocations'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    transaction_id: Mapped[str] = mapped_column(String(36), ForeignKey('transactions.id'), nullable=False, index=True)
    tier_name: Mapped[str] = mapped_column(String(20), nullable=False)
    game: Mapped[str] = mapped_column(String(20), nullable=False)

    total_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    daily_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    total_days: Mapped[int] = mapped_column(Integer, nullable=False)
    days_released: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    amount_released: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)

    drip_type: Mapped[str] = mapped_column(String(10), nullable=False)
    deposit_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    expiry_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    last_drip_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    transaction: Mapped["Transaction"] = relationship("Transaction", back_populates="allocations")

    __table_args__ = (
        UniqueConstraint('transaction_id', 'game', name='uq_pool_allocation_transaction_game'),
        CheckConstraint('amount_released <= total_amount', name='ck_pool_allocation_released_bounded'),
        CheckConstraint("drip_type IN ('daily', 'instant')", name='ck_pool_allocation_drip_type_valid'),
        Index('ix_pool_allocations_active_type', 'active', 'drip_type'),
    )


class TierPot(Base):
    """Released-but-undistributed pot funds and carried rollover per (tier, game)"""
    __tablename__ = 'tier_pots'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    tier_name: Mapped[str] = mapped_column(String(20), nullable=False)
    game: Mapped[str] = mapped_column(String(20), nullable=False)
    pending_amount: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    rollover: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False
    )

    __table_args__ = (
        UniqueConstraint('tier_name', 'game', name='uq_tier_pot_tier_game'),
        CheckConstraint('pending_amount >= 0', name='ck_tier_pot_pending_non_negative'),
        CheckConstraint('rollover >= 0', name='ck_tier_pot_rollover_non_negative'),
    )


class JackpotVault(Base):
    """Per-tier, per-month prize reserve backing paid spins"""
    __tablename__ = 'jackpot_vaults'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    tier_name: Mapped[str] = mapped_column(String(20), nullable=False)
    month_key: Mapped[str] = mapped_column(String(7), nullable=False)  # YYYY-MM
    total_balance: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    total_funded: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    total_paid_out: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False
    )

    __table_args__ = (
        UniqueConstraint('tier_name', 'month_key', name='uq_jackpot_vault_tier_month'),
        CheckConstraint('total_balance >= 0', name='ck_jackpot_vault_balance_non_negative'),
    )


class UnclaimedFund(Base):
    """Unreleased drip remainder recaptured at allocation expiry"""
    __tablename__ = 'unclaimed_funds'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    allocation_id: Mapped[str] = mapped_column(String(36), ForeignKey('pool_allocations.id'), nullable=False, unique=True)
    tier_name: Mapped[str] = mapped_column(String(20), nullable=False)
    game: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    destination: Mapped[str] = mapped_column(String(20), default="admin", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint('amount >= 0', name='ck_unclaimed_funds_amount_non_negative'),
    )


class PaymentInvoice(Base):
    """Payment-provider invoice for a tier subscription"""
    __tablename__ = 'payment_invoices'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    invoice_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey('users.id'), nullable=False, index=True)
    tier_name: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), default="USDT", nullable=False)
    network: Mapped[str] = mapped_column(String(10), default="TON", nullable=False)
    sandbox: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    payment_link: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    splits: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=InvoiceStatus.PENDING.value, nullable=False)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)


# ============================================================================
# SETTLEMENT INPUTS
# ============================================================================

class DailyTap(Base):
    """Coins a user earned in one UTC day, supplied by the tap game"""
    __tablename__ = 'daily_taps'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey('users.id'), nullable=False)
    period_key: Mapped[str] = mapped_column(String(10), nullable=False)  # YYYY-MM-DD
    coins_earned: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    settled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'period_key', name='uq_daily_taps_user_period'),
        CheckConstraint('coins_earned >= 0', name='ck_daily_taps_coins_non_negative'),
    )


class Prediction(Base):
    """A user's call on the BTC price direction"""
    __tablename__ = 'predictions'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey('users.id'), nullable=False, index=True)
    tier_name: Mapped[str] = mapped_column(String(20), nullable=False)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    price_at_prediction: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)

    resolved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    resolved_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 2), nullable=True)
    correct: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    rewarded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        CheckConstraint("direction IN ('higher', 'lower')", name='ck_predictions_direction_valid'),
        Index('ix_predictions_resolved_created', 'resolved', 'created_at'),
    )


class SettlementRun(Base):
    """Marks a settlement cycle as done so it can never be settled twice"""
    __tablename__ = 'settlement_runs'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    run_type: Mapped[str] = mapped_column(String(40), nullable=False)
    cycle_key: Mapped[str] = mapped_column(String(20), nullable=False)
    btc_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 2), nullable=True)
    summary: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint('run_type', 'cycle_key', name='uq_settlement_runs_type_cycle'),
    )


# ============================================================================
# WHEEL
# ============================================================================

class WheelSpin(Base):
    """Spin history row"""
    __tablename__ = 'wheel_spins'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey('users.id'), nullable=False, index=True)
    tier_name: Mapped[str] = mapped_column(String(20), nullable=False)
    month_key: Mapped[str] = mapped_column(String(7), nullable=False)
    rng_value: Mapped[int] = mapped_column(Integer, nullable=False)
    prize_tier: Mapped[str] = mapped_column(String(20), nullable=False)
    prize_label: Mapped[str] = mapped_column(String(64), nullable=False)
    usdt_amount: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    coins_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    locked_prize: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    vault_balance_before: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    vault_balance_after: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)


# ============================================================================
# WITHDRAWALS
# ============================================================================

class Withdrawal(Base):
    """User cash-out request moving through the audit pipeline"""
    __tablename__ = 'withdrawals'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey('users.id'), nullable=False)

    gross_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    fee_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    to_wallet: Mapped[str] = mapped_column(String(128), nullable=False)
    network: Mapped[str] = mapped_column(String(20), default="TON", nullable=False)

    status: Mapped[str] = mapped_column(String(20), default=WithdrawalStatus.PENDING_AUDIT.value, nullable=False)
    abuse_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    batch_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey('withdrawal_batches.id'), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)
    promoted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    batched_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    user: Mapped["User"] = relationship("User", back_populates="withdrawals")
    batch: Mapped[Optional["WithdrawalBatch"]] = relationship("WithdrawalBatch", back_populates="withdrawals")

    __table_args__ = (
        CheckConstraint(
            f"status IN ('{WithdrawalStatus.PENDING_AUDIT.value}', '{WithdrawalStatus.FLAGGED.value}', "
            f"'{WithdrawalStatus.READY.value}', '{WithdrawalStatus.BATCHED.value}', "
            f"'{WithdrawalStatus.APPROVED.value}', '{WithdrawalStatus.REJECTED.value}')",
            name='ck_withdrawals_status_valid'
        ),
        CheckConstraint('gross_amount > 0', name='ck_withdrawals_gross_positive'),
        CheckConstraint('fee_amount >= 0', name='ck_withdrawals_fee_non_negative'),
        CheckConstraint('net_amount > 0', name='ck_withdrawals_net_positive'),
        Index('ix_withdrawals_status_created', 'status', 'created_at'),
        Index('ix_withdrawals_user_status', 'user_id', 'status'),
    )


class WithdrawalBatch(Base):
    """Immutable grouping of ready withdrawals for external payout"""
    __tablename__ = 'withdrawal_batches'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    total_withdrawals: Mapped[int] = mapped_column(Integer, nullable=False)
    total_gross: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    total_fees: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    total_net: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    withdrawal_ids: Mapped[list] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)

    withdrawals: Mapped[list["Withdrawal"]] = relationship("Withdrawal", back_populates="batch")


# ============================================================================
# RETENTION, CONFIG AND COORDINATION
# ============================================================================

class SubscriptionAlert(Base):
    """De-duplicates retention alerts; alert_key is unique per subscription period"""
    __tablename__ = 'subscription_alerts'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey('users.id'), nullable=False)
    alert_type: Mapped[str] = mapped_column(String(40), nullable=False)
    alert_key: Mapped[str] = mapped_column(String(80), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'alert_key', name='uq_subscription_alerts_user_key'),
    )


class SystemConfig(Base):
    """Operator overrides for SettlementConfig fields"""
    __tablename__ = 'system_config'

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False
    )


class SchedulerLease(Base):
    """Leader lease for scheduled jobs; one row per scheduler name"""
    __tablename__ = 'scheduler_leases'

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    holder_id: Mapped[str] = mapped_column(String(128), nullable=False)
    term: Mapped[int] = mapped_column(BigInteger, default=1, nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)


# ============================================================================
# IMMUTABILITY GUARDS
# ============================================================================

def _reject_mutation(action: str):
    def listener(mapper, connection, target):
        if action == "update":
            session = object_session(target)
            if session is not None and not session.is_modified(target, include_collections=False):
                return
        raise ImmutableRecordError(
            f"{type(target).__name__} {getattr(target, 'id', '?')} is immutable ({action} rejected)"
        )
    return listener


for _immutable_model in (LedgerEntry, WithdrawalBatch):
    event.listen(_immutable_model, "before_update", _reject_mutation("update"))
    event.listen(_immutable_model, "before_delete", _reject_mutation("delete"))
