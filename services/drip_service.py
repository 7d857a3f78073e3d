"""
Drip / expiry scheduler service

- Daily drip: releases each active daily allocation up to the number of days
  elapsed since deposit, at most once per UTC calendar day, into the tier pot
  that settlement distributes.
- Allocation expiry: past expiry_date, the unreleased remainder of a daily
  allocation is recaptured to admin (UnclaimedFund); instant allocations were
  already credited to the vault and are only deactivated.
- Spin ticket expiry: paid tickets past spin_tickets_expiry are zeroed.

Batch methods follow the one-row-per-transaction pattern: claim a row with
FOR UPDATE SKIP LOCKED, process it, commit, move on. A failing row is rolled
back and counted without stopping the batch.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from config import SettlementConfig
from models import (
    PoolAllocation, UnclaimedFund, User, DripType,
    LedgerEntryType, LedgerDirection, LedgerCurrency
)
from services.ledger_service import LedgerService, ADMIN_ACCOUNT, pool_account
from services.tier_pots import lock_tier_pot, pot_total
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


def _new_stats() -> Dict[str, Any]:
    return {"processed": 0, "successful": 0, "failed": 0, "skipped": 0, "errors": []}


class DripService:
    """Pool drip release, allocation expiry and spin-ticket expiry"""

    def __init__(self, config: SettlementConfig):
        self.config = config

    # ------------------------------------------------------------------
    # Single-row operations (caller owns the transaction)
    # ------------------------------------------------------------------

    def release_allocation(self, session: Session, allocation: PoolAllocation, now: datetime) -> Decimal:
        """Release whatever is due today; returns the amount released (0 if nothing due)"""
        if not allocation.active or allocation.drip_type != DripType.DAILY.value:
            return Decimal("0")

        today = now.date()
        if allocation.last_drip_date == today:
            return Decimal("0")
        if allocation.days_released >= allocation.total_days:
            allocation.active = False
            return Decimal("0")

        days_since_deposit = (today - allocation.deposit_date.date()).days
        target_days = min(days_since_deposit + 1, allocation.total_days)
        new_days = target_days - allocation.days_released
        if new_days <= 0:
            return Decimal("0")

        total = Decimal(allocation.total_amount)
        released_so_far = Decimal(allocation.amount_released)
        remaining = total - released_so_far
        if target_days >= allocation.total_days:
            # Final day settles the rounding remainder of daily_amount
            release = remaining
        else:
            release = min(Decimal(allocation.daily_amount) * new_days, remaining)

        allocation.days_released = target_days
        allocation.amount_released = released_so_far + release
        allocation.last_drip_date = today
        if allocation.days_released >= allocation.total_days:
            allocation.active = False

        if release > 0:
            pot = lock_tier_pot(session, allocation.tier_name, allocation.game)
            before = pot_total(pot)
            pot.pending_amount = Decimal(pot.pending_amount) + release
            LedgerService.append(
                session,
                user_id=pool_account(allocation.tier_name, allocation.game),
                entry_type=LedgerEntryType.DRIP_RELEASE,
                direction=LedgerDirection.CREDIT,
                amount=release,
                currency=LedgerCurrency.USDT,
                balance_before=before,
                balance_after=before + release,
                game=allocation.game,
                ref_id=allocation.id,
                tier_at_time=allocation.tier_name,
                note=f"Drip day {allocation.days_released}/{allocation.total_days} ({new_days} day(s))",
            )
        session.flush()
        return release

    def expire_allocation(self, session: Session, allocation: PoolAllocation, now: datetime) -> Decimal:
        """Deactivate an expired allocation; returns the amount recaptured to admin"""
        if not allocation.active or now <= allocation.expiry_date:
            return Decimal("0")

        allocation.active = False
        remainder = Decimal(allocation.total_amount) - Decimal(allocation.amount_released)

        if allocation.drip_type == DripType.INSTANT.value or remainder <= 0:
            session.flush()
            logger.info(
                f"📦 ALLOCATION_EXPIRY: {allocation.tier_name} {allocation.game} {allocation.id} deactivated"
            )
            return Decimal("0")

        session.add(UnclaimedFund(
            allocation_id=allocation.id,
            tier_name=allocation.tier_name,
            game=allocation.game,
            amount=remainder,
            destination="admin",
            created_at=now,
        ))
        admin_before = LedgerService.account_balance(session, ADMIN_ACCOUNT)
        LedgerService.append(
            session,
            user_id=ADMIN_ACCOUNT,
            entry_type=LedgerEntryType.ADMIN_RECAPTURE,
            direction=LedgerDirection.CREDIT,
            amount=remainder,
            currency=LedgerCurrency.USDT,
            balance_before=admin_before,
            balance_after=admin_before + remainder,
            game=allocation.game,
            ref_id=allocation.id,
            tier_at_time=allocation.tier_name,
            note=(
                f"Unreleased {allocation.game} drip recaptured after "
                f"{allocation.days_released}/{allocation.total_days} days"
            ),
        )
        session.flush()
        logger.info(
            f"💰 ALLOCATION_EXPIRY: ${remainder} of {allocation.tier_name} {allocation.game} recaptured to admin"
        )
        return remainder

    def expire_user_tickets(self, session: Session, user: User, now: datetime) -> int:
        """Zero expired spin tickets, no refund; returns tickets removed"""
        if not user.spin_tickets or user.spin_tickets_expiry is None or user.spin_tickets_expiry > now:
            return 0

        removed = user.spin_tickets
        user.spin_tickets = 0
        LedgerService.append(
            session,
            user_id=user.id,
            entry_type=LedgerEntryType.SPIN_TICKET_EXPIRE,
            direction=LedgerDirection.DEBIT,
            amount=removed,
            currency=LedgerCurrency.TICKETS,
            balance_before=removed,
            balance_after=0,
            tier_at_time=user.tier,
            note=f"{removed} unused spin tickets expired {user.spin_tickets_expiry:%Y-%m-%d}",
        )
        session.flush()
        return removed

    # ------------------------------------------------------------------
    # Batch jobs
    # ------------------------------------------------------------------

    def _run_per_row(self, session_factory: Callable[[], Session], label: str, claim, handle) -> Dict[str, Any]:
        stats = _new_stats()
        seen = set()

        while True:
            session = session_factory()
            try:
                row = claim(session, seen)
                if row is None:
                    break
                seen.add(row.id)
                stats["processed"] += 1
                try:
                    if handle(session, row):
                        stats["successful"] += 1
                    else:
                        stats["skipped"] += 1
                    session.commit()
                except Exception as e:
                    session.rollback()
                    stats["failed"] += 1
                    error_msg = f"{row.id}: {e}"
                    stats["errors"].append(error_msg)
                    logger.error(f"❌ {label}: {error_msg}", exc_info=True)
            finally:
                session.close()

        logger.info(
            f"✅ {label}_COMPLETE: Processed {stats['processed']}, Successful {stats['successful']}, "
            f"Skipped {stats['skipped']}, Failed {stats['failed']}"
        )
        return stats

    def process_daily_drip(self, session_factory: Callable[[], Session], now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or get_naive_utc_now()
        today = now.date()

        def claim(session, seen):
            query = session.query(PoolAllocation).filter(
                PoolAllocation.active.is_(True),
                PoolAllocation.drip_type == DripType.DAILY.value,
                (PoolAllocation.last_drip_date.is_(None)) | (PoolAllocation.last_drip_date < today),
            )
            if seen:
                query = query.filter(PoolAllocation.id.notin_(seen))
            return query.order_by(PoolAllocation.deposit_date).with_for_update(skip_locked=True).first()

        def handle(session, allocation):
            return self.release_allocation(session, allocation, now) > 0

        return self._run_per_row(session_factory, "DAILY_DRIP", claim, handle)

    def process_expired_allocations(self, session_factory: Callable[[], Session],
                                    now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or get_naive_utc_now()

        def claim(session, seen):
            query = session.query(PoolAllocation).filter(
                PoolAllocation.active.is_(True),
                PoolAllocation.expiry_date < now,
            )
            if seen:
                query = query.filter(PoolAllocation.id.notin_(seen))
            return query.order_by(PoolAllocation.expiry_date).with_for_update(skip_locked=True).first()

        def handle(session, allocation):
            self.expire_allocation(session, allocation, now)
            return True

        return self._run_per_row(session_factory, "ALLOCATION_EXPIRY", claim, handle)

    def process_expired_spin_tickets(self, session_factory: Callable[[], Session],
                                     now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or get_naive_utc_now()

        def claim(session, seen):
            query = session.query(User).filter(
                User.spin_tickets > 0,
                User.spin_tickets_expiry.isnot(None),
                User.spin_tickets_expiry <= now,
            )
            if seen:
                query = query.filter(User.id.notin_(seen))
            return query.with_for_update(skip_locked=True).first()

        def handle(session, user):
            return self.expire_user_tickets(session, user, now) > 0

        return self._run_per_row(session_factory, "SPIN_TICKET_EXPIRY", claim, handle)
