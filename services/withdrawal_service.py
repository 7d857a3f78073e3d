"""
Withdrawal Audit & Batch Pipeline

    pending_audit --(audit delay)--> ready --(batch job)--> batched --> approved
         |                             |                       |
       flagged (abuse score) ------> approved / rejected <-----+

On request the gross amount leaves the wallet immediately and three ledger
entries record gross, fee and net separately. Promotion and batching are
scheduled jobs; batching only groups ids into an immutable batch record and
never changes amounts. Rejection refunds the gross with one reversing credit
that names the entries it reverses.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set

from sqlalchemy.orm import Session

from config import SettlementConfig
from models import (
    Withdrawal, WithdrawalBatch, WithdrawalStatus, LedgerEntryType
)
from services.abuse_gate import AbuseGate, PermissiveAbuseGate
from services.errors import (
    WithdrawalValidationError, InsufficientBalanceError, InvalidTransitionError
)
from services.ledger_service import LedgerService
from services.wallet_service import WalletService
from utils.decimal_precision import MonetaryDecimal
from utils.datetime_helpers import get_naive_utc_now
from utils.wallet_validation import validate_wallet_address

logger = logging.getLogger(__name__)


class WithdrawalStateValidator:
    """Allowed status changes; approved and rejected are terminal"""

    VALID_TRANSITIONS: Dict[str, Set[str]] = {
        WithdrawalStatus.PENDING_AUDIT.value: {
            WithdrawalStatus.READY.value,
            WithdrawalStatus.APPROVED.value,  # only once the audit delay has passed
            WithdrawalStatus.REJECTED.value,
        },
        WithdrawalStatus.FLAGGED.value: {
            WithdrawalStatus.APPROVED.value,
            WithdrawalStatus.REJECTED.value,
        },
        WithdrawalStatus.READY.value: {
            WithdrawalStatus.BATCHED.value,
            WithdrawalStatus.APPROVED.value,
            WithdrawalStatus.REJECTED.value,
        },
        WithdrawalStatus.BATCHED.value: {
            WithdrawalStatus.APPROVED.value,
            WithdrawalStatus.REJECTED.value,
        },
        WithdrawalStatus.APPROVED.value: set(),
        WithdrawalStatus.REJECTED.value: set(),
    }

    @classmethod
    def is_valid_transition(cls, current: str, new: str) -> bool:
        return new in cls.VALID_TRANSITIONS.get(current, set())

    @classmethod
    def validate(cls, withdrawal: Withdrawal, new: str) -> None:
        if not cls.is_valid_transition(withdrawal.status, new):
            raise InvalidTransitionError(
                f"Cannot move withdrawal {withdrawal.id} from {withdrawal.status} to {new}"
            )


@dataclass
class WithdrawalReceipt:
    withdrawal_id: str
    gross_amount: Decimal
    fee_amount: Decimal
    net_amount: Decimal
    status: str
    audit_expires_at: datetime
    message: str


def serialize_withdrawal(withdrawal: Withdrawal) -> Dict[str, Any]:
    """External withdrawal record"""
    return {
        "id": withdrawal.id,
        "grossAmount": str(withdrawal.gross_amount),
        "feeAmount": str(withdrawal.fee_amount),
        "netAmount": str(withdrawal.net_amount),
        "status": withdrawal.status,
        "toWallet": withdrawal.to_wallet,
        "network": withdrawal.network,
        "createdAt": withdrawal.created_at.isoformat(),
    }


class WithdrawalService:
    """Request, audit promotion, batching and manual resolution of withdrawals"""

    def __init__(self, config: SettlementConfig, abuse_gate: Optional[AbuseGate] = None):
        self.config = config
        self.abuse_gate = abuse_gate or PermissiveAbuseGate()

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    def request_withdrawal(self, session: Session, user_id: str, amount, to_wallet: str,
                           network: str = "TON", now: Optional[datetime] = None) -> WithdrawalReceipt:
        now = now or get_naive_utc_now()
        network = (network or "TON").upper()

        try:
            gross = MonetaryDecimal.quantize_money(amount)
        except ValueError as e:
            raise WithdrawalValidationError(f"Minimum withdrawal is ${self.config.min_withdrawal} USDT") from e
        if gross < self.config.min_withdrawal:
            raise WithdrawalValidationError(f"Minimum withdrawal is ${self.config.min_withdrawal} USDT")

        valid, reason = validate_wallet_address(to_wallet, network)
        if not valid:
            raise WithdrawalValidationError(reason)
        to_wallet = to_wallet.strip()

        fee = MonetaryDecimal.quantize_money(self.config.withdrawal_fee)
        net = gross - fee
        if net <= 0:
            raise WithdrawalValidationError("Withdrawal amount too small after fee deduction")

        wallet = WalletService(session)
        user = wallet.get_user(user_id, for_update=True)
        if MonetaryDecimal.quantize_money(user.wallet_balance) < gross:
            raise InsufficientBalanceError("Insufficient wallet balance")

        score = self.abuse_gate.score_withdrawal(user.id, gross, to_wallet)
        flagged = score >= self.config.abuse_flag_threshold
        status = WithdrawalStatus.FLAGGED.value if flagged else WithdrawalStatus.PENDING_AUDIT.value

        withdrawal = Withdrawal(
            user_id=user.id,
            gross_amount=gross,
            fee_amount=fee,
            net_amount=net,
            to_wallet=to_wallet,
            network=network,
            status=status,
            abuse_score=score,
            created_at=now,
        )
        session.add(withdrawal)
        session.flush()

        wallet.debit_usdt(
            user,
            gross,
            LedgerEntryType.WITHDRAWAL_REQUEST,
            ref_id=withdrawal.id,
            note=(
                f"Withdrawal: ${gross} from wallet (flat fee: ${fee}, net payout: ${net}) "
                f"to {to_wallet} ({network}), status: {status}"
            ),
        )
        wallet.record_audit_marker(
            user,
            LedgerEntryType.WITHDRAWAL_FEE,
            amount=fee,
            ref_id=withdrawal.id,
            note=f"Flat withdrawal fee: ${fee} USDT deducted from gross ${gross}",
        )
        wallet.record_audit_marker(
            user,
            LedgerEntryType.WITHDRAWAL_NET,
            amount=net,
            ref_id=withdrawal.id,
            note=f"Net payout: ${net} queued for {to_wallet} ({network}), {self.config.audit_delay_hours}hr audit period",
        )

        if flagged:
            message = "Withdrawal flagged for manual review. An admin will review your request."
            logger.warning(f"⚠️ WITHDRAWAL: {withdrawal.id} from {user.id} flagged (abuse score {score})")
        else:
            message = (
                f"Withdrawal of ${net} USDT (after ${fee} fee) submitted. "
                f"{self.config.audit_delay_hours}-hour audit period before processing."
            )
            logger.info(f"✅ WITHDRAWAL: {withdrawal.id} ${gross} from {user.id} pending audit")

        return WithdrawalReceipt(
            withdrawal_id=withdrawal.id,
            gross_amount=gross,
            fee_amount=fee,
            net_amount=net,
            status=status,
            audit_expires_at=now + timedelta(hours=self.config.audit_delay_hours),
            message=message,
        )

    # ------------------------------------------------------------------
    # Scheduled stages
    # ------------------------------------------------------------------

    def _audit_passed(self, withdrawal: Withdrawal, now: datetime) -> bool:
        return now >= withdrawal.created_at + timedelta(hours=self.config.audit_delay_hours)

    def promote_audited(self, session: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
        """pending_audit -> ready for every withdrawal past the audit delay"""
        now = now or get_naive_utc_now()
        stats = {"processed": 0, "promoted": 0, "errors": []}
        cutoff = now - timedelta(hours=self.config.audit_delay_hours)

        candidates = (
            session.query(Withdrawal)
            .filter(
                Withdrawal.status == WithdrawalStatus.PENDING_AUDIT.value,
                Withdrawal.created_at <= cutoff,
            )
            .order_by(Withdrawal.created_at)
            .with_for_update(skip_locked=True)
            .all()
        )

        wallet = WalletService(session)
        for withdrawal in candidates:
            stats["processed"] += 1
            WithdrawalStateValidator.validate(withdrawal, WithdrawalStatus.READY.value)
            withdrawal.status = WithdrawalStatus.READY.value
            withdrawal.promoted_at = now
            wallet.record_audit_marker(
                wallet.get_user(withdrawal.user_id),
                LedgerEntryType.WITHDRAWAL_PROMOTED,
                amount=withdrawal.net_amount,
                ref_id=withdrawal.id,
                note=(
                    f"Withdrawal passed {self.config.audit_delay_hours}hr audit. "
                    f"Status: pending_audit -> ready. Net: ${withdrawal.net_amount} queued for batch payout."
                ),
            )
            stats["promoted"] += 1

        session.flush()
        if stats["promoted"]:
            logger.info(f"✅ WITHDRAWAL_PROMOTION: {stats['promoted']} withdrawals pending_audit -> ready")
        return stats

    def create_batch(self, session: Session, now: Optional[datetime] = None) -> Optional[WithdrawalBatch]:
        """Group every ready withdrawal into one immutable batch; None if nothing is ready"""
        now = now or get_naive_utc_now()
        ready: List[Withdrawal] = (
            session.query(Withdrawal)
            .filter(Withdrawal.status == WithdrawalStatus.READY.value)
            .order_by(Withdrawal.created_at)
            .with_for_update(skip_locked=True)
            .all()
        )
        if not ready:
            logger.info("📦 WITHDRAWAL_BATCH: no ready withdrawals to batch")
            return None

        batch = WithdrawalBatch(
            total_withdrawals=len(ready),
            total_gross=sum((Decimal(w.gross_amount) for w in ready), Decimal("0")),
            total_fees=sum((Decimal(w.fee_amount) for w in ready), Decimal("0")),
            total_net=sum((Decimal(w.net_amount) for w in ready), Decimal("0")),
            withdrawal_ids=[w.id for w in ready],
            created_at=now,
        )
        session.add(batch)
        session.flush()

        wallet = WalletService(session)
        for withdrawal in ready:
            WithdrawalStateValidator.validate(withdrawal, WithdrawalStatus.BATCHED.value)
            withdrawal.status = WithdrawalStatus.BATCHED.value
            withdrawal.batch_id = batch.id
            withdrawal.batched_at = now
            wallet.record_audit_marker(
                wallet.get_user(withdrawal.user_id),
                LedgerEntryType.WITHDRAWAL_BATCH,
                amount=withdrawal.net_amount,
                ref_id=batch.id,
                note=(
                    f"Withdrawal batched: ${withdrawal.net_amount} USDT included in batch {batch.id} "
                    f"({len(ready)} total). Awaiting payout."
                ),
            )

        session.flush()
        logger.info(
            f"✅ WITHDRAWAL_BATCH: {batch.id} with {batch.total_withdrawals} withdrawals, "
            f"${batch.total_net} net, ${batch.total_fees} fees"
        )
        return batch

    # ------------------------------------------------------------------
    # Manual resolution
    # ------------------------------------------------------------------

    def _lock(self, session: Session, withdrawal_id: str) -> Withdrawal:
        withdrawal = (
            session.query(Withdrawal)
            .filter(Withdrawal.id == withdrawal_id)
            .with_for_update()
            .one_or_none()
        )
        if withdrawal is None:
            raise WithdrawalValidationError(f"Withdrawal {withdrawal_id} not found")
        return withdrawal

    def approve(self, session: Session, withdrawal_id: str, reviewed_by: Optional[str] = None,
                now: Optional[datetime] = None) -> Withdrawal:
        now = now or get_naive_utc_now()
        withdrawal = self._lock(session, withdrawal_id)
        WithdrawalStateValidator.validate(withdrawal, WithdrawalStatus.APPROVED.value)

        if withdrawal.status == WithdrawalStatus.PENDING_AUDIT.value and not self._audit_passed(withdrawal, now):
            remaining = withdrawal.created_at + timedelta(hours=self.config.audit_delay_hours) - now
            hours_left = Decimal(remaining.total_seconds() / 3600).quantize(Decimal("0.1"))
            raise InvalidTransitionError(
                f"{self.config.audit_delay_hours}-hour audit period not yet complete. "
                f"{hours_left} hours remaining."
            )

        wallet = WalletService(session)
        withdrawal.status = WithdrawalStatus.APPROVED.value
        withdrawal.reviewed_by = reviewed_by
        withdrawal.resolved_at = now
        wallet.record_audit_marker(
            wallet.get_user(withdrawal.user_id),
            LedgerEntryType.WITHDRAWAL_COMPLETED,
            amount=withdrawal.net_amount,
            ref_id=withdrawal.id,
            note=(
                f"Withdrawal approved: ${withdrawal.net_amount} USDT released to {withdrawal.to_wallet} "
                f"(fee: ${withdrawal.fee_amount})"
            ),
        )
        session.flush()
        logger.info(f"✅ WITHDRAWAL: {withdrawal.id} approved by {reviewed_by or 'system'}")
        return withdrawal

    def reject(self, session: Session, withdrawal_id: str, reason: Optional[str] = None,
               reviewed_by: Optional[str] = None, now: Optional[datetime] = None) -> Withdrawal:
        """Refund the full gross with one reversing credit that lists the reversed entries"""
        now = now or get_naive_utc_now()
        withdrawal = self._lock(session, withdrawal_id)
        WithdrawalStateValidator.validate(withdrawal, WithdrawalStatus.REJECTED.value)

        reversed_entries = [
            entry for entry in LedgerService.entries_for_ref(session, withdrawal.user_id, withdrawal.id)
            if entry.entry_type in (
                LedgerEntryType.WITHDRAWAL_REQUEST.value,
                LedgerEntryType.WITHDRAWAL_FEE.value,
                LedgerEntryType.WITHDRAWAL_NET.value,
            )
        ]

        wallet = WalletService(session)
        user = wallet.get_user(withdrawal.user_id, for_update=True)
        wallet.credit_usdt(
            user,
            withdrawal.gross_amount,
            LedgerEntryType.WITHDRAWAL_REJECTED,
            ref_id=withdrawal.id,
            note=(
                f"Withdrawal rejected: ${withdrawal.gross_amount} USDT (gross) refunded to wallet. "
                f"Reverses entries {', '.join(entry.id for entry in reversed_entries)} "
                f"(fee ${withdrawal.fee_amount}, net ${withdrawal.net_amount})"
                f"{f'. Reason: {reason}' if reason else ''}"
            ),
        )

        withdrawal.status = WithdrawalStatus.REJECTED.value
        withdrawal.rejection_reason = reason
        withdrawal.reviewed_by = reviewed_by
        withdrawal.resolved_at = now
        session.flush()
        logger.info(f"✅ WITHDRAWAL: {withdrawal.id} rejected, ${withdrawal.gross_amount} refunded to {user.id}")
        return withdrawal

    def list_for_user(self, session: Session, user_id: str) -> List[Dict[str, Any]]:
        rows = (
            session.query(Withdrawal)
            .filter(Withdrawal.user_id == user_id)
            .order_by(Withdrawal.created_at.desc())
            .all()
        )
        return [serialize_withdrawal(row) for row in rows]
