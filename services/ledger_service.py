"""
Ledger Service - append-only, hash-chained financial journal

Every balance mutation in the settlement core writes through append() inside
the caller's transaction. Each account (a user id, or a system account such as
'admin' / 'pool:BRONZE:tapPot') has its own chain:

    entry_hash = sha256("id|user_id|entry_type|direction|amount|before|after|prev_hash")

prev_hash is the previous entry's hash, or GENESIS for the first entry.

Appends for one account are serialised through its ledger_heads row, locked
with SELECT ... FOR UPDATE. The entry id is generated client-side so the hash
is computed before the insert and no placeholder row is ever visible. The
(user_id, sequence) unique constraint rejects a concurrent writer that slipped
past the lock, so a chain can never fork.
"""

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Union, List

from sqlalchemy.orm import Session

from models import (
    LedgerEntry, LedgerHead, LedgerCurrency, LedgerDirection, LedgerEntryType,
    User, TierName, generate_id
)
from services.errors import LedgerError
from utils.decimal_precision import MonetaryDecimal
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)

GENESIS_HASH = "GENESIS"

ADMIN_ACCOUNT = "admin"


def pool_account(tier_name: str, game: str) -> str:
    """System ledger account for one tier's pot"""
    return f"pool:{tier_name}:{game}"


def _value(item: Union[Enum, str]) -> str:
    return item.value if isinstance(item, Enum) else str(item)


def compute_entry_hash(
    entry_id: str,
    user_id: str,
    entry_type: str,
    direction: str,
    amount,
    balance_before,
    balance_after,
    prev_hash: Optional[str],
) -> str:
    """Hex SHA-256 over the pipe-joined canonical fields of an entry"""
    payload = "|".join([
        entry_id,
        user_id,
        entry_type,
        direction,
        MonetaryDecimal.canonical(amount),
        MonetaryDecimal.canonical(balance_before),
        MonetaryDecimal.canonical(balance_after),
        prev_hash or GENESIS_HASH,
    ])
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class ChainVerification:
    """Result of replaying one account's chain"""
    valid: bool
    total_entries: int
    broken_at: Optional[str] = None
    reason: Optional[str] = None


class LedgerService:
    """Append and verify hash-chained ledger entries"""

    @classmethod
    def _normalise(cls, currency: str, amount) -> Decimal:
        if currency == LedgerCurrency.USDT.value:
            return MonetaryDecimal.quantize_money(amount)
        return MonetaryDecimal.quantize_units(amount)

    @classmethod
    def _lock_head(cls, session: Session, account_id: str) -> LedgerHead:
        head = (
            session.query(LedgerHead)
            .filter(LedgerHead.account_id == account_id)
            .with_for_update()
            .one_or_none()
        )
        if head is None:
            head = LedgerHead(account_id=account_id, sequence=0, last_entry_id=None, last_hash=None)
            session.add(head)
            session.flush()
        return head

    @classmethod
    def append(
        cls,
        session: Session,
        *,
        user_id: str,
        entry_type: Union[LedgerEntryType, str],
        direction: Union[LedgerDirection, str],
        amount,
        balance_before,
        balance_after,
        currency: Union[LedgerCurrency, str] = LedgerCurrency.COINS,
        game: Optional[str] = None,
        ref_id: Optional[str] = None,
        tier_at_time: Optional[str] = None,
        note: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> LedgerEntry:
        """
        Append one entry to the account's chain and flush it.

        Does not commit: the entry becomes durable together with the balance
        change it records when the caller's transaction commits.
        """
        entry_type = _value(entry_type)
        direction = _value(direction)
        currency = _value(currency)

        if direction not in (LedgerDirection.CREDIT.value, LedgerDirection.DEBIT.value):
            raise LedgerError(f"Invalid ledger direction: {direction}")

        amount = cls._normalise(currency, amount)
        balance_before = cls._normalise(currency, balance_before)
        balance_after = cls._normalise(currency, balance_after)
        if amount < 0:
            raise LedgerError(f"Ledger amount must be >= 0, got {amount}")

        if tier_at_time is None:
            user = session.get(User, user_id)
            tier_at_time = user.tier if user is not None else TierName.FREE.value

        head = cls._lock_head(session, user_id)

        entry_id = generate_id()
        prev_hash = head.last_hash
        entry_hash = compute_entry_hash(
            entry_id, user_id, entry_type, direction, amount, balance_before, balance_after, prev_hash
        )

        entry = LedgerEntry(
            id=entry_id,
            user_id=user_id,
            sequence=head.sequence + 1,
            entry_type=entry_type,
            direction=direction,
            amount=amount,
            currency=currency,
            balance_before=balance_before,
            balance_after=balance_after,
            game=game,
            ref_id=ref_id,
            tier_at_time=tier_at_time,
            note=note,
            prev_hash=prev_hash,
            entry_hash=entry_hash,
            created_at=created_at or get_naive_utc_now(),
        )
        session.add(entry)

        head.sequence = entry.sequence
        head.last_entry_id = entry_id
        head.last_hash = entry_hash
        session.flush()

        logger.debug(
            f"📒 LEDGER: {user_id} #{entry.sequence} {entry_type} {direction} {amount} {currency}"
        )
        return entry

    @classmethod
    def verify_chain(cls, session: Session, user_id: str) -> ChainVerification:
        """
        Replay an account's entries in order, recomputing every hash.

        Returns the id of the first entry whose stored hash or prev_hash link
        does not match, or valid=True if the whole chain checks out.
        """
        entries = (
            session.query(LedgerEntry)
            .filter(LedgerEntry.user_id == user_id)
            .order_by(LedgerEntry.sequence.asc())
            .all()
        )

        previous_hash: Optional[str] = None
        for entry in entries:
            if (entry.prev_hash or None) != previous_hash:
                logger.error(f"❌ LEDGER_VERIFY: {user_id} chain link broken at {entry.id}")
                return ChainVerification(False, len(entries), entry.id, "prev_hash mismatch")

            recomputed = compute_entry_hash(
                entry.id,
                entry.user_id,
                entry.entry_type,
                entry.direction,
                entry.amount,
                entry.balance_before,
                entry.balance_after,
                entry.prev_hash,
            )
            if recomputed != entry.entry_hash:
                logger.error(f"❌ LEDGER_VERIFY: {user_id} hash mismatch at {entry.id}")
                return ChainVerification(False, len(entries), entry.id, "entry_hash mismatch")

            previous_hash = entry.entry_hash

        return ChainVerification(True, len(entries))

    @classmethod
    def account_balance(cls, session: Session, account_id: str) -> Decimal:
        """balance_after of the account's latest entry, zero for an empty chain"""
        head = session.get(LedgerHead, account_id)
        if head is None or head.last_entry_id is None:
            return Decimal("0")
        last = session.get(LedgerEntry, head.last_entry_id)
        return Decimal(last.balance_after) if last is not None else Decimal("0")

    @classmethod
    def entry_exists(cls, session: Session, user_id: str, ref_id: str, entry_type: Optional[str] = None) -> bool:
        """True if the account already has an entry with this ref_id (optionally of this type)"""
        query = session.query(LedgerEntry.id).filter(
            LedgerEntry.user_id == user_id, LedgerEntry.ref_id == ref_id
        )
        if entry_type is not None:
            query = query.filter(LedgerEntry.entry_type == _value(entry_type))
        return query.first() is not None

    @classmethod
    def entries_for_ref(cls, session: Session, user_id: str, ref_id: str) -> List[LedgerEntry]:
        return (
            session.query(LedgerEntry)
            .filter(LedgerEntry.user_id == user_id, LedgerEntry.ref_id == ref_id)
            .order_by(LedgerEntry.sequence.asc())
            .all()
        )

    @classmethod
    def history(cls, session: Session, user_id: str, limit: int = 50) -> List[LedgerEntry]:
        """Most recent entries first"""
        return (
            session.query(LedgerEntry)
            .filter(LedgerEntry.user_id == user_id)
            .order_by(LedgerEntry.sequence.desc())
            .limit(limit)
            .all()
        )
