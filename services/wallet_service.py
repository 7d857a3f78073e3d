"""
Wallet Service - balance mutations paired with ledger writes

Every method changes a live balance field on the user row and appends the
matching ledger entry in the same session. Nothing here commits.
"""

import logging
from decimal import Decimal
from typing import Optional
from sqlalchemy.orm import Session

from models import User, LedgerEntry, LedgerEntryType, LedgerDirection, LedgerCurrency
from services.errors import InsufficientBalanceError, UserNotFoundError
from services.ledger_service import LedgerService
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)


class WalletService:
    """USDT wallet and coin balance operations with ledger trail"""

    def __init__(self, db: Session):
        self.db = db

    def get_user(self, user_id: str, for_update: bool = False) -> User:
        query = self.db.query(User).filter(User.id == user_id)
        if for_update:
            query = query.with_for_update()
        user = query.one_or_none()
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")
        return user

    def credit_usdt(
        self,
        user: User,
        amount: Decimal,
        entry_type: LedgerEntryType,
        ref_id: Optional[str] = None,
        game: Optional[str] = None,
        note: Optional[str] = None,
    ) -> LedgerEntry:
        amount = MonetaryDecimal.quantize_money(amount)
        MonetaryDecimal.validate_positive(amount, f"{entry_type.value}_credit")

        before = MonetaryDecimal.quantize_money(user.wallet_balance or 0)
        after = before + amount
        user.wallet_balance = after

        return LedgerService.append(
            self.db,
            user_id=user.id,
            entry_type=entry_type,
            direction=LedgerDirection.CREDIT,
            amount=amount,
            currency=LedgerCurrency.USDT,
            balance_before=before,
            balance_after=after,
            game=game,
            ref_id=ref_id,
            tier_at_time=user.tier,
            note=note,
        )

    def debit_usdt(
        self,
        user: User,
        amount: Decimal,
        entry_type: LedgerEntryType,
        ref_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> LedgerEntry:
        amount = MonetaryDecimal.quantize_money(amount)
        MonetaryDecimal.validate_positive(amount, f"{entry_type.value}_debit")

        before = MonetaryDecimal.quantize_money(user.wallet_balance or 0)
        if before < amount:
            raise InsufficientBalanceError(
                f"Insufficient balance: {before} < {amount} for user {user.id}"
            )
        after = before - amount
        user.wallet_balance = after

        return LedgerService.append(
            self.db,
            user_id=user.id,
            entry_type=entry_type,
            direction=LedgerDirection.DEBIT,
            amount=amount,
            currency=LedgerCurrency.USDT,
            balance_before=before,
            balance_after=after,
            ref_id=ref_id,
            tier_at_time=user.tier,
            note=note,
        )

    def credit_coins(
        self,
        user: User,
        coins: int,
        entry_type: LedgerEntryType,
        ref_id: Optional[str] = None,
        game: Optional[str] = None,
        note: Optional[str] = None,
    ) -> LedgerEntry:
        if coins <= 0:
            raise ValueError(f"Coin credit must be positive, got {coins}")

        before = user.total_coins or 0
        after = before + coins
        user.total_coins = after

        return LedgerService.append(
            self.db,
            user_id=user.id,
            entry_type=entry_type,
            direction=LedgerDirection.CREDIT,
            amount=coins,
            currency=LedgerCurrency.COINS,
            balance_before=before,
            balance_after=after,
            game=game,
            ref_id=ref_id,
            tier_at_time=user.tier,
            note=note,
        )

    def record_audit_marker(
        self,
        user: User,
        entry_type: LedgerEntryType,
        amount: Decimal = Decimal("0"),
        currency: LedgerCurrency = LedgerCurrency.USDT,
        ref_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> LedgerEntry:
        """Ledger entry that documents a state change without moving the balance"""
        balance = user.wallet_balance if currency == LedgerCurrency.USDT else user.total_coins
        return LedgerService.append(
            self.db,
            user_id=user.id,
            entry_type=entry_type,
            direction=LedgerDirection.DEBIT,
            amount=amount,
            currency=currency,
            balance_before=balance or 0,
            balance_after=balance or 0,
            ref_id=ref_id,
            tier_at_time=user.tier,
            note=note,
        )

    def credit_leaderboard_reward(self, user_id: str, amount: Decimal, period: str) -> Optional[LedgerEntry]:
        """Credit a leaderboard prize once per (user, period); repeats are no-ops"""
        ref_id = f"leaderboard_{period}"
        if LedgerService.entry_exists(self.db, user_id, ref_id, LedgerEntryType.LEADERBOARD_REWARD):
            logger.info(f"⚠️ LEADERBOARD_REWARD: {user_id} already rewarded for {period}")
            return None

        user = self.get_user(user_id, for_update=True)
        entry = self.credit_usdt(
            user,
            amount,
            LedgerEntryType.LEADERBOARD_REWARD,
            ref_id=ref_id,
            note=f"Leaderboard reward for {period}",
        )
        logger.info(f"✅ LEADERBOARD_REWARD: Credited ${entry.amount} to {user_id} for {period}")
        return entry
