"""
Session management: a balance change and its ledger entry commit or roll back together
"""

from decimal import Decimal

import pytest

from database import managed_session, create_tables
from models import LedgerEntry, LedgerEntryType, User
from services.wallet_service import WalletService


class TestManagedSession:

    def test_commits_on_success(self, db_session, session_factory, make_user):
        user = make_user(wallet_balance="5")
        db_session.commit()

        with managed_session(session_factory) as session:
            WalletService(session).credit_usdt(session.get(User, user.id), Decimal("2"), LedgerEntryType.WHEEL_WIN)

        db_session.expire_all()
        assert db_session.get(User, user.id).wallet_balance == Decimal("7.0000")
        assert db_session.query(LedgerEntry).count() == 1

    def test_rolls_back_balance_and_entry_together(self, db_session, session_factory, make_user):
        user = make_user(wallet_balance="5")
        db_session.commit()

        with pytest.raises(RuntimeError):
            with managed_session(session_factory) as session:
                WalletService(session).credit_usdt(session.get(User, user.id), Decimal("2"), LedgerEntryType.WHEEL_WIN)
                raise RuntimeError("payout provider unreachable")

        db_session.expire_all()
        assert db_session.get(User, user.id).wallet_balance == Decimal("5.0000")
        assert db_session.query(LedgerEntry).count() == 0, "No half-written credit may survive"


class TestCreateTables:

    def test_idempotent(self, engine):
        assert create_tables(engine)
        assert create_tables(engine)
