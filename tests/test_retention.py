"""
Subscriber retention: expiry warnings and lapsed-subscription downgrades
"""

from datetime import timedelta

import pytest

from models import SubscriptionAlert, User
from services.ledger_service import LedgerService
from services.notification_sink import RecordingNotificationSink
from services.retention_service import RetentionService


@pytest.fixture
def sink():
    return RecordingNotificationSink()


@pytest.fixture
def retention(settlement_config, sink):
    return RetentionService(settlement_config, sink=sink)


class TestWarnUser:

    def test_warning_once_per_period(self, db_session, make_user, retention, sink, now):
        user = make_user(tier="SILVER", expires_in=timedelta(hours=20))

        assert retention.warn_user(db_session, user, now)
        assert not retention.warn_user(db_session, user, now + timedelta(hours=1))

        assert [event for event, _ in sink.events] == ["subscription.expiry_warning"]
        alert = db_session.query(SubscriptionAlert).filter_by(user_id=user.id).one()
        assert alert.alert_type == "expiry_warning_48h"
        assert LedgerService.history(db_session, user.id)[0].entry_type == "subscription_expiry_warning"

    def test_renewal_starts_fresh_period(self, db_session, make_user, retention, now):
        user = make_user(tier="SILVER", expires_in=timedelta(hours=20))
        retention.warn_user(db_session, user, now)

        user.subscription_expiry = user.subscription_expiry + timedelta(days=30)
        db_session.flush()

        assert retention.warn_user(db_session, user, now + timedelta(days=29)), "A renewed period is warned again"


class TestDowngradeUser:

    def test_lapsed_user_goes_free(self, db_session, make_user, retention, sink, now):
        user = make_user(tier="GOLD", expires_in=timedelta(hours=-1))

        assert retention.downgrade_user(db_session, user, now)

        assert user.tier == "FREE"
        entry = LedgerService.history(db_session, user.id)[0]
        assert entry.entry_type == "tier_downgrade"
        assert entry.tier_at_time == "GOLD"
        assert sink.events[0] == (
            "subscription.expired",
            {"userId": user.id, "telegramId": user.telegram_id, "previousTier": "GOLD"},
        )

    def test_free_user_skipped(self, db_session, make_user, retention, now):
        user = make_user()
        assert not retention.downgrade_user(db_session, user, now)


class TestRunChecks:

    def test_batch(self, db_session, session_factory, make_user, retention, now):
        expiring = make_user(tier="BRONZE", expires_in=timedelta(hours=30))
        lapsed = make_user(tier="SILVER", expires_in=timedelta(days=-2))
        healthy = make_user(tier="GOLD", expires_in=timedelta(days=10))
        db_session.commit()

        stats = retention.run_checks(session_factory, now=now)
        repeat = retention.run_checks(session_factory, now=now)

        assert (stats["warnings_sent"], stats["downgrades"], stats["failed"]) == (1, 1, 0)
        assert (repeat["warnings_sent"], repeat["downgrades"]) == (0, 0), "Second run finds nothing new"

        db_session.expire_all()
        assert db_session.get(User, expiring.id).tier == "BRONZE"
        assert db_session.get(User, lapsed.id).tier == "FREE"
        assert db_session.query(SubscriptionAlert).filter_by(user_id=healthy.id).count() == 0
