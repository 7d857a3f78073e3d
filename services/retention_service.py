"""
Subscriber retention checks

- Subscriptions ending within expiry_warning_hours get one warning per
  subscription period.
- Lapsed subscriptions are downgraded to FREE.

Both are de-duplicated through subscription_alerts rows whose key embeds the
expiry timestamp, so a renewal starts a fresh period with fresh alerts.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from config import SettlementConfig
from models import (
    User, SubscriptionAlert, TierName, LedgerEntryType, LedgerDirection, LedgerCurrency
)
from services.ledger_service import LedgerService
from services.notification_sink import NotificationSink, LoggingNotificationSink, safe_publish
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)

EXPIRED_ALERT = "expired_downgrade"


def _alert_key(alert_type: str, expiry: datetime) -> str:
    return f"{alert_type}:{expiry:%Y%m%d%H%M%S}"


class RetentionService:
    """Warns subscribers ahead of expiry and downgrades lapsed ones to FREE"""

    def __init__(self, config: SettlementConfig, sink: Optional[NotificationSink] = None):
        self.config = config
        self.sink = sink or LoggingNotificationSink()

    @property
    def warning_alert_type(self) -> str:
        return f"expiry_warning_{self.config.expiry_warning_hours}h"

    @staticmethod
    def _alert_exists(session: Session, user_id: str, alert_key: str) -> bool:
        return (
            session.query(SubscriptionAlert.id)
            .filter(SubscriptionAlert.user_id == user_id, SubscriptionAlert.alert_key == alert_key)
            .first()
            is not None
        )

    def warn_user(self, session: Session, user: User, now: datetime) -> bool:
        """Record and publish an expiry warning; False if this period was already warned"""
        alert_type = self.warning_alert_type
        alert_key = _alert_key(alert_type, user.subscription_expiry)
        if self._alert_exists(session, user.id, alert_key):
            return False

        session.add(SubscriptionAlert(user_id=user.id, alert_type=alert_type, alert_key=alert_key, created_at=now))
        LedgerService.append(
            session,
            user_id=user.id,
            entry_type=LedgerEntryType.SUBSCRIPTION_EXPIRY_WARNING,
            direction=LedgerDirection.DEBIT,
            amount=0,
            currency=LedgerCurrency.COINS,
            balance_before=user.total_coins,
            balance_after=user.total_coins,
            tier_at_time=user.tier,
            note=(
                f"Subscription expiry warning: {user.tier} expires in <{self.config.expiry_warning_hours} hours. "
                f"Renewal reminder sent."
            ),
        )
        session.flush()

        safe_publish(self.sink, "subscription.expiry_warning", {
            "userId": user.id,
            "telegramId": user.telegram_id,
            "tierName": user.tier,
            "expiresAt": user.subscription_expiry.isoformat(),
            "totalCoins": user.total_coins,
        })
        logger.info(f"⏰ RETENTION: {self.config.expiry_warning_hours}hr warning for {user.id} ({user.username})")
        return True

    def downgrade_user(self, session: Session, user: User, now: datetime) -> bool:
        """Move a lapsed subscriber to FREE; False if already handled"""
        if user.tier == TierName.FREE.value:
            return False
        alert_key = _alert_key(EXPIRED_ALERT, user.subscription_expiry)
        if self._alert_exists(session, user.id, alert_key):
            return False

        previous_tier = user.tier
        user.tier = TierName.FREE.value
        session.add(SubscriptionAlert(user_id=user.id, alert_type=EXPIRED_ALERT, alert_key=alert_key, created_at=now))
        LedgerService.append(
            session,
            user_id=user.id,
            entry_type=LedgerEntryType.TIER_DOWNGRADE,
            direction=LedgerDirection.DEBIT,
            amount=0,
            currency=LedgerCurrency.COINS,
            balance_before=user.total_coins,
            balance_after=user.total_coins,
            tier_at_time=previous_tier,
            note=f"Subscription expired: {previous_tier} -> FREE. User downgraded.",
        )
        session.flush()

        safe_publish(self.sink, "subscription.expired", {
            "userId": user.id,
            "telegramId": user.telegram_id,
            "previousTier": previous_tier,
        })
        logger.info(f"🔻 RETENTION: {user.id} ({user.username}) downgraded {previous_tier} -> FREE")
        return True

    def run_checks(self, session_factory: Callable[[], Session], now: Optional[datetime] = None) -> Dict[str, Any]:
        """One transaction per user, so one bad row never blocks the rest"""
        now = now or get_naive_utc_now()
        stats = {"warnings_sent": 0, "downgrades": 0, "failed": 0, "errors": []}
        horizon = now + timedelta(hours=self.config.expiry_warning_hours)

        session = session_factory()
        try:
            expiring_ids = [
                row.id for row in session.query(User.id).filter(
                    User.tier != TierName.FREE.value,
                    User.subscription_expiry > now,
                    User.subscription_expiry <= horizon,
                )
            ]
            expired_ids = [
                row.id for row in session.query(User.id).filter(
                    User.tier != TierName.FREE.value,
                    User.subscription_expiry <= now,
                )
            ]
        finally:
            session.close()

        for user_ids, handler, counter in (
            (expiring_ids, self.warn_user, "warnings_sent"),
            (expired_ids, self.downgrade_user, "downgrades"),
        ):
            for user_id in user_ids:
                session = session_factory()
                try:
                    user = session.query(User).filter(User.id == user_id).with_for_update().one_or_none()
                    if user is not None and handler(session, user, now):
                        stats[counter] += 1
                    session.commit()
                except Exception as e:
                    session.rollback()
                    stats["failed"] += 1
                    stats["errors"].append(f"{user_id}: {e}")
                    logger.error(f"❌ RETENTION: {user_id} failed: {e}", exc_info=True)
                finally:
                    session.close()

        logger.info(
            f"✅ RETENTION: complete, {stats['warnings_sent']} warnings, {stats['downgrades']} downgrades, "
            f"{stats['failed']} failed"
        )
        return stats
