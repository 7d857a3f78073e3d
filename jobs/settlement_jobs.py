"""
Settlement job entry points

Each run_* coroutine performs one scheduled operation, logs a start and a
completion line and returns its stats dict. Errors are logged and reported in
the stats so the next scheduler tick can retry; only the oracle failure in the
settlement cycle is surfaced, leaving predictions frozen.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from config import SettlementConfig
from database import managed_session
from services.abuse_gate import AbuseGate
from services.drip_service import DripService
from services.errors import OracleUnavailableError
from services.notification_sink import NotificationSink, LoggingNotificationSink
from services.prediction_service import PredictionService
from services.price_oracle import PriceOracle
from services.retention_service import RetentionService
from services.settlement_engine import SettlementEngine
from services.tier_catalog import TierCatalog
from services.withdrawal_service import WithdrawalService
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


@dataclass
class JobContext:
    """Services shared by every job, built once at startup"""
    session_factory: Callable[[], Session]
    config: SettlementConfig
    oracle: PriceOracle
    sink: NotificationSink = field(default_factory=LoggingNotificationSink)
    abuse_gate: Optional[AbuseGate] = None
    catalog: Optional[TierCatalog] = None

    def __post_init__(self):
        self.catalog = self.catalog or TierCatalog(self.config)
        self.drip = DripService(self.config)
        self.settlement = SettlementEngine(self.config, self.oracle, catalog=self.catalog, sink=self.sink)
        # Same oracle as settlement, so a frozen price lock also pauses submissions
        self.predictions = PredictionService(self.oracle)
        self.withdrawals = WithdrawalService(self.config, abuse_gate=self.abuse_gate)
        self.retention = RetentionService(self.config, sink=self.sink)


def build_job_context(session_factory: Callable[[], Session], config: SettlementConfig,
                      sink: Optional[NotificationSink] = None) -> JobContext:
    return JobContext(
        session_factory=session_factory,
        config=config,
        oracle=PriceOracle(config),
        sink=sink or LoggingNotificationSink(),
    )


def _failed(label: str, error: Exception) -> Dict[str, Any]:
    logger.error(f"❌ {label}: job failed: {error}", exc_info=True)
    return {"processed": 0, "successful": 0, "failed": 1, "errors": [str(error)]}


async def run_daily_drip(ctx: JobContext, now: Optional[datetime] = None) -> Dict[str, Any]:
    logger.info("💧 DAILY_DRIP: starting")
    try:
        return ctx.drip.process_daily_drip(ctx.session_factory, now)
    except Exception as e:
        return _failed("DAILY_DRIP", e)


async def run_allocation_expiry(ctx: JobContext, now: Optional[datetime] = None) -> Dict[str, Any]:
    logger.info("⌛ ALLOCATION_EXPIRY: starting")
    try:
        return ctx.drip.process_expired_allocations(ctx.session_factory, now)
    except Exception as e:
        return _failed("ALLOCATION_EXPIRY", e)


async def run_spin_ticket_expiry(ctx: JobContext, now: Optional[datetime] = None) -> Dict[str, Any]:
    logger.info("🎟️ SPIN_TICKET_EXPIRY: starting")
    try:
        return ctx.drip.process_expired_spin_tickets(ctx.session_factory, now)
    except Exception as e:
        return _failed("SPIN_TICKET_EXPIRY", e)


async def run_settlement_cycle(ctx: JobContext, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Daily settlement; an unavailable oracle aborts the cycle with predictions frozen"""
    logger.info("🌙 SETTLEMENT: starting daily cycle")
    try:
        results = await ctx.settlement.run_cycle(ctx.session_factory, now)
    except OracleUnavailableError as e:
        logger.error(f"❌ SETTLEMENT: cycle aborted, predictions frozen: {e}")
        return {"settled": False, "frozen": ctx.oracle.is_frozen(), "errors": [str(e)]}
    except Exception as e:
        logger.error(f"❌ SETTLEMENT: cycle failed: {e}", exc_info=True)
        return {"settled": False, "frozen": ctx.oracle.is_frozen(), "errors": [str(e)]}

    stats = {
        "settled": True,
        "frozen": False,
        "btc_price": str(results["btc_price"]),
        "tap_tiers": len(results["tap"] or []),
        "prediction_tiers": len(results["predictions"] or []),
        "errors": [],
    }
    logger.info(f"✅ SETTLEMENT: complete {stats}")
    return stats


async def run_withdrawal_promotion(ctx: JobContext, now: Optional[datetime] = None) -> Dict[str, Any]:
    logger.info("🔄 WITHDRAWAL_PROMOTION: starting")
    now = now or get_naive_utc_now()
    try:
        with managed_session(ctx.session_factory) as session:
            return ctx.withdrawals.promote_audited(session, now)
    except Exception as e:
        return _failed("WITHDRAWAL_PROMOTION", e)


async def run_withdrawal_batching(ctx: JobContext, now: Optional[datetime] = None) -> Dict[str, Any]:
    logger.info("📦 WITHDRAWAL_BATCH: starting")
    now = now or get_naive_utc_now()
    try:
        with managed_session(ctx.session_factory) as session:
            batch = ctx.withdrawals.create_batch(session, now)
            if batch is None:
                stats = {"batch_id": None, "withdrawals": 0, "errors": []}
            else:
                stats = {"batch_id": batch.id, "withdrawals": batch.total_withdrawals, "errors": []}
        return stats
    except Exception as e:
        return _failed("WITHDRAWAL_BATCH", e)


async def run_retention_checks(ctx: JobContext, now: Optional[datetime] = None) -> Dict[str, Any]:
    logger.info("⏰ RETENTION: starting")
    try:
        return ctx.retention.run_checks(ctx.session_factory, now)
    except Exception as e:
        return _failed("RETENTION", e)
