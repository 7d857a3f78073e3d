"""
Scheduled job entry points and the leader-gated scheduler
"""

from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest

from jobs.consolidated_scheduler import ConsolidatedScheduler
from jobs.settlement_jobs import (
    JobContext, run_settlement_cycle, run_withdrawal_promotion, run_withdrawal_batching,
    run_daily_drip, run_retention_checks
)
from services.errors import PredictionsFrozenError
from services.notification_sink import RecordingNotificationSink
from services.price_oracle import PriceSourceError
from services.withdrawal_service import WithdrawalService
from tests.fixtures import FakeSource

TON_ADDRESS = "EQ" + "b" * 46


@pytest.fixture
def job_context(session_factory, settlement_config, make_oracle):
    def _build(*sources):
        return JobContext(
            session_factory=session_factory,
            config=settlement_config,
            oracle=make_oracle(*sources),
            sink=RecordingNotificationSink(),
        )
    return _build


class TestSettlementJobs:

    @pytest.mark.asyncio
    async def test_cycle_reports_frozen_oracle(self, job_context, now):
        ctx = job_context(FakeSource("a", error=PriceSourceError("down")))

        stats = await run_settlement_cycle(ctx, now)

        assert stats["settled"] is False
        assert stats["frozen"] is True
        assert stats["errors"]

    @pytest.mark.asyncio
    async def test_failed_cycle_pauses_prediction_submission(self, job_context, make_user, db_session, now):
        user = make_user(tier="BRONZE")
        ctx = job_context(FakeSource("a", error=PriceSourceError("down")))

        await run_settlement_cycle(ctx, now)

        with pytest.raises(PredictionsFrozenError):
            await ctx.predictions.submit_prediction(db_session, user.id, "higher", now=now)

    @pytest.mark.asyncio
    async def test_cycle_success(self, job_context, now):
        ctx = job_context(FakeSource("a", 95000))

        stats = await run_settlement_cycle(ctx, now)

        assert stats["settled"] is True
        assert stats["btc_price"] == "95000.00"
        assert stats["tap_tiers"] == 3

    @pytest.mark.asyncio
    async def test_withdrawal_stages(self, db_session, make_user, settlement_config, job_context, now):
        user = make_user(wallet_balance="25")
        WithdrawalService(settlement_config).request_withdrawal(
            db_session, user.id, "10", TON_ADDRESS, now=now - timedelta(hours=25)
        )
        db_session.commit()
        ctx = job_context(FakeSource("a", 1))

        promoted = await run_withdrawal_promotion(ctx, now)
        batched = await run_withdrawal_batching(ctx, now)
        empty = await run_withdrawal_batching(ctx, now)

        assert promoted["promoted"] == 1
        assert batched["withdrawals"] == 1
        assert batched["batch_id"] is not None
        assert empty == {"batch_id": None, "withdrawals": 0, "errors": []}

    @pytest.mark.asyncio
    async def test_job_failure_reported_not_raised(self, job_context, now):
        ctx = job_context(FakeSource("a", 1))
        ctx.drip.process_daily_drip = Mock(side_effect=RuntimeError("db gone"))

        stats = await run_daily_drip(ctx, now)

        assert stats["failed"] == 1
        assert stats["errors"] == ["db gone"]

    @pytest.mark.asyncio
    async def test_retention_job(self, make_user, db_session, job_context, now):
        make_user(tier="GOLD", expires_in=timedelta(days=-1))
        db_session.commit()

        stats = await run_retention_checks(job_context(FakeSource("a", 1)), now)

        assert stats["downgrades"] == 1


class TestConsolidatedScheduler:

    def test_registers_every_job(self, job_context):
        scheduler = ConsolidatedScheduler(job_context(FakeSource("a", 1)), election=Mock())

        scheduler.setup_jobs()

        assert {job.id for job in scheduler.scheduler.get_jobs()} == {
            "leader_heartbeat",
            "daily_drip",
            "allocation_expiry",
            "spin_ticket_expiry",
            "settlement_cycle",
            "withdrawal_promotion",
            "withdrawal_batching",
            "retention_checks",
        }

    @pytest.mark.asyncio
    async def test_follower_skips_jobs(self, job_context):
        election = Mock()
        election.is_leader.return_value = False
        ctx = job_context(FakeSource("a", 1))
        job = AsyncMock(return_value={"ok": True})

        result = await ConsolidatedScheduler(ctx, election=election).leader_only(job, "daily_drip")()

        assert result is None
        job.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_leader_runs_jobs(self, job_context):
        election = Mock()
        election.is_leader.return_value = True
        ctx = job_context(FakeSource("a", 1))
        job = AsyncMock(return_value={"ok": True})

        result = await ConsolidatedScheduler(ctx, election=election).leader_only(job, "daily_drip")()

        assert result == {"ok": True}
        job.assert_awaited_once_with(ctx)
