"""
Consolidated Settlement Scheduler

All settlement jobs on one AsyncIOScheduler (UTC):
1. Daily Drip - 00:05
2. Allocation Expiry - hourly
3. Spin Ticket Expiry - hourly
4. Settlement Cycle - 00:10 (after the drip has filled the pots)
5. Withdrawal Promotion - every 15 minutes
6. Withdrawal Batching - hourly at :30
7. Retention Checks - hourly at :45
8. Leader Heartbeat - every 30 seconds

Every job except the heartbeat runs only on the instance holding the leader
lease, so running several instances never double-settles a cycle.
"""

import functools
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore

from jobs.settlement_jobs import (
    JobContext,
    run_daily_drip,
    run_allocation_expiry,
    run_spin_ticket_expiry,
    run_settlement_cycle,
    run_withdrawal_promotion,
    run_withdrawal_batching,
    run_retention_checks,
)
from services.leader_election import LeaderElection

logger = logging.getLogger(__name__)

JobFunc = Callable[[JobContext], Awaitable[Dict[str, Any]]]


class ConsolidatedScheduler:
    """Leader-gated scheduler for the settlement jobs"""

    def __init__(self, ctx: JobContext, election: Optional[LeaderElection] = None):
        self.ctx = ctx
        self.election = election or LeaderElection(ctx.session_factory)

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # Single instance enforcement
            'misfire_grace_time': 120
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def leader_only(self, job: JobFunc, job_id: str) -> Callable[[], Awaitable[Optional[Dict[str, Any]]]]:
        """Wrap a job so followers skip it"""
        @functools.wraps(job)
        async def gated():
            if not self.election.is_leader():
                logger.debug(f"👥 {job_id}: not leader, skipping")
                return None
            return await job(self.ctx)
        return gated

    async def heartbeat(self) -> bool:
        return self.election.heartbeat()

    def _add(self, job: JobFunc, trigger, job_id: str, name: str, misfire_grace_time: int = 120):
        self.scheduler.add_job(
            self.leader_only(job, job_id),
            trigger=trigger,
            id=job_id,
            name=name,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=misfire_grace_time,
            replace_existing=True
        )

    def setup_jobs(self):
        for job in self.scheduler.get_jobs():
            self.scheduler.remove_job(job.id)
            logger.info(f"🧹 Removed existing job: {job.id}")

        self.scheduler.add_job(
            self.heartbeat,
            trigger=IntervalTrigger(seconds=30),
            id="leader_heartbeat",
            name="💓 Leader Heartbeat - Scheduler Lease Renewal",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=30,
            replace_existing=True
        )

        self._add(run_daily_drip, CronTrigger(hour=0, minute=5),
                  "daily_drip", "💧 Daily Drip - Pool Allocation Release", misfire_grace_time=3600)
        self._add(run_allocation_expiry, CronTrigger(minute=0),
                  "allocation_expiry", "⌛ Allocation Expiry - Admin Recapture")
        self._add(run_spin_ticket_expiry, CronTrigger(minute=0, second=30),
                  "spin_ticket_expiry", "🎟️ Spin Ticket Expiry")
        # An hour of grace: the cycle itself may spend up to five minutes retrying the oracle
        self._add(run_settlement_cycle, CronTrigger(hour=0, minute=10),
                  "settlement_cycle", "🌙 Settlement Cycle - Tap Pots & Predictions", misfire_grace_time=3600)
        self._add(run_withdrawal_promotion, IntervalTrigger(minutes=15),
                  "withdrawal_promotion", "🔄 Withdrawal Promotion - Audit Hold Release")
        self._add(run_withdrawal_batching, CronTrigger(minute=30),
                  "withdrawal_batching", "📦 Withdrawal Batching")
        self._add(run_retention_checks, CronTrigger(minute=45),
                  "retention_checks", "⏰ Retention Checks - Expiry Warnings & Downgrades")

        logger.info(f"🎯 Scheduled {len(self.scheduler.get_jobs())} settlement jobs")

    def start(self):
        # Claim leadership before the first tick rather than 30s later
        self.election.heartbeat()
        self.setup_jobs()
        self.scheduler.start()

        for job in self.scheduler.get_jobs():
            logger.info(f"📋 {job.name} ({job.id}) next run {job.next_run_time}")
        logger.info(f"✅ Scheduler started as {self.election.status.value} ({self.election.instance_id})")

    def stop(self):
        self.scheduler.shutdown(wait=False)
        self.election.release()
        logger.info("📴 Settlement scheduler stopped")
