#!/usr/bin/env python3
"""
Settlement Core Startup

Deterministic sequence: database check, table creation, configuration load,
scheduler start. Runs until interrupted.
"""

import asyncio
import logging
import sys
from typing import Optional

from config import Config, load_settlement_config
from database import SessionLocal, create_tables, test_connection

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class SettlementStartupManager:
    """Brings the settlement core up in a fixed order and collects startup errors"""

    def __init__(self):
        self.scheduler = None
        self.startup_errors = []

    def initialize_database(self) -> bool:
        logger.info("🗄️ Initializing database...")
        if not test_connection():
            self.startup_errors.append("Database: connection test failed")
            return False
        if not create_tables():
            self.startup_errors.append("Database: table creation failed")
            return False
        return True

    def load_config(self):
        session = SessionLocal()
        try:
            return load_settlement_config(session)
        finally:
            session.close()

    def start_scheduler(self, config) -> bool:
        from jobs.consolidated_scheduler import ConsolidatedScheduler
        from jobs.settlement_jobs import build_job_context

        try:
            self.scheduler = ConsolidatedScheduler(build_job_context(SessionLocal, config))
            self.scheduler.start()
            return True
        except Exception as e:
            logger.error(f"❌ Scheduler start failed: {e}")
            self.startup_errors.append(f"Scheduler: {e}")
            return False

    async def run(self) -> int:
        if not Config.validate_payment_configuration():
            return 1
        if not self.initialize_database():
            logger.error(f"❌ Startup aborted: {self.startup_errors}")
            return 1

        config = self.load_config()
        if not self.start_scheduler(config):
            logger.error(f"❌ Startup aborted: {self.startup_errors}")
            return 1

        logger.info(f"🚀 Settlement core running ({Config.ENVIRONMENT}, payments {Config.PAYMENT_MODE})")
        try:
            await asyncio.Event().wait()
        finally:
            self.scheduler.stop()
        return 0


def main() -> int:
    manager = SettlementStartupManager()
    try:
        return asyncio.run(manager.run())
    except KeyboardInterrupt:
        logger.info("🛑 Shutdown requested")
        return 0


if __name__ == "__main__":
    sys.exit(main())
