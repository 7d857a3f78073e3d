"""
Leader Election for Scheduled Jobs
Database-lease leader election so only one instance runs settlement jobs

Each scheduler name has one scheduler_leases row. An instance holds the lease
while expires_at is in the future and renews it on every heartbeat; a lapsed
lease is taken over by the next instance to heartbeat, bumping the term.
"""

import logging
import os
import socket
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models import SchedulerLease
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class LeadershipStatus(Enum):
    """Leadership status for this instance"""
    FOLLOWER = "follower"
    LEADER = "leader"


@dataclass
class LeaderInfo:
    """Information about the current lease holder"""
    instance_id: str
    acquired_at: datetime
    expires_at: datetime
    election_term: int


def default_instance_id(service_name: str) -> str:
    return Config.SCHEDULER_INSTANCE_ID or f"{service_name}_{socket.gethostname()}_{os.getpid()}_{uuid.uuid4().hex[:6]}"


class LeaderElection:
    """
    Lease-based leader election

    heartbeat() is the only state transition: it acquires, renews or loses the
    lease and fires the elected/deposed callbacks on change.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        service_name: str = "settlement_scheduler",
        instance_id: Optional[str] = None,
        lease_seconds: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.service_name = service_name
        self.instance_id = instance_id or default_instance_id(service_name)
        self.lease_seconds = lease_seconds or Config.SCHEDULER_LEASE_SECONDS

        self.status = LeadershipStatus.FOLLOWER
        self.current_term = 0
        self.leader_info: Optional[LeaderInfo] = None

        self.on_elected_callbacks: List[Callable[[], None]] = []
        self.on_deposed_callbacks: List[Callable[[], None]] = []

        logger.info(f"🗳️ Initialized leader election for {service_name} with instance {self.instance_id}")

    def is_leader(self) -> bool:
        return self.status == LeadershipStatus.LEADER

    def add_election_callback(self, event: str, callback: Callable[[], None]) -> None:
        if event == "elected":
            self.on_elected_callbacks.append(callback)
        elif event == "deposed":
            self.on_deposed_callbacks.append(callback)
        else:
            raise ValueError(f"Unknown election event: {event}")

    def _try_acquire(self, session: Session, now: datetime) -> bool:
        lease = (
            session.query(SchedulerLease)
            .filter(SchedulerLease.name == self.service_name)
            .with_for_update()
            .one_or_none()
        )
        expires_at = now + timedelta(seconds=self.lease_seconds)

        if lease is None:
            lease = SchedulerLease(
                name=self.service_name,
                holder_id=self.instance_id,
                term=1,
                acquired_at=now,
                expires_at=expires_at,
            )
            session.add(lease)
        elif lease.holder_id == self.instance_id and lease.expires_at > now:
            lease.expires_at = expires_at
        elif lease.expires_at <= now:
            if lease.holder_id != self.instance_id:
                logger.warning(
                    f"⚠️ Lease for {self.service_name} held by {lease.holder_id} expired at {lease.expires_at}, taking over"
                )
            lease.holder_id = self.instance_id
            lease.term = lease.term + 1
            lease.acquired_at = now
            lease.expires_at = expires_at

        session.flush()
        self.leader_info = LeaderInfo(
            instance_id=lease.holder_id,
            acquired_at=lease.acquired_at,
            expires_at=lease.expires_at,
            election_term=lease.term,
        )
        self.current_term = lease.term
        return lease.holder_id == self.instance_id

    def heartbeat(self, now: Optional[datetime] = None) -> bool:
        """Acquire or renew the lease; returns whether this instance leads"""
        now = now or get_naive_utc_now()
        session = self.session_factory()
        try:
            leading = self._try_acquire(session, now)
            session.commit()
        except IntegrityError:
            # Another instance inserted the first lease row concurrently
            session.rollback()
            leading = False
        except Exception as e:
            session.rollback()
            logger.error(f"❌ Leader heartbeat failed for {self.service_name}: {e}")
            leading = False
        finally:
            session.close()

        self._set_status(LeadershipStatus.LEADER if leading else LeadershipStatus.FOLLOWER)
        return leading

    def release(self, now: Optional[datetime] = None) -> None:
        """Step down by expiring our own lease so another instance can take it at once"""
        if not self.is_leader():
            return
        now = now or get_naive_utc_now()
        session = self.session_factory()
        try:
            lease = (
                session.query(SchedulerLease)
                .filter(SchedulerLease.name == self.service_name, SchedulerLease.holder_id == self.instance_id)
                .with_for_update()
                .one_or_none()
            )
            if lease is not None:
                lease.expires_at = now
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"❌ Failed to release lease for {self.service_name}: {e}")
        finally:
            session.close()
        self._set_status(LeadershipStatus.FOLLOWER)

    def _set_status(self, status: LeadershipStatus) -> None:
        if status == self.status:
            return
        self.status = status
        if status == LeadershipStatus.LEADER:
            logger.info(f"👑 Became leader for {self.service_name} (term {self.current_term})")
            callbacks = self.on_elected_callbacks
        else:
            logger.info(f"👑➡️👥 Stepping down as leader for {self.service_name}")
            callbacks = self.on_deposed_callbacks
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Error in election callback: {e}")
