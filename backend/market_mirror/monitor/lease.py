"""Run guards for the market monitor.

RunToken is the in-process mutual exclusion: one scan/finalize cycle at a
time. DatabaseLease extends that across processes sharing one database.
"""

import logging
import os
import socket
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from market_mirror.db.models import MonitorLease
from market_mirror.db.upsert import insert_for

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


class RunToken:
    """Idle -> Running -> Idle. Check-and-set has no await in between."""

    def __init__(self):
        self.state = RunState.IDLE
        self.holder: Optional[str] = None

    @property
    def running(self) -> bool:
        return self.state == RunState.RUNNING

    def try_acquire(self, run_id: str) -> bool:
        if self.state == RunState.RUNNING:
            return False
        self.state = RunState.RUNNING
        self.holder = run_id
        return True

    def release(self, run_id: str) -> None:
        if self.holder != run_id:
            raise RuntimeError(f"run {run_id} does not hold the token (held by {self.holder})")
        self.state = RunState.IDLE
        self.holder = None


def default_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class DatabaseLease:
    """Named lease row with an expiry, taken by conditional upsert."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        name: str = "market-monitor",
        holder: Optional[str] = None,
        ttl_seconds: int = 900,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.session_maker = session_maker
        self.name = name
        self.holder = holder or default_holder()
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock

    async def acquire(self) -> bool:
        now = self.clock()
        expires_at = now + self.ttl
        async with self.session_maker() as db:
            async with db.begin():
                stmt = insert_for(db, MonitorLease).values(
                    name=self.name, holder=self.holder, acquired_at=now, expires_at=expires_at
                )
                inserted = await db.execute(stmt.on_conflict_do_nothing(index_elements=["name"]))
                if inserted.rowcount:
                    return True
                taken = await db.execute(
                    update(MonitorLease)
                    .where(MonitorLease.name == self.name)
                    .where(
                        or_(
                            MonitorLease.expires_at.is_(None),
                            MonitorLease.expires_at < now,
                            MonitorLease.holder == self.holder,
                        )
                    )
                    .values(holder=self.holder, acquired_at=now, expires_at=expires_at)
                )
                acquired = taken.rowcount == 1
        if not acquired:
            logger.info(f"[LEASE] {self.name} held by another process")
        return acquired

    async def release(self) -> None:
        async with self.session_maker() as db:
            async with db.begin():
                await db.execute(
                    update(MonitorLease)
                    .where(MonitorLease.name == self.name)
                    .where(MonitorLease.holder == self.holder)
                    .values(expires_at=None)
                )
