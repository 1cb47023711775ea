"""
Expiry Scheduler for the PopThread core

Threads and gossips expire lazily: every read compares ``expires_at`` with a
single clock read taken for that operation, so nothing has to run at the
moment of expiry. A periodic sweep classifies all time-bounded entities for
alerting and notifies subscribers when something changes level. The sweep
never writes to entities, so it cannot contradict the read path.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from core.clock import Clock
from core.db_manager import DBManager
from core.fanout import RealtimeFanout
from models.database import Thread


logger = logging.getLogger(__name__)


class ExpiryLevel(Enum):
    """How close an entity is to its expiry."""
    EXPIRED = "expired"
    URGENT = "urgent"
    SOON = "soon"
    SCHEDULED = "scheduled"


ALERT_TITLES = {
    ExpiryLevel.URGENT: "Ending now",
    ExpiryLevel.SOON: "Ending soon",
    ExpiryLevel.SCHEDULED: "Live thread",
}


@dataclass
class ThreadAlert:
    """Alert shown to a user about one of their threads."""
    id: str
    title: str
    message: str
    time: datetime
    type: str
    location: str
    thread: Thread


@dataclass
class ExpirySnapshot:
    """Result of one sweep; every level was computed from ``taken_at``."""
    taken_at: datetime
    threads: Dict[str, ExpiryLevel] = field(default_factory=dict)
    gossips: Dict[str, ExpiryLevel] = field(default_factory=dict)

    def expired_threads(self) -> List[str]:
        return [tid for tid, level in self.threads.items() if level == ExpiryLevel.EXPIRED]


def is_expired(expires_at: Optional[datetime], now: datetime) -> bool:
    """An entity without ``expires_at`` never expires."""
    return expires_at is not None and now > expires_at


def classify(
    expires_at: Optional[datetime],
    now: datetime,
    urgent_minutes: int = 15,
    soon_minutes: int = 60
) -> ExpiryLevel:
    """
    Classify remaining lifetime.

    Args:
        expires_at: Expiry timestamp, None for entities that never expire
        now: The operation's single clock read
        urgent_minutes: Remaining time at or below which the level is URGENT
        soon_minutes: Remaining time at or below which the level is SOON

    Returns:
        ExpiryLevel
    """
    if expires_at is None:
        return ExpiryLevel.SCHEDULED
    if is_expired(expires_at, now):
        return ExpiryLevel.EXPIRED

    remaining = (expires_at - now).total_seconds()
    if remaining <= urgent_minutes * 60:
        return ExpiryLevel.URGENT
    if remaining <= soon_minutes * 60:
        return ExpiryLevel.SOON
    return ExpiryLevel.SCHEDULED


class ExpiryScheduler:
    """
    Tracks time-bounded threads and gossips.

    Responsibilities:
    - Lazy expiry checks against one clock read per operation
    - Alert feed ("urgent", "soon", "scheduled") for a user's threads
    - Periodic sweep that classifies everything and notifies subscribers
    """

    def __init__(
        self,
        db_manager: DBManager,
        fanout: RealtimeFanout,
        clock: Clock,
        urgent_minutes: int = 15,
        soon_minutes: int = 60
    ):
        """
        Initialize ExpiryScheduler.

        Args:
            db_manager: DBManager instance for database operations
            fanout: RealtimeFanout used to announce level changes
            clock: Authoritative clock
            urgent_minutes: URGENT threshold
            soon_minutes: SOON threshold
        """
        self.db = db_manager
        self.fanout = fanout
        self.clock = clock
        self.urgent_minutes = urgent_minutes
        self.soon_minutes = soon_minutes

        self.snapshot: Optional[ExpirySnapshot] = None
        self.sweep_task: Optional[asyncio.Task] = None
        self.running = False

    def classify(self, expires_at: Optional[datetime], now: datetime) -> ExpiryLevel:
        return classify(expires_at, now, self.urgent_minutes, self.soon_minutes)

    def alerts_for_user(self, user_id: str) -> List[ThreadAlert]:
        """
        Build the alert feed for threads a user created or joined.

        Expired threads produce no alert. All levels come from one clock read.

        Args:
            user_id: User identifier

        Returns:
            List of ThreadAlert ordered by expiry, soonest first
        """
        now = self.clock.now()
        created, joined = self.db.get_threads_for_user(user_id)

        alerts = []
        for thread in created + joined:
            level = self.classify(thread.expires_at, now)
            if level == ExpiryLevel.EXPIRED:
                continue
            alerts.append(ThreadAlert(
                id=f"{thread.id}:{level.value}",
                title=ALERT_TITLES[level],
                message=self._alert_message(thread, level, now),
                time=thread.expires_at,
                type=level.value,
                location=thread.location,
                thread=thread,
            ))

        alerts.sort(key=lambda alert: alert.time)
        return alerts

    def _alert_message(self, thread: Thread, level: ExpiryLevel, now: datetime) -> str:
        minutes = math.ceil((thread.expires_at - now).total_seconds() / 60)
        if level == ExpiryLevel.URGENT:
            return f"'{thread.title}' closes in {minutes} min. Last call!"
        if level == ExpiryLevel.SOON:
            return f"'{thread.title}' wraps up in {minutes} min."
        return f"'{thread.title}' runs until {thread.expires_at:%H:%M} UTC."

    def sweep(self) -> ExpirySnapshot:
        """
        Classify every thread and gossip with a single clock read.

        Publishes refresh-threads when any thread changed level since the
        previous sweep and refresh-gossips when a gossip newly expired. The
        first sweep only records a baseline.

        Returns:
            The new ExpirySnapshot
        """
        now = self.clock.now()
        thread_index, gossip_index = self.db.get_expiry_index()

        snapshot = ExpirySnapshot(taken_at=now)
        for thread_id, expires_at in thread_index:
            snapshot.threads[thread_id] = self.classify(expires_at, now)
        for gossip_id, expires_at in gossip_index:
            snapshot.gossips[gossip_id] = self.classify(expires_at, now)

        previous = self.snapshot
        self.snapshot = snapshot

        if previous is None:
            logger.info(
                f"Expiry baseline: {len(snapshot.threads)} threads, "
                f"{len(snapshot.gossips)} gossips"
            )
            return snapshot

        changed_threads = [
            tid for tid, level in snapshot.threads.items()
            if previous.threads.get(tid) != level
        ]
        newly_expired_gossips = [
            gid for gid, level in snapshot.gossips.items()
            if level == ExpiryLevel.EXPIRED and previous.gossips.get(gid) != ExpiryLevel.EXPIRED
        ]

        if changed_threads:
            logger.info(f"Sweep: {len(changed_threads)} threads changed expiry level")
            self.fanout.publish_refresh_threads()
        if newly_expired_gossips:
            logger.info(f"Sweep: {len(newly_expired_gossips)} gossips expired")
            self.fanout.publish_refresh_gossips()

        return snapshot

    async def start_sweep(self, interval: int = 30) -> None:
        """
        Start the periodic sweep as a background asyncio task.

        Args:
            interval: Sweep interval in seconds (default: 30)
        """
        if self.running:
            logger.warning("Expiry sweep already running")
            return

        self.running = True
        self.sweep_task = asyncio.create_task(self._sweep_loop(interval))
        logger.info(f"Started expiry sweep with interval {interval}s")

    async def stop_sweep(self) -> None:
        """Stop the periodic sweep."""
        self.running = False

        if self.sweep_task and not self.sweep_task.done():
            self.sweep_task.cancel()
            try:
                await self.sweep_task
            except asyncio.CancelledError:
                pass

        logger.info("Stopped expiry sweep")

    async def _sweep_loop(self, interval: int) -> None:
        """
        Background task for the periodic sweep.

        The sweep itself is blocking database work, so it runs in the default
        executor to keep the event loop (and the push server) responsive.

        Args:
            interval: Sweep interval in seconds
        """
        retry_count = 0
        max_retries = 3
        base_backoff = 5  # seconds
        loop = asyncio.get_running_loop()

        while self.running:
            try:
                await loop.run_in_executor(None, self.sweep)
                retry_count = 0
                await asyncio.sleep(interval)

            except asyncio.CancelledError:
                logger.debug("Expiry sweep loop cancelled")
                break
            except Exception as e:
                logger.error(f"Error in expiry sweep: {e}")
                retry_count += 1

                # Exponential backoff on repeated failures
                if retry_count >= max_retries:
                    backoff = min(base_backoff * (2 ** (retry_count - max_retries)), 60)
                    logger.warning(f"Multiple sweep failures, backing off for {backoff}s")
                    await asyncio.sleep(backoff)
                else:
                    await asyncio.sleep(interval)
