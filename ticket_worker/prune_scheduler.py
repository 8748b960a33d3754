"""
Inactive Session Pruning

Background loop that removes sessions whose last use is older than
AppConfig.prune_threshold_days. Runs once at start, then every
AppConfig.prune_interval_days. Independent of the session cap: it runs even
when the store is well below capacity.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from .config import ConfigStore
from .errors import PruneTickError, TicketWorkerError
from .models import ActiveKeys, TicketKey
from .workspace_store import Clock, WorkspaceStore, utcnow

logger = logging.getLogger("prune_scheduler")

SECONDS_PER_DAY = 24 * 60 * 60


class PruneScheduler:
    """
    Runs prune ticks on a fixed interval.

    A failing removal is logged as a PruneTickError and the tick moves on to
    the next session; a failing tick is logged and the loop keeps running.
    """

    def __init__(
        self,
        store: WorkspaceStore,
        config: ConfigStore,
        active: Optional[ActiveKeys] = None,
        clock: Optional[Clock] = None,
    ):
        self._store = store
        self._config = config
        self._active = active or ActiveKeys()
        self._clock = clock or utcnow
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the loop; the first tick happens immediately."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Prune scheduler started")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Prune scheduler stopped")

    def prune_once(self, now: Optional[datetime] = None) -> List[TicketKey]:
        """
        Remove every idle session with now - last_used > threshold.

        A session exactly at the threshold is kept. Returns the pruned keys.
        """
        now = now or self._clock()
        threshold_days = self._config.get().prune_threshold_days
        threshold = timedelta(days=threshold_days)

        pruned: List[TicketKey] = []
        for session in self._store.list():
            age = now - session.last_used
            if age <= threshold:
                continue
            with self._active.removal_guard(session.key) as idle:
                if not idle:
                    logger.info(f"Skipping prune of {session.key}: job in progress")
                    continue
                try:
                    self._store.remove(session.key)
                except TicketWorkerError as e:
                    logger.error(str(PruneTickError(session.key, e)))
                    continue
            pruned.append(session.key)
            logger.info(f"Pruned {session.key} (inactive {age.days} days, threshold {threshold_days})")

        if pruned:
            logger.info(f"Pruned {len(pruned)} inactive session(s)")
        return pruned

    async def _run_loop(self) -> None:
        while self._running:
            try:
                # Runs on the loop thread: a job can only interleave at its subprocess await.
                self.prune_once()
            except Exception as e:
                logger.error(f"Prune tick failed: {e}", exc_info=True)

            interval_days = self._config.get().prune_interval_days
            try:
                await asyncio.sleep(interval_days * SECONDS_PER_DAY)
            except asyncio.CancelledError:
                break
