"""
LRU eviction under a soft session cap.

Runs in-line before a session is created for a key that has no workspace yet.
The cap is soft: it is enforced by removing the least recently used session,
never by blocking new work. Sessions with a job in flight are never chosen.
"""

import logging
from typing import List, Optional, Set

from .config import ConfigStore
from .errors import WorkspaceIOError
from .models import ActiveKeys, Session, TicketKey
from .workspace_store import WorkspaceStore

logger = logging.getLogger("eviction")


def lru_order_key(session: Session) -> tuple:
    """Oldest last_used first; key breaks ties deterministically."""
    return (session.last_used, session.key)


class EvictionPolicy:
    """Keeps the resident session count below AppConfig.max_sessions."""

    def __init__(self, store: WorkspaceStore, config: ConfigStore, active: Optional[ActiveKeys] = None):
        self._store = store
        self._config = config
        self._active = active or ActiveKeys()

    def select_victim(self, sessions: List[Session], exclude: Set[TicketKey]) -> Optional[Session]:
        candidates = [s for s in sessions if s.key not in exclude and not self._active.is_busy(s.key)]
        if not candidates:
            return None
        return min(candidates, key=lru_order_key)

    def enforce_capacity(self, incoming_key: TicketKey) -> List[TicketKey]:
        """
        Evict until there is room for one more session.

        Returns the evicted keys. Removal failures are logged and the victim
        skipped; this never raises for maintenance problems.
        """
        max_sessions = self._config.get().max_sessions
        evicted: List[TicketKey] = []
        skipped: Set[TicketKey] = {incoming_key}

        while True:
            try:
                resident = self._store.list()
            except WorkspaceIOError as e:
                logger.error(f"Cannot list sessions to enforce the cap for {incoming_key}: {e}")
                break
            sessions = [s for s in resident if s.key not in evicted]
            if len(sessions) < max_sessions:
                break

            victim = self.select_victim(sessions, skipped)
            if victim is None:
                logger.warning(
                    f"At capacity ({len(sessions)}/{max_sessions}) but no evictable session; "
                    f"creating {incoming_key} over the soft cap"
                )
                break

            with self._active.removal_guard(victim.key) as idle:
                if not idle:
                    skipped.add(victim.key)
                    continue
                try:
                    removed = self._store.remove(victim.key)
                except WorkspaceIOError as e:
                    logger.error(f"Eviction of {victim.key} failed: {e}")
                    skipped.add(victim.key)
                    continue

            evicted.append(victim.key)
            if removed:
                logger.info(
                    f"Evicted {victim.key} (last used {victim.last_used.isoformat()}) "
                    f"to make room for {incoming_key} (cap {max_sessions})"
                )
            else:
                logger.info(f"Eviction victim {victim.key} was already gone")

        return evicted
