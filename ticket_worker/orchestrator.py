"""
Session Orchestrator

Runs one job against its ticket's persistent session:

    key -> busy mark -> (evict if new) -> get_or_create -> resume? ->
    (restore from archive) -> supervised CLI run -> touch -> (archive) -> release

The workspace outlives failures: a failed or timed-out run leaves it in place
so the next job for the same ticket can continue from it. Only eviction,
pruning and manual deletion remove workspaces.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .claude_cli import build_args, build_prompt, redact_args
from .config import ConfigStore, Settings
from .errors import SessionBusyError, SessionNotFoundError, WorkspaceIOError
from .eviction import EvictionPolicy
from .models import ActiveKeys, Job, Session, SizeInfo, TicketKey, readable_id, ticket_key_for, validate_ticket_key
from .secrets import EnvSecretsProvider, SecretsProvider
from .session_archive import SessionArchive
from .supervisor import InvocationResult, OutputCallback, ProcessSupervisor
from .workspace_store import WorkspaceStore

logger = logging.getLogger("orchestrator")


def echo_output(text: str) -> None:
    """Stream CLI output to the worker's stdout as it arrives."""
    sys.stdout.write(text)
    sys.stdout.flush()


class SessionOrchestrator:
    """Composes the store, eviction, busy guard and supervisor into job runs."""

    def __init__(
        self,
        settings: Settings,
        config: ConfigStore,
        store: WorkspaceStore,
        supervisor: ProcessSupervisor,
        secrets: Optional[SecretsProvider] = None,
        active: Optional[ActiveKeys] = None,
        eviction: Optional[EvictionPolicy] = None,
        on_output: Optional[OutputCallback] = echo_output,
        archive: Optional[SessionArchive] = None,
    ):
        self._settings = settings
        self._config = config
        self._store = store
        self._supervisor = supervisor
        self._secrets = secrets or EnvSecretsProvider()
        self._active = active or ActiveKeys()
        self._eviction = eviction or EvictionPolicy(store, config, self._active)
        self._on_output = on_output
        self._archive = archive

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        config: ConfigStore,
        secrets: Optional[SecretsProvider] = None,
        active: Optional[ActiveKeys] = None,
    ) -> "SessionOrchestrator":
        active = active or ActiveKeys()
        store = WorkspaceStore(settings.workspaces_dir, settings.claude_home, settings.bot_name)
        supervisor = ProcessSupervisor(
            default_timeout=settings.timeout_seconds,
            default_grace=settings.kill_grace_seconds,
        )
        return cls(
            settings, config, store, supervisor, secrets=secrets, active=active,
            archive=SessionArchive.from_env(store),
        )

    @property
    def store(self) -> WorkspaceStore:
        return self._store

    @property
    def active(self) -> ActiveKeys:
        return self._active

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    async def process(self, job: Job) -> InvocationResult:
        """
        Run job in its ticket's session.

        Raises SessionBusyError if the key already has a run in flight, and
        the matching ProcessError when the CLI run fails. last_used is bumped
        whether or not the run succeeded.
        """
        key = ticket_key_for(job)
        job_id = readable_id(job)

        with self._active.hold(key):
            existing = self._store.exists(key)
            if not existing:
                evicted = self._eviction.enforce_capacity(key)
                if evicted:
                    logger.info(f"[{job_id}] Evicted {len(evicted)} session(s): {', '.join(evicted)}")

            handle, is_new = self._store.get_or_create(key)
            resume = self._store.has_existing_session(handle)
            if not resume and self._archive is not None:
                resume = await self._archive.try_restore(handle)
            logger.info(
                f"[{job_id}] {'New' if is_new else 'Existing'} workspace {handle.path} "
                f"({'resuming session' if resume else 'fresh session'})"
            )

            try:
                result = await self._invoke(job, handle.path, resume)
            finally:
                self._touch(key)

            if result.success and self._archive is not None:
                await self._archive.try_archive(handle)

        logger.info(f"[{job_id}] Run finished: success={result.success} in {result.duration_seconds:.1f}s")
        result.raise_for_error()
        return result

    async def _invoke(self, job: Job, cwd: Path, resume: bool) -> InvocationResult:
        config = self._config.get()
        prompt = build_prompt(job, config.bot_name)
        args = build_args(prompt, config.claude_model, resume)
        env = {**os.environ, **await self._secrets.get_env()}

        logger.info(f"[{readable_id(job)}] Invoking {self._settings.claude_command} {' '.join(redact_args(args))}")
        return await self._supervisor.invoke(
            self._settings.claude_command,
            args,
            cwd=cwd,
            env=env,
            timeout=self._settings.timeout_seconds,
            grace=self._settings.kill_grace_seconds,
            on_output=self._on_output,
        )

    def _touch(self, key: TicketKey) -> None:
        # Runs in a finally block; a touch failure must not replace the run's own outcome.
        try:
            self._store.touch(key)
        except WorkspaceIOError as e:
            logger.error(f"Failed to update last_used for {key}: {e}")

    # -------------------------------------------------------------------------
    # Management
    # -------------------------------------------------------------------------

    def list_sessions(self) -> List[Session]:
        return self._store.list()

    def get_session_sizes(self) -> List[SizeInfo]:
        """Walks every session tree. Slow; only for explicit requests."""
        sizes = []
        for session in self._store.list():
            try:
                sizes.append(self._store.size_of(session.key))
            except SessionNotFoundError:
                logger.info(f"Session {session.key} disappeared while computing sizes")
        return sizes

    def stats(self) -> Dict[str, Any]:
        sessions = self._store.list()
        soft_cap = self._config.get().max_sessions
        return {
            "total": len(sessions),
            "active": sum(1 for s in sessions if s.has_session_data),
            "busy": len(self._active),
            "soft_cap": soft_cap,
            "available": max(soft_cap - len(sessions), 0),
        }

    def delete_session(self, key: TicketKey) -> None:
        """Remove a session on request. Refuses while a job is running in it."""
        validate_ticket_key(key)
        with self._active.removal_guard(key) as idle:
            if not idle:
                raise SessionBusyError(key)
            if not self._store.remove(key):
                raise SessionNotFoundError(key)
        logger.info(f"Session {key} deleted on request")

    async def cleanup_session(self, key: TicketKey) -> bool:
        """
        Drop a finished ticket's session locally and from the archive.

        A key with no local workspace counts as already cleaned up; the
        archived copy is still deleted. Returns whether a local session was
        removed. Raises SessionBusyError while a job is running in it.
        """
        try:
            self.delete_session(key)
            removed = True
        except SessionNotFoundError:
            logger.info(f"Session {key} already gone locally")
            removed = False

        if self._archive is not None:
            await self._archive.try_delete(key)
        return removed
