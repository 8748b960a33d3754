"""
Workspace Store

Owns the on-disk session state, one directory per ticket key:

    <workspaces_dir>/
      DXTR-123/
        .mapthew-session.json     {"key", "created_at", "last_used"}
        <repository checkouts, files written by the CLI>
      gh-acme-api-42/
        ...

The CLI keeps its own continuation data outside the workspace, under
<claude_home>/projects/<workspace path with "/" replaced by "-">. A session
"has session data" when that directory exists; removing a session removes both.

Sizes are never computed here implicitly: size_of() is the only call that
walks the tree.
"""

import json
import logging
import os
import shutil
import stat
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from .config import DEFAULT_BOT_NAME
from .errors import SessionNotFoundError, WorkspaceIOError
from .models import Session, SizeInfo, TicketKey, WorkspaceHandle, validate_ticket_key

logger = logging.getLogger("workspace_store")

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _from_epoch(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def directory_size(path: Path) -> int:
    """Total size of regular files under path. Unreadable entries are skipped."""
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                st = os.lstat(os.path.join(root, name))
            except OSError:
                continue
            if stat.S_ISREG(st.st_mode):
                total += st.st_size
    return total


def _rmtree_if_exists(path: Path) -> bool:
    try:
        shutil.rmtree(path)
        return True
    except FileNotFoundError:
        return False


class WorkspaceStore:
    """Keyed, persistent workspaces with creation/recency metadata."""

    def __init__(
        self,
        workspaces_dir: Path,
        claude_home: Path,
        bot_name: str = DEFAULT_BOT_NAME,
        clock: Optional[Clock] = None,
    ):
        self._workspaces_dir = Path(workspaces_dir)
        self._claude_home = Path(claude_home)
        self._metadata_name = f".{bot_name}-session.json"
        self._clock = clock or utcnow
        self._lock = threading.RLock()

    @property
    def workspaces_dir(self) -> Path:
        return self._workspaces_dir

    # -------------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------------

    def workspace_path(self, key: TicketKey) -> Path:
        return self._workspaces_dir / validate_ticket_key(key)

    def session_data_dir(self, workspace: Path) -> Path:
        """Where the CLI stores continuation data for a working directory."""
        encoded = str(Path(workspace).resolve()).replace("/", "-")
        return self._claude_home / "projects" / encoded

    def _metadata_path(self, workspace: Path) -> Path:
        return workspace / self._metadata_name

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def get_or_create(self, key: TicketKey) -> Tuple[WorkspaceHandle, bool]:
        """Return the workspace for key, creating it (and its metadata) if absent."""
        with self._lock:
            path = self.workspace_path(key)
            handle = WorkspaceHandle(key=key, path=path)
            try:
                if path.is_dir():
                    return handle, False
                path.mkdir(parents=True, exist_ok=True)
                now = self._clock()
                self._write_metadata(path, key, created_at=now, last_used=now)
            except OSError as e:
                raise WorkspaceIOError(key, "create", e) from e

        logger.info(f"Created workspace for {key}: {path}")
        return handle, True

    def exists(self, key: TicketKey) -> bool:
        return self.workspace_path(key).is_dir()

    def has_existing_session(self, handle: WorkspaceHandle) -> bool:
        """True iff a previous CLI run left continuation data for this workspace."""
        return self.session_data_dir(handle.path).is_dir()

    def touch(self, key: TicketKey) -> None:
        """Bump last_used to now. last_used never moves backwards."""
        with self._lock:
            path = self.workspace_path(key)
            if not path.is_dir():
                logger.warning(f"touch({key}): workspace no longer exists")
                return
            session = self._read_session(path)
            now = self._clock()
            created_at = session.created_at if session else now
            last_used = max(session.last_used, now) if session else now
            try:
                self._write_metadata(path, key, created_at=created_at, last_used=last_used)
            except OSError as e:
                raise WorkspaceIOError(key, "touch", e) from e

    def get(self, key: TicketKey) -> Optional[Session]:
        path = self.workspace_path(key)
        if not path.is_dir():
            return None
        return self._read_session(path)

    def list(self) -> List[Session]:
        """All resident sessions, sorted by key."""
        try:
            entries = sorted(self._workspaces_dir.iterdir(), key=lambda p: p.name)
        except FileNotFoundError:
            return []
        except OSError as e:
            raise WorkspaceIOError("*", "list", e) from e

        sessions = []
        for entry in entries:
            if entry.name.startswith(".") or not entry.is_dir():
                continue
            session = self._read_session(entry)
            if session is not None:
                sessions.append(session)
        return sessions

    def count(self) -> int:
        return len(self.list())

    def remove(self, key: TicketKey) -> bool:
        """
        Delete the workspace, its metadata and the CLI's continuation data.

        Idempotent: returns False when nothing was there.
        """
        with self._lock:
            path = self.workspace_path(key)
            try:
                removed_session = _rmtree_if_exists(self.session_data_dir(path))
                removed_workspace = _rmtree_if_exists(path)
            except OSError as e:
                raise WorkspaceIOError(key, "remove", e) from e

        if removed_workspace or removed_session:
            logger.info(f"Removed workspace for {key}")
        return removed_workspace or removed_session

    def size_of(self, key: TicketKey) -> SizeInfo:
        """Recursive size walk. Slow; only invoked explicitly."""
        path = self.workspace_path(key)
        if not path.is_dir():
            raise SessionNotFoundError(key)
        try:
            session_dir = self.session_data_dir(path)
            size_bytes = directory_size(session_dir) if session_dir.is_dir() else 0
            workspace_size = directory_size(path)
        except OSError as e:
            raise WorkspaceIOError(key, "size", e) from e
        return SizeInfo(key=key, size_bytes=size_bytes, workspace_size_bytes=workspace_size)

    # -------------------------------------------------------------------------
    # Metadata
    # -------------------------------------------------------------------------

    def _write_metadata(self, workspace: Path, key: TicketKey, created_at: datetime, last_used: datetime) -> None:
        target = self._metadata_path(workspace)
        tmp = target.with_name(target.name + ".tmp")
        tmp.write_text(json.dumps({
            "key": key,
            "created_at": created_at.isoformat(),
            "last_used": last_used.isoformat(),
        }, indent=2))
        os.replace(tmp, target)

    def _read_session(self, workspace: Path) -> Optional[Session]:
        """
        Build a Session from the metadata file. Falls back to directory
        timestamps when the file is missing or unreadable; returns None if
        the directory itself is gone.
        """
        created_at = last_used = None
        try:
            data = json.loads(self._metadata_path(workspace).read_text())
            created_at = _parse_timestamp(data["created_at"])
            last_used = _parse_timestamp(data["last_used"])
        except FileNotFoundError:
            pass
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Unreadable session metadata in {workspace}: {e}")

        if created_at is None or last_used is None:
            try:
                st = workspace.stat()
            except FileNotFoundError:
                return None
            created_at = created_at or _from_epoch(st.st_ctime)
            last_used = last_used or _from_epoch(st.st_mtime)

        return Session(
            key=workspace.name,
            created_at=created_at,
            last_used=last_used,
            has_session_data=self.session_data_dir(workspace).is_dir(),
        )
