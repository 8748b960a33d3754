"""
Data model for sessions and jobs.

A job is a tagged variant (JiraJob | GitHubJob | AdminJob) discriminated by
its `source`. Every job maps to exactly one ticket key, which names the
persistent workspace that related jobs share.
"""

import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Set, Union

from .errors import InvalidTicketKeyError, SessionBusyError

TicketKey = str

ADMIN_TICKET_KEY: TicketKey = "admin"

ISSUE_KEY_PATTERN = re.compile(r"([A-Z]+-\d+)", re.IGNORECASE)


def validate_ticket_key(key: TicketKey) -> TicketKey:
    """A key becomes a directory name, so it must be one safe path component."""
    if (
        not key
        or key in (".", "..")
        or key.startswith(".")
        or "/" in key
        or "\\" in key
        or "\x00" in key
    ):
        raise InvalidTicketKeyError(key)
    return key


# -----------------------------------------------------------------------------
# Session Records
# -----------------------------------------------------------------------------
@dataclass
class Session:
    """A resident per-ticket session."""
    key: TicketKey
    created_at: datetime
    last_used: datetime
    has_session_data: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "created_at": self.created_at.isoformat(),
            "last_used": self.last_used.isoformat(),
            "has_session_data": self.has_session_data,
        }


@dataclass(frozen=True)
class WorkspaceHandle:
    """On-disk location bound to a key. Issued by WorkspaceStore, not kept across calls."""
    key: TicketKey
    path: Path


@dataclass
class SizeInfo:
    """Recursive sizes; only produced by the explicit size call."""
    key: TicketKey
    size_bytes: int
    workspace_size_bytes: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "size_bytes": self.size_bytes,
            "workspace_size_bytes": self.workspace_size_bytes,
            "size_mb": round(self.size_bytes / 1024 / 1024, 2),
        }


# -----------------------------------------------------------------------------
# Jobs
# -----------------------------------------------------------------------------
class JobSource(str, Enum):
    JIRA = "jira"
    GITHUB = "github"
    ADMIN = "admin"


@dataclass
class JiraJob:
    """Triggered by a Jira comment or label."""
    instruction: str
    triggered_by: str
    issue_key: str
    project_key: str = ""
    source: JobSource = field(default=JobSource.JIRA, init=False)


@dataclass
class GitHubJob:
    """Triggered by a GitHub PR/issue comment or review comment."""
    instruction: str
    triggered_by: str
    owner: str
    repo: str
    pr_number: Optional[int] = None
    issue_number: Optional[int] = None
    branch_name: Optional[str] = None
    source: JobSource = field(default=JobSource.GITHUB, init=False)

    @property
    def number(self) -> Optional[int]:
        return self.pr_number if self.pr_number is not None else self.issue_number


@dataclass
class AdminJob:
    """Triggered from the admin dashboard, optionally with Jira/GitHub context."""
    instruction: str
    triggered_by: str
    jira_issue_key: Optional[str] = None
    jira_board_id: Optional[str] = None
    github_owner: Optional[str] = None
    github_repo: Optional[str] = None
    github_branch: Optional[str] = None
    github_pr_number: Optional[int] = None
    github_issue_number: Optional[int] = None
    source: JobSource = field(default=JobSource.ADMIN, init=False)


Job = Union[JiraJob, GitHubJob, AdminJob]


@dataclass
class SessionCleanupJob:
    """Queued removal of a session (manual delete or merged PR)."""
    key: TicketKey
    reason: str = "manual"


def extract_issue_key_from_branch(branch_name: str) -> Optional[str]:
    """'feature/dxtr-123-add-auth' -> 'DXTR-123'."""
    match = ISSUE_KEY_PATTERN.search(branch_name)
    return match.group(1).upper() if match else None


def _github_composite_key(owner: str, repo: str, number: Optional[int]) -> TicketKey:
    return f"gh-{owner}-{repo}-{number}"


def ticket_key_for(job: Job) -> TicketKey:
    """Workspace key for a job; related jobs share a key and so a session."""
    if job.source is JobSource.JIRA:
        key = job.issue_key
    elif job.source is JobSource.GITHUB:
        issue_key = extract_issue_key_from_branch(job.branch_name) if job.branch_name else None
        key = issue_key or _github_composite_key(job.owner, job.repo, job.number)
    elif job.source is JobSource.ADMIN:
        if job.jira_issue_key:
            key = job.jira_issue_key
        elif job.github_owner and job.github_repo:
            number = job.github_pr_number if job.github_pr_number is not None else job.github_issue_number
            key = _github_composite_key(job.github_owner, job.github_repo, number)
        else:
            key = ADMIN_TICKET_KEY
    else:
        raise ValueError(f"Unknown job source: {job.source!r}")
    return validate_ticket_key(key)


def readable_id(job: Job) -> str:
    """Short job label for logs."""
    if job.source is JobSource.GITHUB:
        return f"{job.repo}#{job.number}"
    if job.source is JobSource.JIRA:
        return job.issue_key
    return f"admin:{job.triggered_by}"


# -----------------------------------------------------------------------------
# Busy-Key Guard
# -----------------------------------------------------------------------------
class ActiveKeys:
    """
    In-memory set of keys with an invocation in flight.

    Eviction, pruning and manual deletion consult this set so a workspace is
    never removed while the CLI is running inside it.
    """

    def __init__(self):
        self._keys: Set[TicketKey] = set()
        self._lock = threading.Lock()

    @contextmanager
    def hold(self, key: TicketKey) -> Iterator[None]:
        with self._lock:
            if key in self._keys:
                raise SessionBusyError(key)
            self._keys.add(key)
        try:
            yield
        finally:
            with self._lock:
                self._keys.discard(key)

    @contextmanager
    def removal_guard(self, key: TicketKey) -> Iterator[bool]:
        """
        Yield True if key is idle. The set is locked for the duration of the
        block, so a job cannot claim the key while its workspace is removed.
        """
        with self._lock:
            yield key not in self._keys

    def is_busy(self, key: TicketKey) -> bool:
        with self._lock:
            return key in self._keys

    def snapshot(self) -> Set[TicketKey]:
        with self._lock:
            return set(self._keys)

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)
