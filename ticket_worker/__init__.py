"""
Ticket Worker Module

Runs the Claude CLI against persistent per-ticket workspaces in response to
queued jobs (Jira comments, GitHub PR comments, admin dashboard requests).

Components:
- WorkspaceStore: on-disk session state per ticket key (created/last used)
- EvictionPolicy: least-recently-used eviction under a soft session cap
- PruneScheduler: background removal of sessions inactive for too long
- ProcessSupervisor: runs the CLI with timeout, SIGTERM then SIGKILL
- SessionOrchestrator: reuse-or-create workspace, invoke, bump recency
- JobWorker: single-concurrency queue consumer with failure comments

Workspaces are kept after failed jobs so a retry can resume the session.
"""

__version__ = "0.4.0"
