"""
Claude CLI invocation building.

Turns a job into the prompt and argument list for one CLI run. Secrets are
never part of the arguments; they travel in the child's environment.
"""

import time
from typing import List

from .models import AdminJob, GitHubJob, JiraJob, Job, JobSource

PERMISSION_MODE = "acceptEdits"
ALLOWED_TOOLS = "mcp,bash,read,write,edit"


def _jira_prompt(job: JiraJob, branch_prefix: str) -> str:
    return f"""
You have been triggered by a JIRA comment on ticket {job.issue_key}.

Instruction from {job.triggered_by}:
{job.instruction}

Your task:
1. Use the JIRA MCP to fetch the full details of ticket {job.issue_key}, including
   summary, description, comments, attachments and linked issues.
2. Use the GitHub MCP to find the repository that matches the ticket context
   (project key, labels, components, description).
3. Clone the repository and create a branch named: {branch_prefix}/{job.issue_key}-{int(time.time())}
4. Implement the requested changes.
5. Commit with the message: [{job.issue_key}] <brief description>
6. Push the branch and open a pull request titled [{job.issue_key}] <brief description>
   linking back to the JIRA ticket.
7. Post the PR link as a comment on the JIRA ticket.

Work carefully and methodically. If you encounter any issues, explain what went wrong.
""".strip()


def _github_prompt(job: GitHubJob) -> str:
    kind = "pull request" if job.pr_number is not None else "issue"
    branch_line = f"\nThe pull request branch is {job.branch_name}." if job.branch_name else ""
    return f"""
You have been triggered by a comment on GitHub {kind} {job.owner}/{job.repo}#{job.number}.{branch_line}

Instruction from {job.triggered_by}:
{job.instruction}

Your task:
1. Use the GitHub MCP to read the {kind}, its description, review comments and diff.
2. Check out the repository (reuse the existing checkout in this directory if present).
3. Implement the requested changes, commit and push to the {kind}'s branch.
4. Reply on the {kind} summarising what you changed.

Work carefully and methodically. If you encounter any issues, explain what went wrong.
""".strip()


def _admin_prompt(job: AdminJob) -> str:
    context: List[str] = []
    if job.jira_issue_key:
        context.append(f"- JIRA ticket: {job.jira_issue_key}")
    if job.jira_board_id:
        context.append(f"- JIRA board: {job.jira_board_id}")
    if job.github_owner and job.github_repo:
        repo = f"{job.github_owner}/{job.github_repo}"
        if job.github_pr_number is not None:
            context.append(f"- GitHub pull request: {repo}#{job.github_pr_number}")
        elif job.github_issue_number is not None:
            context.append(f"- GitHub issue: {repo}#{job.github_issue_number}")
        else:
            context.append(f"- GitHub repository: {repo}")
        if job.github_branch:
            context.append(f"- Branch: {job.github_branch}")
    context_block = "\n".join(context) if context else "- (none provided)"

    return f"""
You have been given a task from the admin dashboard by {job.triggered_by}.

Context:
{context_block}

Instruction:
{job.instruction}

Use the JIRA and GitHub MCPs as needed. If you encounter any issues, explain what went wrong.
""".strip()


def build_prompt(job: Job, bot_name: str) -> str:
    if job.source is JobSource.JIRA:
        return _jira_prompt(job, f"{bot_name}-bot")
    if job.source is JobSource.GITHUB:
        return _github_prompt(job)
    if job.source is JobSource.ADMIN:
        return _admin_prompt(job)
    raise ValueError(f"Unknown job source: {job.source!r}")


def build_args(prompt: str, model: str, resume: bool) -> List[str]:
    """CLI arguments; --continue resumes the workspace's previous session."""
    args = []
    if resume:
        args.append("--continue")
    args += [
        "--print", prompt,
        "--model", model,
        "--permission-mode", PERMISSION_MODE,
        "--allowedTools", ALLOWED_TOOLS,
    ]
    return args


def redact_args(args: List[str]) -> List[str]:
    """Argument list safe for logs: the prompt is replaced by its length."""
    redacted = list(args)
    for i, arg in enumerate(redacted[:-1]):
        if arg == "--print":
            redacted[i + 1] = f"<prompt {len(redacted[i + 1])} chars>"
    return redacted
