"""
Status comments on the ticket that triggered a job.

Used by the job worker to report failures back where the request came from.
Posting is best effort: every failure is returned as a CommentResult, never
raised, so a broken comment path cannot mask the job error being reported.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from .models import Job, JobSource
from .secrets import SecretsProvider

logger = logging.getLogger("comments")

GITHUB_API_URL = "https://api.github.com"


@dataclass
class CommentResult:
    success: bool
    error: Optional[str] = None


def jira_adf_body(text: str) -> Dict[str, Any]:
    """Atlassian Document Format body with one paragraph per line."""
    paragraphs = [
        {"type": "paragraph", "content": [{"type": "text", "text": line}]} if line else {"type": "paragraph"}
        for line in text.split("\n")
    ]
    return {"body": {"type": "doc", "version": 1, "content": paragraphs}}


class CommentPoster:
    """Posts plain-text comments to GitHub issues/PRs and Jira issues."""

    def __init__(
        self,
        secrets: SecretsProvider,
        github_api_url: str = GITHUB_API_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._secrets = secrets
        self._github_api_url = github_api_url.rstrip("/")
        self._transport = transport

    async def post_github_comment(self, owner: str, repo: str, number: int, text: str) -> CommentResult:
        token = await self._secrets.get("github_token")
        if not token:
            return CommentResult(success=False, error="GitHub token not configured")
        return await self._post(
            f"{self._github_api_url}/repos/{owner}/{repo}/issues/{number}/comments",
            json={"body": text},
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
            },
        )

    async def post_jira_comment(self, issue_key: str, text: str) -> CommentResult:
        base_url = await self._secrets.get("jira_base_url")
        email = await self._secrets.get("jira_email")
        token = await self._secrets.get("jira_api_token")
        if not (base_url and email and token):
            return CommentResult(success=False, error="Jira credentials not configured")
        return await self._post(
            f"{base_url.rstrip('/')}/rest/api/3/issue/{issue_key}/comment",
            json=jira_adf_body(text),
            auth=(email, token),
        )

    async def post_for_job(self, job: Job, text: str) -> CommentResult:
        """Comment wherever the job came from. Admin jobs have nowhere to post."""
        if job.source is JobSource.JIRA:
            return await self.post_jira_comment(job.issue_key, text)
        if job.source is JobSource.GITHUB:
            if job.number is None:
                return CommentResult(success=False, error="GitHub job has no issue or PR number")
            return await self.post_github_comment(job.owner, job.repo, job.number, text)
        return CommentResult(success=True)

    async def _post(self, url: str, json: Dict[str, Any], headers: Optional[Dict[str, str]] = None,
                    auth: Optional[tuple] = None) -> CommentResult:
        try:
            async with httpx.AsyncClient(timeout=30.0, transport=self._transport) as client:
                response = await client.post(url, json=json, headers=headers, auth=auth)
        except httpx.HTTPError as e:
            logger.error(f"Comment post to {url} failed: {e}")
            return CommentResult(success=False, error=str(e))

        if response.status_code >= 400:
            error = f"HTTP {response.status_code}: {response.text[:200]}"
            logger.error(f"Comment post to {url} rejected: {error}")
            return CommentResult(success=False, error=error)
        return CommentResult(success=True)
