"""
Unit Tests for Secrets Providers and Comment Posting

Test coverage for:
- Secret masking
- Environment and vault secret providers (HTTP mocked with httpx.MockTransport)
- GitHub and Jira comment posting, including failure results
"""

import json
import time

import httpx
import pytest

from ticket_worker.comments import CommentPoster, jira_adf_body
from ticket_worker.errors import SecretsError
from ticket_worker.models import AdminJob, GitHubJob, JiraJob
from ticket_worker.secrets import EnvSecretsProvider, VaultSecretsProvider, mask_secret

VAULT_URL = "https://worker-vault.vault.azure.net"
IDENTITY_URL = "http://169.254.169.254/msi/token"


# -----------------------------------------------------------------------------
# Test Cases: Masking
# -----------------------------------------------------------------------------
@pytest.mark.parametrize("secret,expected", [
    (None, ""),
    ("", ""),
    ("short", "******"),
    ("ghp_abcdefghijkl", "gh******kl"),
])
def test_mask_secret(secret, expected):
    assert mask_secret(secret) == expected


# -----------------------------------------------------------------------------
# Test Cases: Environment Provider
# -----------------------------------------------------------------------------
class TestEnvSecretsProvider:
    """Tests for secrets read from the worker environment."""

    @pytest.mark.asyncio
    async def test_get_env_only_includes_set_values(self):
        provider = EnvSecretsProvider({"GITHUB_TOKEN": "ghp_x", "JIRA_EMAIL": "", "OTHER": "y"})

        assert await provider.get_env() == {"GITHUB_TOKEN": "ghp_x"}

    @pytest.mark.asyncio
    async def test_get(self):
        provider = EnvSecretsProvider({"JIRA_API_TOKEN": "tok"})

        assert await provider.get("jira_api_token") == "tok"
        assert await provider.get("figma_api_key") is None


# -----------------------------------------------------------------------------
# Test Cases: Vault Provider
# -----------------------------------------------------------------------------
def _vault_handler(secrets, calls, vault_status=None):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if request.url.host == "169.254.169.254":
            assert request.headers["x-identity-header"] == "id-header"
            return httpx.Response(200, json={
                "access_token": "vault-token",
                "expires_on": str(int(time.time()) + 3600),
            })
        assert request.headers["Authorization"] == "Bearer vault-token"
        if vault_status is not None:
            return httpx.Response(vault_status)
        name = request.url.path.rsplit("/", 1)[-1]
        if name not in secrets:
            return httpx.Response(404, json={"error": {"code": "SecretNotFound"}})
        return httpx.Response(200, json={"value": secrets[name]})
    return handler


class TestVaultSecretsProvider:
    """Tests for Azure Key Vault reads."""

    @pytest.mark.asyncio
    async def test_reads_and_maps_secrets(self):
        calls = []
        transport = httpx.MockTransport(_vault_handler({"github-token": "ghp_vault"}, calls))
        provider = VaultSecretsProvider(VAULT_URL, IDENTITY_URL, "id-header", transport=transport)

        env = await provider.get_env()

        assert env == {"GITHUB_TOKEN": "ghp_vault"}
        assert calls[1].url.params["api-version"] == "7.4"

    @pytest.mark.asyncio
    async def test_values_are_cached(self):
        calls = []
        transport = httpx.MockTransport(_vault_handler({"github-token": "ghp_vault"}, calls))
        provider = VaultSecretsProvider(VAULT_URL, IDENTITY_URL, "id-header", transport=transport)

        await provider.get_all()
        first_round = len(calls)
        await provider.get_all()

        assert len(calls) == first_round

    @pytest.mark.asyncio
    async def test_vault_error_raises(self):
        transport = httpx.MockTransport(_vault_handler({}, [], vault_status=403))
        provider = VaultSecretsProvider(VAULT_URL, IDENTITY_URL, "id-header", transport=transport)

        with pytest.raises(SecretsError):
            await provider.get_env()

    @pytest.mark.asyncio
    async def test_identity_failure_raises(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500))
        provider = VaultSecretsProvider(VAULT_URL, IDENTITY_URL, "id-header", transport=transport)

        with pytest.raises(SecretsError):
            await provider.get_env()

    def test_from_env_requires_all_variables(self, monkeypatch):
        monkeypatch.setenv("VAULT_URL", VAULT_URL)
        monkeypatch.delenv("IDENTITY_ENDPOINT", raising=False)
        monkeypatch.delenv("IDENTITY_HEADER", raising=False)

        assert VaultSecretsProvider.from_env() is None


# -----------------------------------------------------------------------------
# Test Cases: Comments
# -----------------------------------------------------------------------------
SECRETS = EnvSecretsProvider({
    "GITHUB_TOKEN": "ghp_comment",
    "JIRA_BASE_URL": "https://acme.atlassian.net/",
    "JIRA_EMAIL": "bot@acme.io",
    "JIRA_API_TOKEN": "jira-token",
})


class TestCommentPoster:
    """Tests for posting status comments."""

    @pytest.mark.asyncio
    async def test_github_comment(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, json={"id": 1})

        poster = CommentPoster(SECRETS, transport=httpx.MockTransport(handler))
        job = GitHubJob(instruction="x", triggered_by="a", owner="acme", repo="api", pr_number=12)

        result = await poster.post_for_job(job, "Oops, I hit an error: boom")

        assert result.success is True
        assert seen[0].url.path == "/repos/acme/api/issues/12/comments"
        assert seen[0].headers["Authorization"] == "Bearer ghp_comment"
        assert json.loads(seen[0].content) == {"body": "Oops, I hit an error: boom"}

    @pytest.mark.asyncio
    async def test_jira_comment_uses_adf(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, json={"id": "10000"})

        poster = CommentPoster(SECRETS, transport=httpx.MockTransport(handler))
        job = JiraJob(instruction="x", triggered_by="a", issue_key="DXTR-5")

        result = await poster.post_for_job(job, "line one\nline two")

        assert result.success is True
        assert str(seen[0].url) == "https://acme.atlassian.net/rest/api/3/issue/DXTR-5/comment"
        body = json.loads(seen[0].content)
        assert body == jira_adf_body("line one\nline two")
        assert len(body["body"]["content"]) == 2

    @pytest.mark.asyncio
    async def test_http_error_returns_failure(self):
        poster = CommentPoster(
            SECRETS, transport=httpx.MockTransport(lambda request: httpx.Response(403, text="forbidden")),
        )

        result = await poster.post_github_comment("acme", "api", 1, "hi")

        assert result.success is False
        assert "403" in result.error

    @pytest.mark.asyncio
    async def test_network_error_returns_failure(self):
        def handler(request):
            raise httpx.ConnectError("unreachable")

        poster = CommentPoster(SECRETS, transport=httpx.MockTransport(handler))

        result = await poster.post_jira_comment("DXTR-5", "hi")

        assert result.success is False
        assert "unreachable" in result.error

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        poster = CommentPoster(EnvSecretsProvider({}))

        assert (await poster.post_github_comment("acme", "api", 1, "hi")).success is False
        assert (await poster.post_jira_comment("DXTR-5", "hi")).success is False

    @pytest.mark.asyncio
    async def test_admin_job_has_nowhere_to_post(self):
        poster = CommentPoster(EnvSecretsProvider({}))

        result = await poster.post_for_job(AdminJob(instruction="x", triggered_by="a"), "hi")

        assert result.success is True
