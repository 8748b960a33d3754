"""
Secrets for the supervised CLI.

Secrets are exposed to the CLI only as environment variables of the child
process. Two providers:
- EnvSecretsProvider: reads the worker's own environment (local runs, tests)
- VaultSecretsProvider: reads an Azure Key Vault through its REST API using a
  managed-identity token, cached for a few minutes
"""

import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

import httpx

from .errors import SecretsError

logger = logging.getLogger("secrets")

VAULT_API_VERSION = "7.4"
IDENTITY_API_VERSION = "2019-08-01"
VAULT_RESOURCE = "https://vault.azure.net"
CACHE_TTL_SECONDS = 5 * 60
TOKEN_REFRESH_MARGIN_SECONDS = 5 * 60


@dataclass(frozen=True)
class SecretKey:
    vault_key: str
    env_var: str


SECRET_KEYS: Dict[str, SecretKey] = {
    "jira_base_url": SecretKey("jira-base-url", "JIRA_BASE_URL"),
    "jira_email": SecretKey("jira-email", "JIRA_EMAIL"),
    "jira_api_token": SecretKey("jira-api-token", "JIRA_API_TOKEN"),
    "jira_webhook_secret": SecretKey("jira-webhook-secret", "JIRA_WEBHOOK_SECRET"),
    "github_token": SecretKey("github-token", "GITHUB_TOKEN"),
    "github_webhook_secret": SecretKey("github-webhook-secret", "GITHUB_WEBHOOK_SECRET"),
    "figma_api_key": SecretKey("figma-api-key", "FIGMA_API_KEY"),
    "anthropic_api_key": SecretKey("anthropic-api-key", "ANTHROPIC_API_KEY"),
}


def mask_secret(secret: Optional[str]) -> str:
    """Show only the first and last two characters of a long secret."""
    if not secret:
        return ""
    if len(secret) < 12:
        return "******"
    return f"{secret[:2]}******{secret[-2:]}"


class SecretsProvider(ABC):
    """Source of secret values keyed by SECRET_KEYS names."""

    @abstractmethod
    async def get_all(self) -> Dict[str, Optional[str]]:
        pass

    async def get(self, name: str) -> Optional[str]:
        return (await self.get_all()).get(name)

    async def get_env(self) -> Dict[str, str]:
        """{ENV_VAR: value} for every secret that has a value."""
        values = await self.get_all()
        return {
            entry.env_var: values[name]
            for name, entry in SECRET_KEYS.items()
            if values.get(name)
        }


class EnvSecretsProvider(SecretsProvider):
    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self._environ = environ if environ is not None else os.environ

    async def get_all(self) -> Dict[str, Optional[str]]:
        return {name: self._environ.get(entry.env_var) for name, entry in SECRET_KEYS.items()}


class VaultSecretsProvider(SecretsProvider):
    """
    Azure Key Vault reader.

    Missing secrets (404) read as None. Any other failure raises SecretsError.
    """

    def __init__(
        self,
        vault_url: str,
        identity_endpoint: str,
        identity_header: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._vault_url = vault_url.rstrip("/")
        self._identity_endpoint = identity_endpoint
        self._identity_header = identity_header
        self._transport = transport
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._cache: Dict[str, Optional[str]] = {}
        self._cache_loaded_at = 0.0

    @classmethod
    def from_env(cls) -> Optional["VaultSecretsProvider"]:
        vault_url = os.getenv("VAULT_URL")
        endpoint = os.getenv("IDENTITY_ENDPOINT")
        header = os.getenv("IDENTITY_HEADER")
        if not (vault_url and endpoint and header):
            return None
        return cls(vault_url, endpoint, header)

    def _cache_valid(self) -> bool:
        return bool(self._cache) and time.monotonic() - self._cache_loaded_at < CACHE_TTL_SECONDS

    async def get_all(self) -> Dict[str, Optional[str]]:
        if not self._cache_valid():
            await self.refresh()
        return dict(self._cache)

    async def refresh(self) -> None:
        async with httpx.AsyncClient(timeout=30.0, transport=self._transport) as client:
            token = await self._get_token(client)
            values: Dict[str, Optional[str]] = {}
            for name, entry in SECRET_KEYS.items():
                values[name] = await self._read_secret(client, token, entry.vault_key)
        self._cache = values
        self._cache_loaded_at = time.monotonic()
        logger.info(f"Loaded {sum(1 for v in values.values() if v)} secret(s) from vault")

    async def _get_token(self, client: httpx.AsyncClient) -> str:
        if self._token and self._token_expires_at > time.time() + TOKEN_REFRESH_MARGIN_SECONDS:
            return self._token
        try:
            response = await client.get(
                self._identity_endpoint,
                params={"resource": VAULT_RESOURCE, "api-version": IDENTITY_API_VERSION},
                headers={"x-identity-header": self._identity_header},
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            raise SecretsError(f"Failed to obtain vault token from identity endpoint: {e}") from e

        token = payload.get("access_token")
        expires_on = payload.get("expires_on")
        if not token or not expires_on:
            raise SecretsError("Identity endpoint response missing access_token or expires_on")
        self._token = token
        self._token_expires_at = float(expires_on)
        return token

    async def _read_secret(self, client: httpx.AsyncClient, token: str, vault_key: str) -> Optional[str]:
        try:
            response = await client.get(
                f"{self._vault_url}/secrets/{vault_key}",
                params={"api-version": VAULT_API_VERSION},
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            raise SecretsError(f"Vault request for '{vault_key}' failed: {e}") from e
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise SecretsError(f"Vault returned {response.status_code} for '{vault_key}'")
        return response.json().get("value")
