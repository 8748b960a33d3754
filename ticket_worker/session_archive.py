"""
S3 Session Archive

Optional off-host copy of each ticket's CLI continuation data, so a session
evicted or pruned locally (or lost with the host) can be resumed later:

- restore: when a workspace has no local session data, fetch and unpack
  s3://<bucket>/<prefix>/<key>.tar.gz into the store's session data dir
- archive: after a successful run, upload the session data dir
- delete: when the ticket is cleaned up (PR merged, ticket closed)

Enabled by S3_SESSIONS_BUCKET. Eviction and pruning never delete archives.
boto3 is synchronous; the async try_* wrappers run it in a worker thread and
never raise, failures are logged and the job carries on.
"""

import asyncio
import io
import logging
import os
import shutil
import tarfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .errors import SessionArchiveError
from .models import TicketKey, WorkspaceHandle
from .workspace_store import WorkspaceStore

logger = logging.getLogger("session_archive")

ARCHIVE_ROOT = "session"
MISSING_OBJECT_CODES = {"NoSuchKey", "NotFound", "404"}


@dataclass(frozen=True)
class S3StorageConfig:
    bucket: str
    region: str = "us-east-1"
    prefix: str = "sessions"
    endpoint: Optional[str] = None

    @classmethod
    def from_env(cls) -> Optional["S3StorageConfig"]:
        """None when S3_SESSIONS_BUCKET is not set."""
        bucket = os.getenv("S3_SESSIONS_BUCKET")
        if not bucket:
            return None
        return cls(
            bucket=bucket,
            region=os.getenv("S3_SESSIONS_REGION") or os.getenv("AWS_REGION") or "us-east-1",
            prefix=os.getenv("S3_SESSIONS_PREFIX") or "sessions",
            endpoint=os.getenv("S3_ENDPOINT") or None,
        )

    def object_key(self, key: TicketKey) -> str:
        return f"{self.prefix.strip('/')}/{key}.tar.gz"

    @property
    def location(self) -> str:
        return f"s3://{self.bucket}/{self.prefix.strip('/')}"


def _is_missing(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") in MISSING_OBJECT_CODES


def pack_session(session_dir: Path) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        tar.add(str(session_dir), arcname=ARCHIVE_ROOT)
    return buffer.getvalue()


def unpack_session(key: TicketKey, data: bytes, target: Path) -> None:
    """
    Unpack an archive made by pack_session into target.

    Only regular files and directories under ARCHIVE_ROOT are accepted. The
    tree is staged next to target and moved into place in one rename.
    """
    staging = target.with_name(target.name + ".restore")
    if staging.exists():
        shutil.rmtree(staging)
    staging.mkdir(parents=True)

    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
            for member in tar.getmembers():
                parts = PurePosixPath(member.name).parts
                if not parts or parts[0] != ARCHIVE_ROOT or ".." in parts:
                    raise SessionArchiveError(key, "restore", f"unexpected member '{member.name}'")
                if not (member.isfile() or member.isdir()):
                    raise SessionArchiveError(key, "restore", f"unsupported member type for '{member.name}'")

                destination = staging.joinpath(*parts[1:])
                if member.isdir():
                    destination.mkdir(parents=True, exist_ok=True)
                    continue
                destination.parent.mkdir(parents=True, exist_ok=True)
                source = tar.extractfile(member)
                with source, open(destination, "wb") as out:
                    shutil.copyfileobj(source, out)
        os.replace(staging, target)
    except (tarfile.TarError, SessionArchiveError, OSError):
        shutil.rmtree(staging, ignore_errors=True)
        raise


class SessionArchive:
    """Stores and fetches per-ticket session data in S3."""

    def __init__(self, store: WorkspaceStore, config: S3StorageConfig, client: Any = None):
        self._store = store
        self._config = config
        self._client = client

    @classmethod
    def from_env(cls, store: WorkspaceStore) -> Optional["SessionArchive"]:
        config = S3StorageConfig.from_env()
        if config is None:
            logger.info("S3 session storage disabled (S3_SESSIONS_BUCKET not set)")
            return None
        logger.info(f"S3 session storage enabled: {config.location}")
        return cls(store, config)

    @property
    def config(self) -> S3StorageConfig:
        return self._config

    @property
    def client(self) -> Any:
        if self._client is None:
            kwargs = {"region_name": self._config.region}
            if self._config.endpoint:
                # localstack / minio
                kwargs["endpoint_url"] = self._config.endpoint
                kwargs["config"] = Config(s3={"addressing_style": "path"})
            self._client = boto3.client("s3", **kwargs)
        return self._client

    # -------------------------------------------------------------------------
    # Blocking operations
    # -------------------------------------------------------------------------

    def archive(self, handle: WorkspaceHandle) -> bool:
        """Upload the session data for handle. False when there is none yet."""
        session_dir = self._store.session_data_dir(handle.path)
        if not session_dir.is_dir():
            logger.info(f"No session data to archive for {handle.key}")
            return False

        body = pack_session(session_dir)
        object_key = self._config.object_key(handle.key)
        self.client.put_object(
            Bucket=self._config.bucket,
            Key=object_key,
            Body=body,
            ContentType="application/gzip",
            Metadata={
                "ticket-key": handle.key,
                "archived-at": datetime.now(timezone.utc).isoformat(),
            },
        )
        logger.info(f"Archived session for {handle.key} ({len(body)} bytes) to s3://{self._config.bucket}/{object_key}")
        return True

    def restore(self, handle: WorkspaceHandle) -> bool:
        """Unpack the archived session for handle. False when none is stored."""
        object_key = self._config.object_key(handle.key)
        try:
            response = self.client.get_object(Bucket=self._config.bucket, Key=object_key)
        except ClientError as e:
            if _is_missing(e):
                logger.info(f"No archived session for {handle.key}")
                return False
            raise

        data = response["Body"].read()
        unpack_session(handle.key, data, self._store.session_data_dir(handle.path))
        logger.info(f"Restored session for {handle.key} ({len(data)} bytes) from s3://{self._config.bucket}/{object_key}")
        return True

    def delete(self, key: TicketKey) -> None:
        try:
            self.client.delete_object(Bucket=self._config.bucket, Key=self._config.object_key(key))
        except ClientError as e:
            if _is_missing(e):
                return
            raise
        logger.info(f"Deleted archived session for {key}")

    # -------------------------------------------------------------------------
    # Best-effort wrappers for the job path
    # -------------------------------------------------------------------------

    async def try_restore(self, handle: WorkspaceHandle) -> bool:
        try:
            return await asyncio.to_thread(self.restore, handle)
        except (BotoCoreError, ClientError, SessionArchiveError, tarfile.TarError, OSError) as e:
            logger.warning(f"Failed to restore session for {handle.key}: {e}")
            return False

    async def try_archive(self, handle: WorkspaceHandle) -> bool:
        try:
            return await asyncio.to_thread(self.archive, handle)
        except (BotoCoreError, ClientError, tarfile.TarError, OSError) as e:
            logger.warning(f"Failed to archive session for {handle.key}: {e}")
            return False

    async def try_delete(self, key: TicketKey) -> None:
        try:
            await asyncio.to_thread(self.delete, key)
        except (BotoCoreError, ClientError) as e:
            logger.warning(f"Failed to delete archived session for {key}: {e}")
