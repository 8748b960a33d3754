"""
Worker Configuration

Two layers:
- Settings: process-level values read once from the environment at startup
  (directories, CLI command, timeouts). Immutable for the process lifetime.
- AppConfig: runtime-tunable values (soft session cap, prune schedule, model,
  bot name) persisted to a YAML file and changed only through ConfigStore.

Components receive the ConfigStore and read AppConfig at decision time, so a
dashboard update takes effect on the next eviction or prune without restart.
"""

import logging
import os
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigValidationError

logger = logging.getLogger("config")

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
DEFAULT_BOT_NAME = "mapthew"
BOT_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]*$")
BOT_NAME_MAX_LENGTH = 32

CLAUDE_MODELS = (
    "claude-sonnet-4-5",
    "claude-haiku-4-5",
    "claude-opus-4-5",
    "claude-opus-4-6",
)
DEFAULT_CLAUDE_MODEL = "claude-sonnet-4-5"

DEFAULT_MAX_SESSIONS = 20
DEFAULT_PRUNE_THRESHOLD_DAYS = 7
DEFAULT_PRUNE_INTERVAL_DAYS = 1

DEFAULT_TIMEOUT_MS = 30 * 60 * 1000  # 30 minutes
DEFAULT_KILL_GRACE_MS = 10 * 1000


def is_valid_bot_name(name: str) -> bool:
    """Bot names end up in file names and queue names: lowercase, dashes, underscores."""
    return bool(BOT_NAME_PATTERN.match(name)) and len(name) <= BOT_NAME_MAX_LENGTH


def _positive_ms_from_env(var: str, default: int) -> int:
    raw = os.getenv(var, "")
    if raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Invalid {var}={raw!r} (not a number), using default {default}ms")
        return default
    if value <= 0:
        logger.warning(f"Invalid {var}={raw!r} (must be positive), using default {default}ms")
        return default
    return value


# -----------------------------------------------------------------------------
# Process Settings
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Settings:
    """Process-level settings. Built once by the entry point."""
    workspaces_dir: Path
    claude_home: Path
    config_file: Path
    bot_name: str = DEFAULT_BOT_NAME
    claude_command: str = "claude"
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    kill_grace_ms: int = DEFAULT_KILL_GRACE_MS

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    @property
    def kill_grace_seconds(self) -> float:
        return self.kill_grace_ms / 1000

    @classmethod
    def from_env(cls) -> "Settings":
        bot_name = os.getenv("BOT_NAME", DEFAULT_BOT_NAME)
        if not is_valid_bot_name(bot_name):
            logger.warning(
                f'Invalid BOT_NAME "{bot_name}" - must be lowercase alphanumeric with '
                f'dashes/underscores (max {BOT_NAME_MAX_LENGTH} chars). Using "{DEFAULT_BOT_NAME}".'
            )
            bot_name = DEFAULT_BOT_NAME

        workspaces_dir = Path(os.getenv("WORKSPACES_DIR") or f"/tmp/{bot_name}-workspaces")
        home = Path(os.getenv("HOME", "/home/worker"))
        claude_home = Path(os.getenv("CLAUDE_HOME") or home / ".claude")
        config_file = Path(os.getenv("CONFIG_FILE") or workspaces_dir.parent / f"{bot_name}-config.yaml")

        return cls(
            workspaces_dir=workspaces_dir,
            claude_home=claude_home,
            config_file=config_file,
            bot_name=bot_name,
            claude_command=os.getenv("CLAUDE_COMMAND", "claude"),
            timeout_ms=_positive_ms_from_env("CLAUDE_TIMEOUT_MS", DEFAULT_TIMEOUT_MS),
            kill_grace_ms=_positive_ms_from_env("CLAUDE_KILL_GRACE_MS", DEFAULT_KILL_GRACE_MS),
        )


# -----------------------------------------------------------------------------
# Runtime Configuration
# -----------------------------------------------------------------------------
class AppConfig(BaseModel):
    """Runtime configuration editable from the dashboard."""
    bot_name: str = Field(default=DEFAULT_BOT_NAME, description="Trigger name used in comments")
    claude_model: str = Field(default=DEFAULT_CLAUDE_MODEL, description="Model passed to the CLI")
    max_sessions: int = Field(default=DEFAULT_MAX_SESSIONS, ge=1, le=100, description="Soft session cap")
    prune_threshold_days: int = Field(
        default=DEFAULT_PRUNE_THRESHOLD_DAYS, ge=1, le=365,
        description="Sessions inactive longer than this are pruned",
    )
    prune_interval_days: int = Field(
        default=DEFAULT_PRUNE_INTERVAL_DAYS, ge=1, le=365,
        description="How often the prune tick runs",
    )

    model_config = {"frozen": True, "extra": "ignore"}

    @field_validator("bot_name")
    @classmethod
    def _check_bot_name(cls, value: str) -> str:
        if not is_valid_bot_name(value):
            raise ValueError(
                "must be lowercase alphanumeric with dashes/underscores, "
                f"starting with alphanumeric (max {BOT_NAME_MAX_LENGTH} chars)"
            )
        return value

    @field_validator("claude_model")
    @classmethod
    def _check_model(cls, value: str) -> str:
        if value not in CLAUDE_MODELS:
            raise ValueError(f"must be one of: {', '.join(CLAUDE_MODELS)}")
        return value


def _validation_messages(exc: ValidationError) -> list:
    return [
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
        for err in exc.errors()
    ]


class ConfigStore:
    """
    Get/set collaborator for AppConfig, backed by a YAML file.

    Reads are served from memory. update() validates, persists and swaps the
    in-memory copy; reload() re-reads the file (e.g. after an external edit).
    A missing file yields defaults.
    """

    def __init__(self, config_file: Optional[Path] = None, initial: Optional[AppConfig] = None):
        self._config_file = config_file
        self._lock = threading.Lock()
        self._config = initial or AppConfig()
        if initial is None and config_file is not None:
            self._config = self._load()

    @property
    def config_file(self) -> Optional[Path]:
        return self._config_file

    def get(self) -> AppConfig:
        return self._config

    def update(self, **changes: Any) -> AppConfig:
        """Apply partial changes. Raises ConfigValidationError and leaves config untouched on failure."""
        with self._lock:
            merged = {**self._config.model_dump(), **{k: v for k, v in changes.items() if v is not None}}
            try:
                updated = AppConfig.model_validate(merged)
            except ValidationError as e:
                raise ConfigValidationError(_validation_messages(e)) from e

            if updated.bot_name != self._config.bot_name:
                logger.info(f'Bot name updated: "{self._config.bot_name}" -> "{updated.bot_name}"')

            self._save(updated)
            self._config = updated
            logger.info(
                f"Config updated: max_sessions={updated.max_sessions}, "
                f"prune_threshold_days={updated.prune_threshold_days}, "
                f"prune_interval_days={updated.prune_interval_days}, "
                f"claude_model={updated.claude_model}"
            )
            return updated

    def reload(self) -> AppConfig:
        with self._lock:
            self._config = self._load()
            return self._config

    def _load(self) -> AppConfig:
        if self._config_file is None or not self._config_file.exists():
            return AppConfig()
        try:
            data: Dict[str, Any] = yaml.safe_load(self._config_file.read_text()) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to read config file {self._config_file}: {e}")
            return self._config
        try:
            return AppConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigValidationError(_validation_messages(e)) from e

    def _save(self, config: AppConfig) -> None:
        if self._config_file is None:
            return
        self._config_file.parent.mkdir(parents=True, exist_ok=True)
        self._config_file.write_text(yaml.safe_dump(config.model_dump(), sort_keys=True))
