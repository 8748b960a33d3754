"""
Error taxonomy for the ticket worker.

Every error carries a stable code and structured details so the HTTP layer
and the failure-comment path can render it without string parsing.
"""

from typing import Any, Dict, List, Optional


class TicketWorkerError(Exception):
    """Base error with structured details."""
    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


# -----------------------------------------------------------------------------
# Workspace Errors
# -----------------------------------------------------------------------------
class WorkspaceIOError(TicketWorkerError):
    def __init__(self, key: str, operation: str, cause: Exception):
        super().__init__(
            code="WORKSPACE_IO",
            message=f"Workspace {operation} failed for '{key}': {cause}",
            details={"key": key, "operation": operation},
        )
        self.key = key
        self.operation = operation


class InvalidTicketKeyError(TicketWorkerError):
    def __init__(self, key: str):
        super().__init__(
            code="INVALID_TICKET_KEY",
            message=f"Invalid ticket key '{key}'",
            details={"key": key},
        )


class SessionNotFoundError(TicketWorkerError):
    def __init__(self, key: str):
        super().__init__(
            code="SESSION_NOT_FOUND",
            message=f"Session '{key}' not found",
            details={"key": key},
        )


class SessionBusyError(TicketWorkerError):
    def __init__(self, key: str):
        super().__init__(
            code="SESSION_BUSY",
            message=f"Session '{key}' is currently running a job",
            details={"key": key},
        )


# -----------------------------------------------------------------------------
# Process Errors
# -----------------------------------------------------------------------------
class ProcessError(TicketWorkerError):
    """Raised when a supervised CLI invocation does not succeed."""
    def __init__(self, code: str, message: str, output: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(code=code, message=message, details=details)
        self.output = output


class SpawnError(ProcessError):
    def __init__(self, command: str, cause: Exception):
        super().__init__(
            code="SPAWN_FAILED",
            message=f"Failed to spawn process '{command}': {cause}",
            details={"command": command},
        )


class ProcessExitError(ProcessError):
    def __init__(self, exit_code: Optional[int], output: str = ""):
        super().__init__(
            code="PROCESS_EXIT",
            message=f"Process exited with code {exit_code}",
            output=output,
            details={"exit_code": exit_code},
        )
        self.exit_code = exit_code


class ProcessTimeoutError(ProcessError):
    def __init__(self, timeout_seconds: float, output: str = ""):
        super().__init__(
            code="PROCESS_TIMEOUT",
            message=f"Process timed out after {timeout_seconds:g}s",
            output=output,
            details={"timeout_seconds": timeout_seconds},
        )
        self.timeout_seconds = timeout_seconds


# -----------------------------------------------------------------------------
# Maintenance / Configuration Errors
# -----------------------------------------------------------------------------
class PruneTickError(TicketWorkerError):
    """One session could not be pruned during a tick. Logged, never raised out of the tick."""
    def __init__(self, key: str, cause: Exception):
        super().__init__(
            code="PRUNE_FAILED",
            message=f"Failed to prune session '{key}': {cause}",
            details={"key": key},
        )
        self.key = key


class ConfigValidationError(TicketWorkerError):
    def __init__(self, errors: List[str]):
        super().__init__(
            code="CONFIG_INVALID",
            message="Configuration validation failed",
            details={"errors": errors},
        )
        self.errors = errors


class SecretsError(TicketWorkerError):
    def __init__(self, message: str):
        super().__init__(code="SECRETS_UNAVAILABLE", message=message)


class SessionArchiveError(TicketWorkerError):
    """An archived session could not be stored or unpacked."""
    def __init__(self, key: str, operation: str, message: str):
        super().__init__(
            code="SESSION_ARCHIVE",
            message=f"Session archive {operation} failed for '{key}': {message}",
            details={"key": key, "operation": operation},
        )
        self.key = key
        self.operation = operation
