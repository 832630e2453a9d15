# provisioning_engine/core/errors.py

from typing import Optional
from uuid import UUID


# -----------------------------
# Base Errors
# -----------------------------

class ProvisioningError(Exception):
    """Base class for all provisioning engine errors."""
    pass


# -----------------------------
# Caller Errors (surfaced verbatim)
# -----------------------------

class ValidationError(ProvisioningError):
    """Missing or invalid input."""

    def __init__(self, message: str, missing_params: Optional[list] = None):
        super().__init__(message)
        self.missing_params = missing_params or []


class ConflictError(ProvisioningError):
    """Duplicate host address, domain name or deployment group name."""
    pass


class NotFoundError(ProvisioningError):
    """Expected record does not exist."""
    pass


class InvalidStateError(ProvisioningError):
    """Illegal state transition attempted."""
    pass


# -----------------------------
# Remote Errors
# -----------------------------

class RemoteExecutionError(ProvisioningError):
    """Non-zero exit or transport failure during a pipeline step."""

    def __init__(
        self,
        message: str,
        *,
        host_id: Optional[UUID] = None,
        command: Optional[str] = None,
        exit_code: Optional[int] = None,
        stderr: Optional[str] = None,
    ):
        super().__init__(message)
        self.host_id = host_id
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class RemoteConnectionError(RemoteExecutionError):
    pass


class CommandTimeoutError(RemoteExecutionError):
    pass


class PipelineDeadlineExceeded(RemoteExecutionError):
    pass


class UnsupportedOperatingSystem(RemoteExecutionError):
    pass


# -----------------------------
# Integrity / Persistence Errors
# -----------------------------

class DataIntegrityError(ProvisioningError):
    """Decryption failure or missing expected record. Never recovered with a fallback."""
    pass


class PersistenceError(ProvisioningError):
    pass


class CertificateIssueError(ProvisioningError):
    """The ACME client did not produce a certificate."""
    pass


class JobLeaseError(ProvisioningError):
    """Job is no longer ACTIVE under the caller's lease."""
    pass


class PartialFleetFailure:
    """One host failed during a fan-out. Recorded, never raised to the caller."""

    def __init__(self, host_id: UUID, entity_id: UUID, event: str, error: Exception):
        self.host_id = host_id
        self.entity_id = entity_id
        self.event = event
        self.error = error

    def as_dict(self) -> dict:
        return {
            "message": f"Failed on host {self.host_id}",
            "host_id": str(self.host_id),
            "raw_error": str(self.error),
            "error_type": type(self.error).__name__,
        }

    def __repr__(self) -> str:
        return f"<PartialFleetFailure(host={self.host_id}, event={self.event}, error={self.error!r})>"
