# provisioning_engine/errorlog/service.py
"""Error log sink."""

import logging
from typing import Any, Dict, Optional
from uuid import UUID

from provisioning_engine.core.errors import PartialFleetFailure, RemoteExecutionError
from provisioning_engine.core.models import Module
from provisioning_engine.core.repository import ErrorLogRepository
from provisioning_engine.errorlog.models import ErrorLogEntry

logger = logging.getLogger(__name__)


def describe_error(error: Any) -> Dict[str, Any]:
    """Flatten an exception (or a recorded partial failure) into log details."""
    if isinstance(error, PartialFleetFailure):
        details = describe_error(error.error)
        details.update(error.as_dict())
        return details

    details: Dict[str, Any] = {"message": str(error), "error_type": type(error).__name__}
    if isinstance(error, RemoteExecutionError):
        details.update({
            "host_id": str(error.host_id) if error.host_id else None,
            "command": error.command,
            "exit_code": error.exit_code,
            "stderr": (error.stderr or "")[:2000] or None,
        })
    return details


class ErrorLogService:
    """
    Persists structured failure records.

    ``log_error`` never raises: a failing sink is reported on the process
    logger and otherwise ignored.
    """

    def __init__(self, repository: ErrorLogRepository):
        self._repo = repository

    def log_error(
        self,
        error: Any,
        entity_id: Optional[UUID],
        status: str,
        module: Module,
        event: str,
    ) -> Optional[ErrorLogEntry]:
        try:
            details = describe_error(error)
            entry = ErrorLogEntry.new(
                entity_id=entity_id,
                module=module,
                event=event,
                status=status,
                message=details.get("message") or str(error),
                error_type=details.get("error_type") or type(error).__name__,
                details=details,
            )
            self._repo.add(entry)
            logger.warning(f"[error_log] {module.value}/{event} entity={entity_id}: {entry.message}")
            return entry
        except Exception as e:
            logger.error(f"[error_log] Failed to record {event} for {entity_id}: {e}", exc_info=True)
            return None

    def list_for_entity(self, entity_id: UUID):
        return self._repo.list_for_entity(entity_id)
