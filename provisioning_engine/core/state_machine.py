# provisioning_engine/core/state_machine.py

from datetime import datetime
from typing import Optional

from provisioning_engine.core.errors import InvalidStateError
from provisioning_engine.core.models import Host, HostStatus, utcnow


ALLOWED_TRANSITIONS = {
    HostStatus.PENDING_INITIALIZATION: {
        HostStatus.INITIALIZING,
    },
    HostStatus.INITIALIZING: {
        HostStatus.SUCCESSFUL_INITIALIZATION,
        HostStatus.FAILED_INITIALIZATION,
    },
    HostStatus.SUCCESSFUL_INITIALIZATION: {
        HostStatus.INITIALIZING,
    },
    HostStatus.FAILED_INITIALIZATION: {
        HostStatus.INITIALIZING,
        HostStatus.PENDING_INITIALIZATION,
    },
}


class HostStateMachine:
    """Pure transition rules. Repositories apply them under a row lock."""

    @staticmethod
    def can_transition(current: HostStatus, new_status: HostStatus) -> bool:
        return new_status in ALLOWED_TRANSITIONS.get(current, set())

    @staticmethod
    def transition(
        host: Host,
        new_status: HostStatus,
        *,
        now: Optional[datetime] = None,
    ) -> Host:
        now = now or utcnow()
        current = host.status

        if not HostStateMachine.can_transition(current, new_status):
            raise InvalidStateError(
                f"Host {host.host_id}: cannot transition from {current.value} to {new_status.value}"
            )

        if new_status == HostStatus.INITIALIZING:
            host.initialization_started_at = now
            host.last_error = None

        elif new_status == HostStatus.PENDING_INITIALIZATION:
            host.initialization_started_at = None

        host.status = new_status
        host.updated_at = now
        return host
