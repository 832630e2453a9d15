# provisioning_engine/jobs/models.py

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from provisioning_engine.core.models import utcnow


# Queue names
DOMAIN_INITIALIZE = "domain.initialize"
DOMAIN_INITIALIZE_SSL = "domain.initialize_ssl"
HOST_INITIALIZE = "host.initialize"


class JobState(Enum):
    WAITING = "WAITING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class Job:
    """A durable unit of background work. Payload carries the entity id."""
    job_id: UUID
    queue: str
    payload: Dict[str, Any]

    state: JobState = JobState.WAITING
    attempts_made: int = 0
    max_attempts: int = 3

    available_at: datetime = field(default_factory=utcnow)
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    failed_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @classmethod
    def new(cls, queue: str, payload: Dict[str, Any], *, max_attempts: int = 3) -> "Job":
        return cls(job_id=uuid4(), queue=queue, payload=dict(payload), max_attempts=max_attempts)

    @property
    def entity_id(self) -> Optional[UUID]:
        value = self.payload.get("id")
        return UUID(str(value)) if value else None

    def has_attempts_left(self) -> bool:
        return self.attempts_made < self.max_attempts

    def is_lease_expired(self, now: Optional[datetime] = None) -> bool:
        if self.lease_expires_at is None:
            return True
        return (now or utcnow()) >= self.lease_expires_at


def backoff_delay(base_seconds: int, attempt: int) -> timedelta:
    """Delay before the retry following attempt number ``attempt`` (1-based)."""
    return timedelta(seconds=base_seconds * (3 ** (max(attempt, 1) - 1)))


def mark_lease_exhausted(job, now: datetime) -> None:
    """Settle a job whose last attempt lost its lease. Works on ``Job`` and its ORM row."""
    job.state = JobState.FAILED
    job.failed_reason = f"Lease expired on final attempt ({job.attempts_made}/{job.max_attempts})"
    job.finished_at = now
    job.lease_owner = None
    job.lease_expires_at = None
