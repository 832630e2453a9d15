# provisioning_engine/jobs/queue.py
"""Durable named job queues."""

import logging
from typing import Any, Dict, Optional
from uuid import UUID

from provisioning_engine.core.repository import JobRepository
from provisioning_engine.jobs.models import Job

logger = logging.getLogger(__name__)


class JobQueue:
    """Producer side of the job queues."""

    def __init__(self, repository: JobRepository, *, max_attempts: int = 3):
        self._repo = repository
        self.max_attempts = max_attempts

    def add(self, queue: str, payload: Dict[str, Any], *, max_attempts: Optional[int] = None) -> Job:
        job = Job.new(queue, payload, max_attempts=max_attempts or self.max_attempts)
        self._repo.add(job)
        logger.info(f"[queue {queue}] Enqueued job {job.job_id} payload={payload}")
        return job

    def add_for_entity(self, queue: str, entity_id: UUID, *, max_attempts: Optional[int] = None) -> Job:
        return self.add(queue, {"id": str(entity_id)}, max_attempts=max_attempts)

    def get(self, job_id: UUID) -> Optional[Job]:
        return self._repo.get(job_id)
