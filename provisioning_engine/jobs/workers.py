# provisioning_engine/jobs/workers.py
"""Queue workers for domain initialization, SSL initialization and host initialization."""

import logging
from typing import List

from provisioning_engine.core.models import Module
from provisioning_engine.core.repository import JobRepository
from provisioning_engine.domains.service import DomainService
from provisioning_engine.errorlog.service import ErrorLogService
from provisioning_engine.host_manager.service import HostService
from provisioning_engine.jobs.models import DOMAIN_INITIALIZE, DOMAIN_INITIALIZE_SSL, HOST_INITIALIZE, Job
from provisioning_engine.jobs.queue import JobQueue
from provisioning_engine.jobs.worker import QueueWorker

logger = logging.getLogger(__name__)

FAILED = "FAILED"


def _log_job_failure(error_log: ErrorLogService, module: Module, event: str):
    def listener(job: Job, error: Exception) -> None:
        logger.warning(f"[queue {event}] Job {job.job_id} for {job.entity_id} failed: {job.failed_reason}")
        error_log.log_error(error, job.entity_id, FAILED, module, event)
    return listener


def build_domain_workers(
    *,
    domain_service: DomainService,
    queue: JobQueue,
    repository: JobRepository,
    error_log: ErrorLogService,
    concurrency: int = 2,
    **worker_options,
) -> List[QueueWorker]:
    """
    Domain initialization chains into SSL initialization on completion.
    SSL initialization is terminal.
    """
    domain_worker = QueueWorker(
        queue=DOMAIN_INITIALIZE,
        handler=lambda job: domain_service.begin_initialization(job.entity_id),
        repository=repository,
        concurrency=concurrency,
        **worker_options,
    )
    domain_worker.on_failed(_log_job_failure(error_log, Module.DOMAIN, DOMAIN_INITIALIZE))
    domain_worker.on_completed(
        lambda job, result: queue.add_for_entity(DOMAIN_INITIALIZE_SSL, job.entity_id)
    )

    ssl_worker = QueueWorker(
        queue=DOMAIN_INITIALIZE_SSL,
        handler=lambda job: domain_service.initialize_ssl(job.entity_id),
        repository=repository,
        concurrency=concurrency,
        **worker_options,
    )
    ssl_worker.on_failed(_log_job_failure(error_log, Module.DOMAIN, DOMAIN_INITIALIZE_SSL))

    return [domain_worker, ssl_worker]


def build_host_worker(
    *,
    host_service: HostService,
    repository: JobRepository,
    concurrency: int = 2,
    **worker_options,
) -> QueueWorker:
    # run_initialization records its own failure on the host and in the error log.
    return QueueWorker(
        queue=HOST_INITIALIZE,
        handler=lambda job: host_service.run_initialization(job.entity_id),
        repository=repository,
        concurrency=concurrency,
        **worker_options,
    )
