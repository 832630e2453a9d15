# provisioning_engine/jobs/worker.py
"""Queue worker - claims jobs of one queue and runs them with bounded concurrency."""

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID, uuid4

from provisioning_engine.core.errors import JobLeaseError
from provisioning_engine.core.models import utcnow
from provisioning_engine.core.repository import JobRepository
from provisioning_engine.jobs.models import Job, backoff_delay
from provisioning_engine.jobs.slots import SlotManager

logger = logging.getLogger(__name__)


Handler = Callable[[Job], Any]
CompletedListener = Callable[[Job, Any], None]
FailedListener = Callable[[Job, Exception], None]


class QueueWorker:
    """
    Worker for a single named queue.

    Failed attempts go back to WAITING with exponential backoff until
    ``max_attempts`` is reached. ``failed`` listeners fire on every failed
    attempt, ``completed`` listeners once per successful job.

    The lease is renewed every ``heartbeat_interval`` seconds while the
    handler runs, so a long job is never reclaimed by another worker.
    """

    def __init__(
        self,
        *,
        queue: str,
        handler: Handler,
        repository: JobRepository,
        concurrency: int = 2,
        poll_interval: float = 2.0,
        lease_seconds: int = 900,
        backoff_base: int = 10,
        heartbeat_interval: Optional[float] = None,
        worker_id: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.queue = queue
        self.worker_id = worker_id or f"{queue}-{uuid4().hex[:8]}"
        self.poll_interval = poll_interval
        self.lease_seconds = lease_seconds
        self.backoff_base = backoff_base
        self.heartbeat_interval = heartbeat_interval or lease_seconds / 3

        self._handler = handler
        self._repo = repository
        self._clock = clock

        self.slots = SlotManager(concurrency)
        self._completed_listeners: List[CompletedListener] = []
        self._failed_listeners: List[FailedListener] = []

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._running: Dict[UUID, threading.Thread] = {}

    # ============================================
    # SUBSCRIPTIONS
    # ============================================

    def on_completed(self, listener: CompletedListener) -> None:
        self._completed_listeners.append(listener)

    def on_failed(self, listener: FailedListener) -> None:
        self._failed_listeners.append(listener)

    # ============================================
    # LIFECYCLE
    # ============================================

    def start(self) -> None:
        logger.info(f"[queue {self.queue}] 🚀 Starting worker {self.worker_id}")
        logger.info(f"[queue {self.queue}] Concurrency: {self.slots.total_slots()}")
        logger.info(f"[queue {self.queue}] Poll interval: {self.poll_interval}s")

        self._thread = threading.Thread(target=self._run_loop, daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        logger.info(f"[queue {self.queue}] Stopping worker {self.worker_id}")
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout)
        for thread in list(self._running.values()):
            thread.join(timeout)

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                while self.slots.has_free_slot() and self._dispatch_next():
                    pass
            except Exception as e:
                logger.error(f"[queue {self.queue}] Error in main loop: {e}", exc_info=True)

            self._stop_event.wait(self.poll_interval)

    def _dispatch_next(self) -> bool:
        job = self._claim()
        if job is None:
            return False

        thread = threading.Thread(target=self._execute, args=(job,), daemon=True)
        self._running[job.job_id] = thread
        thread.start()
        return True

    # ============================================
    # EXECUTION
    # ============================================

    def _claim(self) -> Optional[Job]:
        if not self.slots.has_free_slot():
            return None

        job = self._repo.claim_next(self.queue, self.worker_id, self.lease_seconds, self._clock())
        if job is None:
            return None

        self.slots.acquire(job.job_id)
        logger.info(f"[queue {self.queue}] Claimed job {job.job_id} (attempt {job.attempts_made}/{job.max_attempts})")
        return job

    def process_next(self) -> Optional[Job]:
        """Claim and run one job in the calling thread. Returns the job, or None if idle."""
        job = self._claim()
        if job is None:
            return None
        self._execute(job)
        return self._repo.get(job.job_id)

    def _execute(self, job: Job) -> None:
        try:
            result = self._run_handler(job)
        except Exception as e:
            self._handle_failure(job, e)
        else:
            try:
                self._repo.complete(job.job_id, self.worker_id, self._clock())
            except JobLeaseError as e:
                logger.warning(f"[queue {self.queue}] Result of job {job.job_id} discarded: {e}")
                return
            logger.info(f"[queue {self.queue}] ✅ Job {job.job_id} completed")
            self._emit(self._completed_listeners, job, result)
        finally:
            self.slots.release(job.job_id)
            self._running.pop(job.job_id, None)

    def _run_handler(self, job: Job) -> Any:
        heartbeat = LeaseHeartbeat(
            repository=self._repo,
            job_id=job.job_id,
            worker_id=self.worker_id,
            lease_seconds=self.lease_seconds,
            interval=self.heartbeat_interval,
            clock=self._clock,
        )
        heartbeat.start()
        try:
            return self._handler(job)
        finally:
            heartbeat.stop()

    def _handle_failure(self, job: Job, error: Exception) -> None:
        now = self._clock()
        reason = str(error) or type(error).__name__

        retry_at = None
        if job.has_attempts_left():
            retry_at = now + backoff_delay(self.backoff_base, job.attempts_made)

        logger.error(
            f"[queue {self.queue}] ❌ Job {job.job_id} failed "
            f"(attempt {job.attempts_made}/{job.max_attempts}): {reason}"
        )

        try:
            self._repo.fail(job.job_id, self.worker_id, reason, retry_at=retry_at, now=now)
        except JobLeaseError as e:
            logger.warning(f"[queue {self.queue}] Failure of job {job.job_id} discarded: {e}")
            return
        except Exception as e:
            logger.error(f"[queue {self.queue}] Failed to mark job {job.job_id} as failed: {e}")

        job.failed_reason = reason
        self._emit(self._failed_listeners, job, error)

    def _emit(self, listeners, job: Job, value) -> None:
        for listener in listeners:
            try:
                listener(job, value)
            except Exception as e:
                logger.error(f"[queue {self.queue}] Listener error for job {job.job_id}: {e}", exc_info=True)


class LeaseHeartbeat:
    """Keeps a claimed job's lease alive while its handler runs."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        job_id: UUID,
        worker_id: str,
        lease_seconds: int,
        interval: float,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.job_id = job_id
        self.worker_id = worker_id
        self.lease_seconds = lease_seconds
        self.interval = interval

        self._repo = repository
        self._clock = clock
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join()

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self._repo.renew_lease(self.job_id, self.worker_id, self.lease_seconds, self._clock())
            except JobLeaseError as e:
                logger.warning(f"[heartbeat] Lease on job {self.job_id} lost: {e}")
                return
            except Exception as e:
                logger.error(f"[heartbeat] Failed to renew lease on job {self.job_id}: {e}")
