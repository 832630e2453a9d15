# provisioning_engine/scheduler/scheduler.py
"""
Fleet Scheduler - periodic maintenance of the fleet.

Runs as a separate process. Each task has its own interval:
- availability sweep (ping every non-deleted host)
- domain resync for online, successfully initialized hosts
- application directive sync
- failing hosts stuck in INITIALIZING
"""

import logging
import signal
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from provisioning_engine.availability.monitor import AvailabilityMonitor
from provisioning_engine.core.models import HostStatus
from provisioning_engine.core.repository import HostRepository
from provisioning_engine.distribution.applications import ApplicationService
from provisioning_engine.distribution.engine import DistributionEngine
from provisioning_engine.host_manager.service import HostService

logger = logging.getLogger(__name__)


@dataclass
class ScheduledTask:
    name: str
    interval: float
    action: Callable[[], object]
    last_run: Optional[float] = None

    def is_due(self, now: float) -> bool:
        return self.last_run is None or now - self.last_run >= self.interval


class FleetScheduler:

    def __init__(
        self,
        *,
        host_repo: HostRepository,
        host_service: HostService,
        monitor: AvailabilityMonitor,
        distribution: DistributionEngine,
        applications: ApplicationService,
        availability_interval: float = 60,
        resync_interval: float = 300,
        directives_interval: float = 600,
        stuck_interval: float = 60,
        tick: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._hosts = host_repo
        self._host_service = host_service
        self._monitor = monitor
        self._distribution = distribution
        self._applications = applications
        self.tick = tick
        self._clock = clock
        self._stop_requested = False

        self.tasks: List[ScheduledTask] = [
            ScheduledTask("availability", availability_interval, self._monitor.check_all),
            ScheduledTask("stuck_initializations", stuck_interval, self._host_service.expire_stale_initializations),
            ScheduledTask("domain_resync", resync_interval, self.resync_hosts),
            ScheduledTask("application_directives", directives_interval, self._applications.sync_all_application_directives),
        ]

    def start(self):
        """Run until SIGINT/SIGTERM."""
        logger.info("=" * 80)
        logger.info("🚀 FLEET SCHEDULER STARTED")
        logger.info("=" * 80)
        for task in self.tasks:
            logger.info(f"{task.name}: every {task.interval}s")
        logger.info("=" * 80)

        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        while not self._stop_requested:
            self.run_once()
            if not self._stop_requested:
                time.sleep(self.tick)

        logger.info("Fleet Scheduler stopped")

    def stop(self):
        self._stop_requested = True

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, stopping...")
        self._stop_requested = True

    def run_once(self) -> Dict[str, object]:
        """Run every task that is due. Returns results keyed by task name."""
        now = self._clock()
        results = {}
        for task in self.tasks:
            if not task.is_due(now):
                continue
            task.last_run = now
            try:
                results[task.name] = task.action()
            except Exception as e:
                logger.error(f"[scheduler] Task {task.name} failed: {e}", exc_info=True)
        return results

    def resync_hosts(self) -> int:
        """Staleness-gated resync of every online, successfully initialized host."""
        pushed = 0
        for host in self._hosts.list_active():
            if host.status != HostStatus.SUCCESSFUL_INITIALIZATION or not host.is_online():
                continue
            try:
                pushed += self._distribution.resync(host.host_id)
            except Exception as e:
                logger.error(f"[scheduler] Resync failed for host {host.host_id}: {e}")
        if pushed:
            logger.info(f"[scheduler] Resynced {pushed} domain push(es)")
        return pushed
