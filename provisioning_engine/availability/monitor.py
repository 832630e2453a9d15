# provisioning_engine/availability/monitor.py
"""
Availability Monitor - flips a host's online/offline flag from ping results.

Offline hosts are skipped by fan-outs and resyncs; being offline is never an
error in itself.
"""

import logging
import subprocess
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Optional
from uuid import UUID

from provisioning_engine.core.errors import NotFoundError
from provisioning_engine.core.models import Availability, Host, utcnow
from provisioning_engine.core.repository import HostRepository

logger = logging.getLogger(__name__)


Prober = Callable[[str], bool]


def ping(address: str, timeout: int = 2) -> bool:
    """Single ICMP echo. False on any failure, including a missing ping binary."""
    try:
        result = subprocess.run(
            ["ping", "-c", "1", "-W", str(timeout), address],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=timeout + 3,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"[availability] ping {address} failed: {e}")
        return False
    return result.returncode == 0


class AvailabilityMonitor:

    def __init__(
        self,
        host_repo: HostRepository,
        *,
        prober: Optional[Prober] = None,
        ping_timeout: int = 2,
        max_workers: int = 16,
    ):
        self._hosts = host_repo
        self._prober = prober or (lambda address: ping(address, ping_timeout))
        self.max_workers = max_workers

    def check(self, host_id: UUID) -> Availability:
        host = self._hosts.get(host_id)
        if host is None or host.is_deleted():
            raise NotFoundError(f"Host {host_id} not found")
        return self._check_host(host)

    def _check_host(self, host: Host) -> Availability:
        reachable = self._prober(host.address)
        availability = Availability.ONLINE if reachable else Availability.OFFLINE

        if availability != host.availability:
            self._hosts.update_availability(host.host_id, availability, utcnow())
            logger.info(
                f"[availability] Host {host.host_id} ({host.address}): "
                f"{host.availability.value} -> {availability.value}"
            )

        return availability

    def check_all(self) -> Dict[UUID, Availability]:
        """Probe every non-deleted host concurrently."""
        hosts = self._hosts.list_active()
        if not hosts:
            return {}

        results: Dict[UUID, Availability] = {}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(hosts))) as pool:
            futures = {pool.submit(self._check_host, host): host for host in hosts}
            for future, host in futures.items():
                try:
                    results[host.host_id] = future.result()
                except Exception as e:
                    logger.error(f"[availability] Check failed for host {host.host_id}: {e}")

        offline = sum(1 for a in results.values() if a == Availability.OFFLINE)
        logger.info(f"[availability] Checked {len(results)} host(s), {offline} offline")
        return results
