"""Background workers for the periodic maintenance of the cloud.

Each worker is a daemon thread that runs one cloud operation at a fixed
interval until stopped.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

from ..provisioning.cloud import MansionCloud

log = logging.getLogger(__name__)


class PeriodicWorker(threading.Thread):
    """Runs ``task`` every ``interval`` seconds; failures are logged and survived."""

    daemon = True

    def __init__(self, name: str, task: Callable[[], Any], interval_seconds: float,
                 run_immediately: bool = False):
        super().__init__(name=name)
        self.task = task
        self.interval = interval_seconds
        self.run_immediately = run_immediately
        self.last_run_ts: Optional[float] = None
        self.last_error: Optional[str] = None
        self.consecutive_failures = 0
        self._stop_event = threading.Event()

    def run(self) -> None:
        log.info("[%s] Starting (interval=%ss)", self.name, self.interval)
        if self.run_immediately:
            self.run_once()
        while not self._stop_event.wait(self.interval):
            self.run_once()
        log.info("[%s] Stopped", self.name)

    def run_once(self) -> None:
        try:
            self.task()
            self.consecutive_failures = 0
            self.last_error = None
        except Exception as exc:
            self.consecutive_failures += 1
            self.last_error = str(exc)
            log.exception("[%s] Run failed (failure %d)", self.name, self.consecutive_failures)
        finally:
            self.last_run_ts = time.time()

    def stop(self) -> None:
        self._stop_event.set()


class LeaseRenewalWorker(PeriodicWorker):
    """Keeps broker leases of live VMs from expiring."""

    def __init__(self, cloud: MansionCloud, interval_seconds: float = 30):
        super().__init__("lease-renewal", cloud.renew_leases, interval_seconds)


class RetentionWorker(PeriodicWorker):
    """Sweeps live nodes for idleness and failed first connections."""

    def __init__(self, cloud: MansionCloud, interval_seconds: float = 60):
        super().__init__("retention", cloud.check_retention, interval_seconds)


class QuotaCleanupWorker(PeriodicWorker):
    """Forgets too-many-VMs problems so provisioning is retried."""

    def __init__(self, cloud: MansionCloud, interval_seconds: float = 5 * 60):
        super().__init__("quota-cleanup", cloud.clear_too_many_vms_problems, interval_seconds)


class WorkerManager:
    """Manages the background workers of one cloud."""

    def __init__(self):
        self._workers: Dict[str, PeriodicWorker] = {}

    def register(self, worker: PeriodicWorker) -> PeriodicWorker:
        self._workers[worker.name] = worker
        return worker

    def start_all(self) -> None:
        """Start all registered workers."""
        for name, worker in self._workers.items():
            if not worker.is_alive():
                log.info("[worker-manager] Starting %s worker", name)
                worker.start()

    def stop_all(self, timeout: float = 5.0) -> None:
        """Stop all workers."""
        for worker in self._workers.values():
            worker.stop()
        for worker in self._workers.values():
            if worker.is_alive():
                worker.join(timeout=timeout)

    def get(self, name: str) -> Optional[PeriodicWorker]:
        return self._workers.get(name)

    def get_all_status(self) -> Dict[str, Any]:
        """Get status for all workers."""
        return {
            name: {
                "alive": worker.is_alive(),
                "interval": worker.interval,
                "last_run": worker.last_run_ts,
                "last_error": worker.last_error,
            }
            for name, worker in self._workers.items()
        }


def create_workers(cloud: MansionCloud, renewal_interval: float = 30,
                   retention_interval: float = 60,
                   quota_cleanup_interval: float = 5 * 60) -> WorkerManager:
    """The standard set of maintenance workers for ``cloud``."""
    manager = WorkerManager()
    manager.register(LeaseRenewalWorker(cloud, renewal_interval))
    manager.register(RetentionWorker(cloud, retention_interval))
    manager.register(QuotaCleanupWorker(cloud, quota_cleanup_interval))
    return manager
