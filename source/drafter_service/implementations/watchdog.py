from __future__ import annotations

import logging
import threading

import settings

from errors import NotFound
from models import VMState
from .lifecycle import LifecycleManager
from .registry import InstanceRegistry

logger = logging.getLogger(__name__)


class Watchdog:
    """Background sweep that notices long-lived subsystems dying after readiness."""

    def __init__(
        self,
        registry: InstanceRegistry,
        lifecycle: LifecycleManager,
        interval: float | None = None,
    ) -> None:
        self.registry = registry
        self.lifecycle = lifecycle
        self.interval = settings.MONITOR_INTERVAL_S if interval is None else interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def sweep(self) -> int:
        failed = 0
        for snap in self.registry.list():
            if snap.state not in (VMState.ready, VMState.running):
                continue
            try:
                if self.lifecycle.reconcile(snap.name) is not None:
                    failed += 1
            except NotFound:
                continue
        return failed

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.sweep()
            except Exception:  # pylint: disable=broad-except
                logger.exception("Watchdog sweep failed")

    def start(self) -> None:
        if self.interval <= 0 or self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="watchdog", daemon=True)
        self._thread.start()
        logger.info("Watchdog started (every %.1fs)", self.interval)

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval + 1)
            self._thread = None
