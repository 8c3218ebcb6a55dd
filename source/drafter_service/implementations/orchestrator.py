from __future__ import annotations

from dataclasses import dataclass

import settings

from drafter_manager import DrafterToolkit
from .lifecycle import LifecycleManager
from .prober import ReadinessProber
from .registry import InstanceRegistry
from .status import StatusAggregator
from .store import RedisStore
from .supervisor import ProcessSupervisor
from .watchdog import Watchdog


@dataclass
class Orchestrator:
    """Everything the API needs, wired once per process."""

    node_name: str
    registry: InstanceRegistry
    supervisor: ProcessSupervisor
    lifecycle: LifecycleManager
    status: StatusAggregator
    watchdog: Watchdog


def build_orchestrator(
    toolkit: DrafterToolkit | None = None,
    store: RedisStore | None = None,
    base_dir: str | None = None,
    node_name: str | None = None,
    monitor_interval: float | None = None,
) -> Orchestrator:
    if store is None and settings.REDIS_URL:
        store = RedisStore(settings.REDIS_URL, settings.REDIS_PREFIX)

    supervisor = ProcessSupervisor()
    registry = InstanceRegistry(
        base_dir=base_dir,
        store=store,
        on_evict=lambda record: supervisor.forget(record.handles),
        on_restore=lambda record: supervisor.adopt(record.handles),
    )
    lifecycle = LifecycleManager(
        registry,
        supervisor,
        ReadinessProber(supervisor),
        toolkit or DrafterToolkit(),
    )
    return Orchestrator(
        node_name=node_name or settings.NODE_NAME,
        registry=registry,
        supervisor=supervisor,
        lifecycle=lifecycle,
        status=StatusAggregator(registry, supervisor),
        watchdog=Watchdog(registry, lifecycle, interval=monitor_interval),
    )
