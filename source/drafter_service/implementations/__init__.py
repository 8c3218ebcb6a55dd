from .supervisor import ProcessSupervisor
from .prober import ReadinessProber, ReadinessOutcome
from .registry import InstanceRegistry
from .store import RedisStore
from .lifecycle import LifecycleManager
from .status import StatusAggregator
from .watchdog import Watchdog
from .orchestrator import Orchestrator, build_orchestrator

__all__ = [
    "ProcessSupervisor",
    "ReadinessProber",
    "ReadinessOutcome",
    "InstanceRegistry",
    "RedisStore",
    "LifecycleManager",
    "StatusAggregator",
    "Watchdog",
    "Orchestrator",
    "build_orchestrator",
]
