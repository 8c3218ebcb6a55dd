from .vms import (
    VMState,
    SubsystemTag,
    SubsystemStatus,
    VMCreate,
    VMOut,
    SubsystemOut,
    VMStatusOut,
    MigrateOut,
    parse_size_mib,
)

from .instances import (
    SubsystemHandle,
    HandleView,
    InstanceRecord,
    InstanceSnapshot,
)

from .metrics import SubsystemMetrics, InstanceMetrics


__all__ = [
    "VMState",
    "SubsystemTag",
    "SubsystemStatus",
    "VMCreate",
    "VMOut",
    "SubsystemOut",
    "VMStatusOut",
    "MigrateOut",
    "parse_size_mib",
    "SubsystemHandle",
    "HandleView",
    "InstanceRecord",
    "InstanceSnapshot",
    "SubsystemMetrics",
    "InstanceMetrics",
]
