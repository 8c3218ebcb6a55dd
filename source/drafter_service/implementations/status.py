from __future__ import annotations

from models import (
    HandleView,
    SubsystemOut,
    SubsystemStatus,
    SubsystemTag,
    VMStatusOut,
)
from .registry import InstanceRegistry
from .supervisor import ProcessSupervisor


class StatusAggregator:
    """Point-in-time liveness per VM. Never waits on anything but `poll`."""

    def __init__(self, registry: InstanceRegistry, supervisor: ProcessSupervisor):
        self.registry = registry
        self.supervisor = supervisor

    @staticmethod
    def healthy(view: HandleView) -> bool:
        # The snapshotter is one-shot: healthy means the package was produced
        if view.tag == SubsystemTag.snapshotter:
            return view.status == SubsystemStatus.exited and view.exit_code == 0
        return view.status in (SubsystemStatus.ready, SubsystemStatus.running)

    def status(self, name: str) -> VMStatusOut:
        record = self.registry.get(name)
        with record.lock:
            handles = list(record.handles)
        for h in handles:
            self.supervisor.poll(h)
        snap = record.snapshot()

        subsystems = {tag.value: False for tag in SubsystemTag}
        details: list[SubsystemOut] = []
        for tag in SubsystemTag:
            view = snap.latest(tag)
            if view is None:
                continue
            ok = self.healthy(view)
            subsystems[tag.value] = ok
            details.append(SubsystemOut.from_view(view, ok))

        return VMStatusOut(
            name=snap.name,
            state=snap.state,
            subsystems=subsystems,
            details=details,
            last_error=snap.last_error,
        )
