from __future__ import annotations
import threading
import time
from dataclasses import dataclass, field
from typing import Any

from .vms import SubsystemStatus, SubsystemTag, VMCreate, VMState


@dataclass(eq=False)
class SubsystemHandle:
    """
    One launched drafter process. Owned by exactly one InstanceRecord.
    `lock` serializes poll/terminate, which may race with a background
    transition or the watchdog.

    `proc` is a `subprocess.Popen`, or a Popen-like wrapper for a process
    started by a previous run of the service. `orphan_pid` is the pid read
    back from the catalog until that process has been re-adopted.
    """

    tag: SubsystemTag
    args: list[str]
    proc: Any = None
    log_path: str | None = None
    status: SubsystemStatus = SubsystemStatus.launching
    exit_code: int | None = None
    signal: int | None = None
    terminating: bool = False
    started_at: float = field(default_factory=time.time)
    orphan_pid: int | None = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def pid(self) -> int | None:
        return self.proc.pid if self.proc is not None else None

    def view(self) -> "HandleView":
        with self.lock:
            return HandleView(
                tag=self.tag,
                pid=self.pid,
                status=self.status,
                exit_code=self.exit_code,
                signal=self.signal,
                started_at=self.started_at,
                args=tuple(self.args),
                log_path=self.log_path,
            )


@dataclass(frozen=True)
class HandleView:
    tag: SubsystemTag
    pid: int | None
    status: SubsystemStatus
    exit_code: int | None
    signal: int | None
    started_at: float
    args: tuple[str, ...]
    log_path: str | None


@dataclass(eq=False)
class InstanceRecord:
    name: str
    spec: VMCreate
    slot: int
    workdir: str
    state: VMState = VMState.creating
    handles: list[SubsystemHandle] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    last_error: str | None = None
    error_kind: str | None = None
    stop_errors: list[str] = field(default_factory=list)
    # Bumped on every mutation; the catalog never goes back to an older one
    version: int = 0
    persisted_version: int = -1
    # Held for the whole duration of a transition
    transition: threading.Lock = field(default_factory=threading.Lock, repr=False)
    # Held only while fields are read or written
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    # Held while this record is written to the catalog
    persist_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def snapshot(self) -> "InstanceSnapshot":
        with self.lock:
            return InstanceSnapshot(
                name=self.name,
                state=self.state,
                slot=self.slot,
                workdir=self.workdir,
                spec=self.spec,
                handles=tuple(h.view() for h in self.handles),
                created_at=self.created_at,
                updated_at=self.updated_at,
                last_error=self.last_error,
                error_kind=self.error_kind,
                stop_errors=tuple(self.stop_errors),
                version=self.version,
            )


@dataclass(frozen=True)
class InstanceSnapshot:
    name: str
    state: VMState
    slot: int
    workdir: str
    spec: VMCreate
    handles: tuple[HandleView, ...]
    created_at: float
    updated_at: float
    last_error: str | None = None
    error_kind: str | None = None
    stop_errors: tuple[str, ...] = ()
    version: int = 0

    def latest(self, tag: SubsystemTag) -> HandleView | None:
        for view in reversed(self.handles):
            if view.tag == tag:
                return view
        return None
