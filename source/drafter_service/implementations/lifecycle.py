from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator

import settings

from models import (
    InstanceRecord,
    InstanceSnapshot,
    SubsystemHandle,
    SubsystemTag,
    VMCreate,
    VMState,
)
from errors import (
    OrchestratorError,
    ReadinessTimeout,
    StateConflict,
    SubsystemCrashed,
    TransitionInProgress,
)
from .prober import ReadinessOutcome, ReadinessProber
from .registry import InstanceRegistry
from .supervisor import ProcessSupervisor

if TYPE_CHECKING:
    from drafter_manager import DrafterToolkit

logger = logging.getLogger(__name__)

# Launch order within each phase; later subsystems depend on earlier ones
CREATE_PHASE = (SubsystemTag.network, SubsystemTag.snapshotter)
START_PHASE = (SubsystemTag.resume, SubsystemTag.forwarder)

_LONG_LIVED = frozenset(
    {SubsystemTag.network, SubsystemTag.resume, SubsystemTag.forwarder}
)


class LifecycleManager:
    """
    Drives each VM through
    CREATING -> READY -> STARTING -> RUNNING -> STOPPING -> STOPPED,
    with FAILED reachable from any of them.

    Only one transition per VM runs at a time (the record's `transition`
    lock); different VMs never wait on each other. Every public method
    blocks its calling thread until the transition has converged, so an
    abandoned caller never leaves a record half-way.
    """

    def __init__(
        self,
        registry: InstanceRegistry,
        supervisor: ProcessSupervisor,
        prober: ReadinessProber,
        toolkit: "DrafterToolkit",
        poll_interval: float | None = None,
        stop_wait: float | None = None,
        grace_period: float | None = None,
    ) -> None:
        self.registry = registry
        self.supervisor = supervisor
        self.prober = prober
        self.toolkit = toolkit
        self.poll_interval = (
            settings.READY_POLL_INTERVAL_S if poll_interval is None else poll_interval
        )
        self.stop_wait = settings.STOP_WAIT_S if stop_wait is None else stop_wait
        self.grace_period = grace_period

    # ---- Helpers ----
    @contextmanager
    def _exclusive(
        self, record: InstanceRecord, wait: float | None = None
    ) -> Iterator[None]:
        if wait:
            acquired = record.transition.acquire(timeout=wait)
        else:
            acquired = record.transition.acquire(blocking=False)
        if not acquired:
            raise TransitionInProgress(record.name)
        try:
            yield
        finally:
            record.transition.release()

    @staticmethod
    def _state(record: InstanceRecord) -> VMState:
        with record.lock:
            return record.state

    def _set_state(self, record: InstanceRecord, state: VMState) -> InstanceSnapshot:
        def _mut(r: InstanceRecord) -> None:
            r.state = state

        snap = self.registry.apply(record, _mut)
        logger.info("VM %s -> %s", record.name, state.value)
        return snap

    def _teardown(self, record: InstanceRecord) -> list[str]:
        with record.lock:
            handles = list(record.handles)
        return self.supervisor.terminate_all(
            handles=handles, grace_period=self.grace_period
        )

    def _dead_subsystems(self, record: InstanceRecord) -> list[SubsystemHandle]:
        with record.lock:
            state = record.state
            handles = list(record.handles)
        if state not in (VMState.ready, VMState.running):
            return []
        return [
            h
            for h in handles
            if h.tag in _LONG_LIVED and not self.supervisor.is_alive(h)
        ]

    def _fail(self, record: InstanceRecord, exc: BaseException) -> InstanceSnapshot:
        """Tear down everything the record owns, then mark it FAILED."""
        failures = self._teardown(record)
        kind = exc.kind if isinstance(exc, OrchestratorError) else type(exc).__name__

        def _mut(r: InstanceRecord) -> None:
            r.state = VMState.failed
            r.last_error = str(exc)
            r.error_kind = kind
            r.stop_errors = failures

        snap = self.registry.apply(record, _mut)
        logger.error("VM %s failed (%s): %s", record.name, kind, exc)
        return snap

    def _run_phase(
        self, record: InstanceRecord, tags: tuple[SubsystemTag, ...]
    ) -> None:
        for tag in tags:
            snap = record.snapshot()
            plan = self.toolkit.plan(tag, snap)
            handle = self.supervisor.launch(
                tag, plan.args, log_path=plan.log_path, cwd=snap.workdir
            )
            self.registry.apply(record, lambda r, h=handle: r.handles.append(h))

            outcome = self.prober.await_ready(
                handle, plan.check, self.poll_interval, plan.deadline
            )
            if outcome == ReadinessOutcome.ready:
                self.supervisor.mark_ready(handle)
                # mirror the READY status
                self.registry.apply(record, lambda r: None)
                continue
            if outcome == ReadinessOutcome.timeout:
                raise ReadinessTimeout(
                    f"{tag.value} not ready within {plan.deadline:g}s"
                )
            raise SubsystemCrashed(
                f"{tag.value} exited before becoming ready "
                f"(exit={handle.exit_code}, signal={handle.signal})"
            )

    # ---- Transitions ----
    def create(self, spec: VMCreate) -> InstanceSnapshot:
        self.toolkit.validate(spec)
        # returned with its transition lock held
        record = self.registry.get_or_create(spec)
        try:
            return self._create_locked(record, spec)
        finally:
            record.transition.release()

    def _create_locked(self, record: InstanceRecord, spec: VMCreate) -> InstanceSnapshot:
        state = self._state(record)
        if state not in (VMState.creating, VMState.failed):
            raise StateConflict(f"VM {spec.name!r} is {state.value}")
        if state == VMState.failed:
            logger.info("Retrying creation of failed VM %s", spec.name)
            with record.lock:
                old = list(record.handles)
            # adopted survivors of a previous run may still be alive
            self.supervisor.terminate_all(handles=old, grace_period=self.grace_period)
            self.supervisor.forget(old)

        def _reset(r: InstanceRecord) -> None:
            r.spec = spec
            r.state = VMState.creating
            r.handles = []
            r.last_error = None
            r.error_kind = None
            r.stop_errors = []

        self.registry.apply(record, _reset)
        logger.info("VM %s -> creating", spec.name)
        try:
            self.toolkit.prepare(record.snapshot())
            self._run_phase(record, CREATE_PHASE)
        except Exception as e:  # pylint: disable=broad-except
            self._fail(record, e)
            raise
        return self._set_state(record, VMState.ready)

    def start(self, name: str) -> InstanceSnapshot:
        record = self.registry.get(name)
        with self._exclusive(record):
            state = self._state(record)
            if state != VMState.ready:
                raise StateConflict(f"VM {name!r} is {state.value}, not ready")
            self._set_state(record, VMState.starting)
            try:
                self._run_phase(record, START_PHASE)
            except Exception as e:  # pylint: disable=broad-except
                self._fail(record, e)
                raise
            return self._set_state(record, VMState.running)

    def stop(self, name: str) -> InstanceSnapshot:
        """
        Always ends in STOPPED. Subsystems that refuse to die are reported in
        `stop_errors` instead of failing the call.
        """
        record = self.registry.get(name)
        with self._exclusive(record, wait=self.stop_wait):
            state = self._state(record)
            if state == VMState.stopped:
                return record.snapshot()
            self._set_state(record, VMState.stopping)
            failures = self._teardown(record)

            def _mut(r: InstanceRecord) -> None:
                r.state = VMState.stopped
                r.stop_errors = failures

            snap = self.registry.apply(record, _mut)
            if failures:
                logger.warning("VM %s stopped with teardown failures: %s", name, failures)
            else:
                logger.info("VM %s -> stopped", name)
            return snap

    def purge(self, name: str) -> InstanceSnapshot:
        record = self.registry.get(name)
        with self._exclusive(record):
            state = self._state(record)
            if state not in (VMState.stopped, VMState.failed):
                raise StateConflict(f"VM {name!r} is {state.value}; stop it first")
            failures = self._teardown(record)
            if failures:
                logger.warning("VM %s purged with teardown failures: %s", name, failures)
            snap = self.registry.remove(name)
        logger.info("VM %s purged", name)
        return snap

    def migrate(self, name: str) -> bool:
        logger.info("Migration requested for VM %s (not supported)", name)
        return False

    def reconcile(self, name: str) -> InstanceSnapshot | None:
        """
        Move a READY/RUNNING VM whose long-lived subsystem died to FAILED.
        Skips VMs with a transition in flight; returns None when nothing
        changed. A healthy VM is checked without taking its transition lock.
        """
        record = self.registry.get(name)
        if not self._dead_subsystems(record):
            return None
        if not record.transition.acquire(blocking=False):
            return None
        try:
            # a transition may have run between the check and the acquire
            dead = self._dead_subsystems(record)
            if not dead:
                return None
            h = dead[0]
            err = SubsystemCrashed(
                f"{h.tag.value} exited unexpectedly "
                f"(exit={h.exit_code}, signal={h.signal})"
            )
            return self._fail(record, err)
        finally:
            record.transition.release()

    def shutdown(self, terminate: bool = False) -> list[str]:
        if not terminate:
            return []
        logger.info("Terminating every supervised subsystem")
        return self.supervisor.terminate_all(grace_period=self.grace_period)

