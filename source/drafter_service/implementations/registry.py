from __future__ import annotations

import logging
import os
import threading
import time
from typing import TYPE_CHECKING, Callable

import settings

from models import InstanceRecord, InstanceSnapshot, VMCreate, VMState
from errors import CapacityExceeded, NotFound, StateConflict, TransitionInProgress

if TYPE_CHECKING:
    from .store import RedisStore

logger = logging.getLogger(__name__)

Mutator = Callable[[InstanceRecord], None]
RecordHook = Callable[[InstanceRecord], None]


class InstanceRegistry:
    """
    Process-wide map of VM name -> InstanceRecord.

    `_guard` covers dict membership and slot allocation and is never held
    while a record is mutated; record fields are only written under the
    record's own lock, and transitions hold the record's `transition` lock.
    Catalog writes happen after the record lock is released, so readers
    never wait on Redis.
    """

    def __init__(
        self,
        max_instances: int | None = None,
        base_dir: str | None = None,
        store: "RedisStore | None" = None,
        on_evict: RecordHook | None = None,
        on_restore: RecordHook | None = None,
    ) -> None:
        self.max_instances = (
            settings.MAX_INSTANCES if max_instances is None else max_instances
        )
        self.base_dir = base_dir
        self.store = store
        self.on_evict = on_evict
        self.on_restore = on_restore
        self._records: dict[str, InstanceRecord] = {}
        self._guard = threading.Lock()

    def workdir(self, name: str) -> str:
        base = os.path.join(self.base_dir or settings.VM_BASE_DIR, "vms")
        os.makedirs(base, exist_ok=True)
        wd = os.path.join(base, name)
        os.makedirs(wd, exist_ok=True)
        return wd

    def _free_slot(self) -> int:
        used = {r.slot for r in self._records.values()}
        for slot in range(self.max_instances):
            if slot not in used:
                return slot
        raise CapacityExceeded(
            f"all {self.max_instances} instance slots are in use; purge a stopped VM"
        )

    # ---- Persistence mirror ----
    def _persist(self, record: InstanceRecord, snap: InstanceSnapshot) -> None:
        if self.store is None:
            return
        with record.persist_lock:
            # a later mutation may already have been written by another thread
            if snap.version <= record.persisted_version:
                return
            try:
                self.store.put(snap)
            except Exception:  # pylint: disable=broad-except
                logger.exception("Could not mirror VM %s to the catalog", snap.name)
                return
            record.persisted_version = snap.version

    def _unpersist(self, name: str) -> None:
        if self.store is None:
            return
        try:
            self.store.delete(name)
        except Exception:  # pylint: disable=broad-except
            logger.exception("Could not drop VM %s from the catalog", name)

    # ---- Contract ----
    def get_or_create(self, spec: VMCreate) -> InstanceRecord:
        """
        Return the record a `create` should drive: a fresh CREATING record,
        or the existing FAILED one (retry). A STOPPED record is evicted and
        replaced; any other state is a conflict.

        The record comes back with its `transition` lock already held, taken
        before anyone else could see it; the caller must release it.
        """
        evicted = None
        with self._guard:
            record = self._records.get(spec.name)
            if record is not None:
                with record.lock:
                    state = record.state
                if state not in (VMState.failed, VMState.stopped):
                    raise StateConflict(f"VM {spec.name!r} already exists ({state.value})")
                if not record.transition.acquire(blocking=False):
                    raise TransitionInProgress(spec.name)
                if state == VMState.failed:
                    return record
                record.transition.release()
                evicted = self._records.pop(spec.name)
            try:
                slot = self._free_slot()
            except CapacityExceeded:
                if evicted is not None:
                    self._records[spec.name] = evicted
                raise
            record = InstanceRecord(
                name=spec.name,
                spec=spec,
                slot=slot,
                workdir=self.workdir(spec.name),
            )
            record.transition.acquire()
            self._records[spec.name] = record

        if evicted is not None:
            logger.info("Evicted stopped record for %s", spec.name)
            if self.on_evict is not None:
                self.on_evict(evicted)
        self._persist(record, record.snapshot())
        return record

    def get(self, name: str) -> InstanceRecord:
        with self._guard:
            record = self._records.get(name)
        if record is None:
            raise NotFound(name)
        return record

    def apply(self, record: InstanceRecord, mutator: Mutator) -> InstanceSnapshot:
        with record.lock:
            mutator(record)
            record.updated_at = time.time()
            record.version += 1
            snap = record.snapshot()
        self._persist(record, snap)
        return snap

    def update(self, name: str, mutator: Mutator) -> InstanceSnapshot:
        """Atomic read-modify-write of one record."""
        return self.apply(self.get(name), mutator)

    def snapshot(self, name: str) -> InstanceSnapshot:
        return self.get(name).snapshot()

    def list(self) -> list[InstanceSnapshot]:
        with self._guard:
            records = list(self._records.values())
        return sorted((r.snapshot() for r in records), key=lambda s: s.created_at)

    def remove(self, name: str) -> InstanceSnapshot:
        with self._guard:
            record = self._records.pop(name, None)
        if record is None:
            raise NotFound(name)
        self._unpersist(name)
        if self.on_evict is not None:
            self.on_evict(record)
        return record.snapshot()

    def restore(self) -> int:
        """
        Load mirrored records after a restart. Their processes are no longer
        supervised, so anything that was not already terminal becomes FAILED;
        `on_restore` gets each record so surviving processes can be adopted
        and torn down later.
        """
        if self.store is None:
            return 0
        cnt = 0
        for record in self.store.load_all():
            if record.state not in (VMState.stopped, VMState.failed):
                record.state = VMState.failed
                record.error_kind = "Orphaned"
                record.last_error = "orphaned by service restart"
            with self._guard:
                if record.name in self._records:
                    continue
                if record.slot in {r.slot for r in self._records.values()}:
                    try:
                        record.slot = self._free_slot()
                    except CapacityExceeded:
                        logger.warning("No slot left to restore %s", record.name)
                        continue
                self._records[record.name] = record
            if self.on_restore is not None:
                self.on_restore(record)
            self.apply(record, lambda r: None)
            cnt += 1
        logger.info("Restored %d VM records from the catalog", cnt)
        return cnt
