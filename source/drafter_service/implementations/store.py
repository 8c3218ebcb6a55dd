import json
import logging
import time
from redis.client import Redis

import settings
from models import (
    InstanceRecord,
    InstanceSnapshot,
    SubsystemHandle,
    SubsystemStatus,
    SubsystemTag,
    VMCreate,
    VMState,
)

logger = logging.getLogger(__name__)


class RedisStore:
    """
    Catalog of VM records mirrored to Redis so they survive a service
    restart. Only the pid and start time of each subsystem are kept, enough
    to find a still-running process again after a restart.
    """

    def __init__(
        self,
        url: str,
        namespace: str = "drafter",
    ) -> None:
        self.r: Redis = Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT_S,
            socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT_S,
        )
        self.ns: str = namespace.rstrip(":")
        self.names_key: str = f"{self.ns}:vms"

    # ---- Keys ----
    def _key(self, name: str) -> str:
        return f"{self.ns}:vm:{name}"

    # ---- (de)Deserialization ----
    @staticmethod
    def _to_dict(snap: InstanceSnapshot) -> dict[str, object]:
        return {
            "name": snap.name,
            "state": snap.state.value,
            "slot": int(snap.slot),
            "workdir": snap.workdir,
            "spec": snap.spec.model_dump(),
            "created_at": float(snap.created_at),
            "updated_at": float(snap.updated_at),
            "last_error": snap.last_error,
            "error_kind": snap.error_kind,
            "stop_errors": list(snap.stop_errors),
            "subsystems": [
                {
                    "tag": h.tag.value,
                    "pid": h.pid,
                    "status": h.status.value,
                    "started_at": float(h.started_at),
                    "log_path": h.log_path,
                }
                for h in snap.handles
            ],
        }

    @staticmethod
    def _handle_from_dict(s: dict[str, object]) -> SubsystemHandle:
        pid = s.get("pid")
        return SubsystemHandle(
            tag=SubsystemTag(str(s["tag"])),
            args=[],
            log_path=(None if s.get("log_path") is None else str(s["log_path"])),
            status=SubsystemStatus(str(s["status"])),
            started_at=float(str(s.get("started_at") or 0)),
            orphan_pid=(None if pid is None else int(str(pid))),
        )

    @staticmethod
    def _from_dict(d: dict[str, object]) -> InstanceRecord:
        return InstanceRecord(
            name=str(d["name"]),
            spec=VMCreate.model_validate(d["spec"]),
            slot=int(str(d["slot"])),
            workdir=str(d["workdir"]),
            state=VMState(str(d["state"])),
            created_at=float(str(d["created_at"])),
            updated_at=float(str(d.get("updated_at") or time.time())),
            last_error=(None if d.get("last_error") is None else str(d["last_error"])),
            error_kind=(None if d.get("error_kind") is None else str(d["error_kind"])),
            # pyrefly: ignore  # not-iterable
            stop_errors=[str(e) for e in (d.get("stop_errors") or [])],
            handles=[
                RedisStore._handle_from_dict(s)
                # pyrefly: ignore  # not-iterable
                for s in (d.get("subsystems") or [])
            ],
        )

    # ---- API ----
    def put(self, snap: InstanceSnapshot) -> None:
        data = self._to_dict(snap)
        p = self.r.pipeline()
        p.set(
            self._key(snap.name),
            json.dumps(data, ensure_ascii=False, separators=(",", ":")),
        )
        p.sadd(self.names_key, snap.name)
        p.execute()

    def get(self, name: str) -> InstanceRecord:
        s = self.r.get(self._key(name))
        if s is None:
            raise KeyError(name)
        # pyrefly: ignore  # bad-argument-type
        return self._from_dict(json.loads(s))

    def delete(self, name: str) -> None:
        p = self.r.pipeline()
        p.delete(self._key(name))
        p.srem(self.names_key, name)
        p.execute()

    def load_all(self) -> list[InstanceRecord]:
        names = self.r.smembers(self.names_key)
        if not names:
            return []
        p = self.r.pipeline()
        # pyrefly: ignore  # no-matching-overload
        ordered = sorted(names)
        for n in ordered:
            p.get(self._key(n))
        vals = p.execute()
        out: list[InstanceRecord] = []
        for n, s in zip(ordered, vals):
            if not s:
                continue
            try:
                out.append(self._from_dict(json.loads(s)))
            except Exception as e:  # pylint: disable=broad-except
                logger.warning("Skipping unreadable catalog entry %s: %s", n, e)
        return out
