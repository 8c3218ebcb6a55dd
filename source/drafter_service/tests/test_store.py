import json
from types import SimpleNamespace

import pytest

import settings
from implementations.store import RedisStore
from models import (
    InstanceRecord,
    SubsystemHandle,
    SubsystemStatus,
    SubsystemTag,
    VMCreate,
    VMState,
)


# ----------------------
# Fakes for Redis client
# ----------------------
class _FakePipeline:
    def __init__(self, backing):
        self._backing = backing
        self._ops: list[tuple[str, tuple]] = []

    def set(self, key, value):
        self._ops.append(("set", (key, value)))
        return self

    def sadd(self, key, member):
        self._ops.append(("sadd", (key, member)))
        return self

    def get(self, key):
        self._ops.append(("get", (key,)))
        return self

    def delete(self, key):
        self._ops.append(("delete", (key,)))
        return self

    def srem(self, key, member):
        self._ops.append(("srem", (key, member)))
        return self

    def execute(self):
        out = []
        for op, args in self._ops:
            if op == "set":
                key, value = args
                self._backing._data[key] = value
                out.append(True)
            elif op == "sadd":
                key, member = args
                self._backing._sets.setdefault(key, set()).add(member)
                out.append(1)
            elif op == "get":
                out.append(self._backing._data.get(args[0]))
            elif op == "delete":
                out.append(int(self._backing._data.pop(args[0], None) is not None))
            elif op == "srem":
                key, member = args
                self._backing._sets.get(key, set()).discard(member)
                out.append(1)
        self._ops.clear()
        return out


class _FakeRedis:
    def __init__(self):
        self._data: dict[str, str] = {}
        self._sets: dict[str, set[str]] = {}

    def pipeline(self):
        return _FakePipeline(self)

    def get(self, key):
        return self._data.get(key)

    def smembers(self, key):
        return set(self._sets.get(key, set()))


# ----------------------
# Fixtures
# ----------------------
@pytest.fixture(autouse=True)
def patch_redis_client(monkeypatch):
    # RedisStore imports Redis class directly; patch it to provide our fake .from_url
    class _DummyRedisClass:
        kwargs: dict = {}

        @classmethod
        def from_url(cls, url, decode_responses=True, **kwargs):
            cls.kwargs = kwargs
            return _FakeRedis()

    monkeypatch.setattr("implementations.store.Redis", _DummyRedisClass)
    yield _DummyRedisClass


def _make_record(name: str = "vm-1", state: VMState = VMState.running) -> InstanceRecord:
    return InstanceRecord(
        name=name,
        spec=VMCreate(
            name=name,
            memory="2G",
            cpus=1,
            disk_size="10G",
            image_path="/images/drafteros-oci.tar.zst",
        ),
        slot=2,
        workdir=f"/tmp/{name}",
        state=state,
        last_error="boom",
        error_kind="SubsystemCrashed",
        stop_errors=["forwarder survived SIGKILL"],
    )


# ----------------------
# Tests
# ----------------------
def test_put_get_roundtrip_json_types():
    store = RedisStore(url="redis://unused", namespace="t:")
    rec = _make_record()
    store.put(rec.snapshot())

    raw = store.r._data["t:vm:vm-1"]
    data = json.loads(raw)
    assert data["state"] == "running"
    assert data["spec"]["memory"] == 2048
    assert data["subsystems"] == []
    assert "vm-1" in store.r._sets["t:vms"]

    back = store.get("vm-1")
    assert back.name == "vm-1"
    assert back.state == VMState.running
    assert back.slot == 2
    assert back.spec.disk_size == 10240
    assert back.error_kind == "SubsystemCrashed"
    assert back.stop_errors == ["forwarder survived SIGKILL"]
    assert back.handles == []


def test_get_missing_raises_keyerror():
    store = RedisStore(url="redis://unused")
    with pytest.raises(KeyError):
        store.get("nope")


def test_delete_removes_key_and_membership():
    store = RedisStore(url="redis://unused", namespace="t")
    store.put(_make_record().snapshot())
    store.delete("vm-1")
    assert "t:vm:vm-1" not in store.r._data
    assert "vm-1" not in store.r._sets["t:vms"]


def test_load_all_skips_missing_and_unreadable_entries():
    store = RedisStore(url="redis://unused", namespace="t")
    store.put(_make_record("a").snapshot())
    store.put(_make_record("b", VMState.stopped).snapshot())
    store.r._sets["t:vms"].add("phantom")
    store.r._sets["t:vms"].add("garbage")
    store.r._data["t:vm:garbage"] = "{not json"

    loaded = {r.name: r for r in store.load_all()}
    assert set(loaded) == {"a", "b"}
    assert loaded["b"].state == VMState.stopped


def test_load_all_empty():
    store = RedisStore(url="redis://unused")
    assert store.load_all() == []


def test_client_is_built_with_socket_timeouts(patch_redis_client):
    RedisStore(url="redis://unused")
    assert patch_redis_client.kwargs == {
        "socket_timeout": settings.REDIS_SOCKET_TIMEOUT_S,
        "socket_connect_timeout": settings.REDIS_SOCKET_TIMEOUT_S,
    }


def test_subsystem_pid_and_start_time_survive_a_roundtrip():
    store = RedisStore(url="redis://unused", namespace="t")
    rec = _make_record()
    rec.handles = [
        SubsystemHandle(
            tag=SubsystemTag.network,
            args=["drafter-nat"],
            proc=SimpleNamespace(pid=4242),
            log_path="/tmp/vm-1/logs/network.log",
            status=SubsystemStatus.running,
            started_at=1700000000.5,
        )
    ]
    store.put(rec.snapshot())

    (handle,) = store.get("vm-1").handles
    assert handle.tag == SubsystemTag.network
    assert handle.status == SubsystemStatus.running
    assert handle.started_at == 1700000000.5
    assert handle.log_path == "/tmp/vm-1/logs/network.log"
    # not supervised until the process is adopted again
    assert handle.proc is None
    assert handle.orphan_pid == 4242
