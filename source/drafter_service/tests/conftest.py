# conftest.py
import os
import sys
import time
import pathlib

import pytest
from fastapi.testclient import TestClient

# ----------------------
# Path setup: ensure drafter_service root is importable as top-level
# so imports like `import settings` resolve to drafter_service/settings.py
# ----------------------
_THIS_DIR = pathlib.Path(__file__).resolve().parent
_PKG_ROOT = _THIS_DIR.parent  # drafter_service/
if str(_PKG_ROOT) not in sys.path:
    sys.path.insert(0, str(_PKG_ROOT))

# After adjusting sys.path, import project modules
import settings  # noqa: E402
import models  # noqa: E402
import main  # noqa: E402
from drafter_manager import SubsystemPlan  # noqa: E402
from implementations import build_orchestrator  # noqa: E402


# ----------------------
# Test Utilities / Fakes
# ----------------------
def python_cmd(code: str) -> list[str]:
    """A real child process standing in for a drafter binary."""
    return [sys.executable, "-c", code]


SLEEPER = python_cmd("import time; time.sleep(60)")
ONE_SHOT_OK = python_cmd("import sys; sys.exit(0)")


def wait_until(predicate, timeout=5.0, interval=0.02):
    end = time.time() + timeout
    while time.time() < end:
        if predicate():
            return True
        time.sleep(interval)
    return False


class FakeToolkit:
    """
    Stands in for DrafterToolkit: long-lived subsystems are sleeping python
    processes, the snapshotter is a process that exits 0. Checks, commands
    and deadlines can be overridden per subsystem.
    """

    def __init__(self):
        self.checks = {}
        self.commands = {}
        self.deadlines = {}
        self.prepared: list[str] = []
        self.planned: list[models.SubsystemTag] = []
        self.prepare_error: Exception | None = None
        self.validate_error: Exception | None = None

    def validate(self, spec):
        if self.validate_error is not None:
            raise self.validate_error

    def prepare(self, snap):
        if self.prepare_error is not None:
            raise self.prepare_error
        self.prepared.append(snap.name)

    def plan(self, tag, snap):
        self.planned.append(tag)
        if tag == models.SubsystemTag.snapshotter:
            default_cmd = ONE_SHOT_OK
            default_check = lambda h: h.proc.poll() == 0  # noqa: E731
        else:
            default_cmd = SLEEPER
            default_check = lambda h: True  # noqa: E731
        return SubsystemPlan(
            tag=tag,
            args=self.commands.get(tag, default_cmd),
            check=self.checks.get(tag, default_check),
            deadline=self.deadlines.get(tag, 5.0),
            log_path=os.path.join(snap.workdir, "logs", f"{tag.value}.log"),
        )


# ----------------------
# Shared Fixtures
# ----------------------
@pytest.fixture(autouse=True)
def patch_auth_token(monkeypatch):
    """
    Ensure AUTH_TOKEN is set for all tests.
    """
    monkeypatch.setattr(settings, "AUTH_TOKEN", "testtoken", raising=False)


@pytest.fixture
def auth_header():
    return {"Authorization": "Bearer testtoken"}


@pytest.fixture
def base_dir(tmp_path, monkeypatch) -> str:
    d = tmp_path / "vm_data"
    os.makedirs(d, exist_ok=True)
    monkeypatch.setattr(settings, "VM_BASE_DIR", str(d), raising=False)
    return str(d)


@pytest.fixture
def toolkit() -> FakeToolkit:
    return FakeToolkit()


@pytest.fixture
def orchestrator(toolkit, base_dir, monkeypatch):
    """
    A fully wired orchestrator driving real (python) child processes.
    Every process still alive at the end of the test is terminated.
    """
    monkeypatch.setattr(settings, "READY_POLL_INTERVAL_S", 0.02, raising=False)
    monkeypatch.setattr(settings, "READY_MAX_INTERVAL_S", 0.1, raising=False)
    monkeypatch.setattr(settings, "TERMINATE_GRACE_S", 2.0, raising=False)
    monkeypatch.setattr(settings, "STOP_WAIT_S", 5.0, raising=False)
    monkeypatch.setattr(settings, "REDIS_URL", "", raising=False)
    orch = build_orchestrator(
        toolkit=toolkit,
        base_dir=base_dir,
        node_name="test-node",
        monitor_interval=0,
    )
    yield orch
    orch.supervisor.terminate_all(grace_period=1.0)


@pytest.fixture
def image_path(tmp_path) -> str:
    p = tmp_path / "drafteros-oci.tar.zst"
    p.write_bytes(b"not really an image")
    return str(p)


@pytest.fixture
def spec_factory(image_path):
    def _make(name: str = "vm-1", **overrides) -> models.VMCreate:
        data = {
            "name": name,
            "memory": "512M",
            "cpus": 1,
            "disk_size": "1G",
            "image_path": image_path,
        }
        data.update(overrides)
        return models.VMCreate(**data)

    return _make


@pytest.fixture
def client(orchestrator, monkeypatch) -> TestClient:
    """
    FastAPI TestClient bound to the test orchestrator.
    """
    monkeypatch.setattr(main.app.state, "orchestrator", orchestrator, raising=False)
    return TestClient(main.app)
