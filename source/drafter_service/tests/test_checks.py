import json
import os
import socket
import subprocess
import types

import pytest

from conftest import ONE_SHOT_OK, python_cmd, wait_until
from drafter_manager import checks
from implementations.supervisor import ProcessSupervisor
from models import SubsystemHandle, SubsystemTag


def _fake_handle(pid=None, poll_rc=None):
    proc = types.SimpleNamespace(pid=pid, poll=lambda: poll_rc)
    return SubsystemHandle(tag=SubsystemTag.forwarder, args=[], proc=proc)


@pytest.fixture
def listening_socket():
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    s.listen(1)
    yield s
    s.close()


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


# ----------------------
# namespace_ready
# ----------------------
def test_namespace_missing(tmp_path):
    check = checks.namespace_ready("ark0", netns_dir=str(tmp_path))
    assert check(_fake_handle()) is False


def test_namespace_needs_an_address(tmp_path, monkeypatch):
    (tmp_path / "ark0").write_text("")
    payload = {"out": [{"ifname": "lo", "addr_info": [{"local": "127.0.0.1"}]}]}

    def fake_run(cmd, **kwargs):
        assert cmd[:4] == ["ip", "-json", "-n", "ark0"]
        return subprocess.CompletedProcess(cmd, 0, stdout=json.dumps(payload["out"]))

    monkeypatch.setattr(checks.subprocess, "run", fake_run)
    check = checks.namespace_ready("ark0", netns_dir=str(tmp_path))
    assert check(_fake_handle()) is False

    payload["out"].append({"ifname": "tap0", "addr_info": [{"local": "10.0.0.1"}]})
    assert check(_fake_handle()) is True


# ----------------------
# package_complete
# ----------------------
def test_package_complete_needs_clean_exit_and_files(tmp_path):
    artifacts = [str(tmp_path / "state.bin"), str(tmp_path / "memory.bin")]
    check = checks.package_complete(artifacts)
    assert check(_fake_handle(pid=1, poll_rc=None)) is False
    assert check(_fake_handle(pid=1, poll_rc=0)) is False
    for p in artifacts:
        with open(p, "wb") as f:
            f.write(b"x")
    assert check(_fake_handle(pid=1, poll_rc=1)) is False
    assert check(_fake_handle(pid=1, poll_rc=0)) is True


def test_package_complete_with_real_process(tmp_path):
    sup = ProcessSupervisor(bin_dir="")
    h = sup.launch(SubsystemTag.snapshotter, ONE_SHOT_OK)
    check = checks.package_complete([])
    assert wait_until(lambda: check(h))


# ----------------------
# endpoint_accepting / listener_bound
# ----------------------
def test_endpoint_accepting(listening_socket):
    port = listening_socket.getsockname()[1]
    assert checks.endpoint_accepting("127.0.0.1", port)(_fake_handle()) is True
    assert checks.endpoint_accepting("", port)(_fake_handle()) is True
    assert checks.endpoint_accepting("127.0.0.1", _free_port())(_fake_handle()) is False


def test_listener_bound_on_own_process(listening_socket):
    port = listening_socket.getsockname()[1]
    me = _fake_handle(pid=os.getpid())
    assert checks.listener_bound(port)(me) is True
    assert checks.listener_bound(_free_port())(me) is False
    assert checks.listener_bound(port)(_fake_handle(pid=None)) is False


def test_listener_bound_on_child_process():
    port = _free_port()
    code = (
        "import socket, time\n"
        "s = socket.socket()\n"
        f"s.bind(('127.0.0.1', {port}))\n"
        "s.listen(1)\n"
        "time.sleep(60)\n"
    )
    sup = ProcessSupervisor(bin_dir="")
    h = sup.launch(SubsystemTag.forwarder, python_cmd(code))
    try:
        assert wait_until(lambda: checks.listener_bound(port)(h))
    finally:
        sup.terminate(h, grace_period=1.0)
