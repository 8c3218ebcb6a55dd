import time

import pytest

from conftest import ONE_SHOT_OK, SLEEPER, python_cmd
from implementations.prober import ReadinessOutcome, ReadinessProber
from implementations.supervisor import ProcessSupervisor
from models import SubsystemTag


@pytest.fixture
def supervisor():
    sup = ProcessSupervisor(bin_dir="")
    yield sup
    sup.terminate_all(grace_period=0.5)


@pytest.fixture
def prober(supervisor):
    return ReadinessProber(supervisor, max_interval=0.1)


def test_ready_immediately_does_not_wait_for_deadline(supervisor, prober):
    h = supervisor.launch(SubsystemTag.network, SLEEPER)
    start = time.monotonic()
    out = prober.await_ready(h, lambda _h: True, interval=0.05, deadline=10.0)
    assert out == ReadinessOutcome.ready
    assert time.monotonic() - start < 1.0


def test_ready_after_a_few_polls(supervisor, prober):
    h = supervisor.launch(SubsystemTag.resume, SLEEPER)
    calls = {"n": 0}

    def check(_h):
        calls["n"] += 1
        return calls["n"] >= 4

    out = prober.await_ready(h, check, interval=0.01, deadline=5.0)
    assert out == ReadinessOutcome.ready
    assert calls["n"] == 4


def test_timeout_is_bounded_by_deadline(supervisor, prober):
    h = supervisor.launch(SubsystemTag.network, SLEEPER)
    start = time.monotonic()
    out = prober.await_ready(h, lambda _h: False, interval=0.05, deadline=0.5)
    elapsed = time.monotonic() - start
    assert out == ReadinessOutcome.timeout
    assert 0.5 <= elapsed < 1.5


def test_dead_process_short_circuits(supervisor, prober):
    h = supervisor.launch(SubsystemTag.resume, python_cmd("import sys; sys.exit(1)"))
    start = time.monotonic()
    out = prober.await_ready(h, lambda _h: False, interval=0.05, deadline=10.0)
    assert out == ReadinessOutcome.subsystem_crashed
    assert time.monotonic() - start < 3.0
    assert h.exit_code == 1


def test_one_shot_exit_counts_as_ready(supervisor, prober):
    h = supervisor.launch(SubsystemTag.snapshotter, ONE_SHOT_OK)
    out = prober.await_ready(
        h, lambda hh: hh.proc.poll() == 0, interval=0.02, deadline=5.0
    )
    assert out == ReadinessOutcome.ready


def test_raising_check_counts_as_not_ready(supervisor, prober):
    h = supervisor.launch(SubsystemTag.forwarder, SLEEPER)

    def check(_h):
        raise ConnectionRefusedError("nothing listening yet")

    out = prober.await_ready(h, check, interval=0.05, deadline=0.3)
    assert out == ReadinessOutcome.timeout
