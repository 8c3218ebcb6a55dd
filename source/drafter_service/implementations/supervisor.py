from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from typing import Iterable

import psutil

import settings

from models import SubsystemHandle, SubsystemStatus, SubsystemTag
from errors import LaunchError, TerminationError

logger = logging.getLogger(__name__)

_KILL_WAIT_S = 2.0
# How far a process start time may drift from the recorded launch time
# before a restored pid is considered reused by something else
_ADOPT_SLACK_S = 2.0


class AdoptedProcess:
    """
    Popen-like wrapper for a subsystem launched by a previous run of the
    service. It is no longer our child, so its exit status is unknown.
    """

    def __init__(self, proc: psutil.Process) -> None:
        self._proc = proc
        self.pid = proc.pid
        self.returncode: int | None = None

    def _gone(self) -> bool:
        try:
            return (
                not self._proc.is_running()
                or self._proc.status() == psutil.STATUS_ZOMBIE
            )
        except psutil.NoSuchProcess:
            return True

    def poll(self) -> int | None:
        if self.returncode is None and self._gone():
            self.returncode = 0
        return self.returncode

    def wait(self, timeout: float | None = None) -> int:
        try:
            self._proc.wait(timeout=timeout)
        except psutil.TimeoutExpired as e:
            raise subprocess.TimeoutExpired(str(self.pid), timeout or 0) from e
        except psutil.NoSuchProcess:
            pass
        if self.returncode is None:
            self.returncode = 0
        return self.returncode

    def send_signal(self, sig: int) -> None:
        try:
            self._proc.send_signal(sig)
        except psutil.NoSuchProcess:
            pass


class ProcessSupervisor:
    """
    Launches drafter subsystems detached from the service (own session, so
    they outlive the request that started them) and tracks their liveness.

    The handle table is guarded only for membership changes; everything that
    touches a single process goes through that handle's own lock.
    """

    def __init__(self, bin_dir: str | None = None) -> None:
        self.bin_dir = settings.DRAFTER_BIN_DIR if bin_dir is None else bin_dir
        self._handles: list[SubsystemHandle] = []
        self._table_lock = threading.Lock()

    def _resolve(self, executable: str) -> str:
        if self.bin_dir and os.sep not in executable:
            return os.path.join(self.bin_dir, executable)
        return executable

    def handles(self) -> list[SubsystemHandle]:
        with self._table_lock:
            return list(self._handles)

    def forget(self, handles: Iterable[SubsystemHandle]) -> None:
        drop = set(map(id, handles))
        with self._table_lock:
            self._handles = [h for h in self._handles if id(h) not in drop]

    # ---- Launch ----
    def launch(
        self,
        tag: SubsystemTag,
        args: list[str],
        log_path: str | None = None,
        cwd: str | None = None,
    ) -> SubsystemHandle:
        if not args:
            raise LaunchError(f"no command given for {tag.value}")
        argv = [self._resolve(args[0]), *args[1:]]
        handle = SubsystemHandle(tag=tag, args=argv, log_path=log_path)

        log = None
        try:
            if log_path:
                os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)
                log = open(log_path, "ab")
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=log if log is not None else subprocess.DEVNULL,
                stderr=subprocess.STDOUT,
                cwd=cwd,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            logger.error("Could not launch %s (%s): %s", tag.value, argv[0], e)
            raise LaunchError(f"could not launch {tag.value} ({argv[0]}): {e}") from e
        finally:
            if log is not None:
                log.close()

        handle.proc = proc
        with self._table_lock:
            self._handles.append(handle)
        logger.info("Launched %s with pid %s", tag.value, proc.pid)
        return handle

    # ---- Liveness ----
    @staticmethod
    def _poll_locked(handle: SubsystemHandle) -> SubsystemStatus:
        if handle.proc is None:
            return handle.status
        rc = handle.proc.poll()
        if rc is None:
            if handle.status == SubsystemStatus.ready:
                handle.status = SubsystemStatus.running
            return SubsystemStatus.running
        if rc < 0:
            handle.signal = -rc
            handle.exit_code = None
            # A signal we sent ourselves is an orderly exit, not a crash
            handle.status = (
                SubsystemStatus.exited
                if handle.terminating
                else SubsystemStatus.crashed
            )
        else:
            handle.exit_code = rc
            handle.status = SubsystemStatus.exited
        return handle.status

    def poll(self, handle: SubsystemHandle) -> SubsystemStatus:
        """Non-blocking: RUNNING, EXITED (exit_code set) or CRASHED (signal set)."""
        with handle.lock:
            return self._poll_locked(handle)

    def is_alive(self, handle: SubsystemHandle) -> bool:
        return self.poll(handle) == SubsystemStatus.running

    def mark_ready(self, handle: SubsystemHandle) -> None:
        with handle.lock:
            if handle.status == SubsystemStatus.launching:
                handle.status = SubsystemStatus.ready

    # ---- Restore ----
    def adopt(self, handles: Iterable[SubsystemHandle]) -> int:
        """
        Take back restored handles whose process is still alive, so a later
        stop or retry can terminate them. A pid whose process started at a
        different time belongs to something else and is left alone.
        """
        adopted = 0
        for handle in handles:
            with handle.lock:
                pid = handle.orphan_pid
                handle.orphan_pid = None
                if handle.proc is not None or pid is None:
                    continue
                try:
                    proc = psutil.Process(pid)
                    alive = proc.status() != psutil.STATUS_ZOMBIE
                    same = abs(proc.create_time() - handle.started_at) <= _ADOPT_SLACK_S
                except psutil.Error:
                    alive = same = False
                if not (alive and same):
                    if handle.status in (
                        SubsystemStatus.launching,
                        SubsystemStatus.ready,
                        SubsystemStatus.running,
                    ):
                        handle.status = SubsystemStatus.exited
                    continue
                handle.proc = AdoptedProcess(proc)
                handle.status = SubsystemStatus.running
            with self._table_lock:
                self._handles.append(handle)
            adopted += 1
            logger.warning(
                "Adopted orphaned %s (pid %s) from a previous run", handle.tag.value, pid
            )
        return adopted

    # ---- Termination ----
    @staticmethod
    def _signal(handle: SubsystemHandle, sig: int) -> None:
        proc = handle.proc
        if proc is None:
            return
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            proc.send_signal(sig)

    def terminate(
        self, handle: SubsystemHandle, grace_period: float | None = None
    ) -> None:
        """
        SIGTERM the subsystem's process group, then SIGKILL after the grace
        period. Terminating an already-exited handle is a no-op.
        """
        grace = settings.TERMINATE_GRACE_S if grace_period is None else grace_period
        with handle.lock:
            proc = handle.proc
            if proc is None or self._poll_locked(handle) != SubsystemStatus.running:
                return
            handle.terminating = True

        logger.info("Terminating %s (pid %s)", handle.tag.value, proc.pid)
        try:
            self._signal(handle, signal.SIGTERM)
            try:
                proc.wait(timeout=grace)
            except subprocess.TimeoutExpired:
                logger.warning(
                    "%s (pid %s) ignored SIGTERM for %.1fs, killing",
                    handle.tag.value,
                    proc.pid,
                    grace,
                )
                self._signal(handle, signal.SIGKILL)
                try:
                    proc.wait(timeout=_KILL_WAIT_S)
                except subprocess.TimeoutExpired as e:
                    raise TerminationError(
                        f"{handle.tag.value} (pid {proc.pid}) survived SIGKILL"
                    ) from e
        except OSError as e:
            raise TerminationError(
                f"could not terminate {handle.tag.value} (pid {proc.pid}): {e}"
            ) from e
        finally:
            self.poll(handle)

    def terminate_all(
        self,
        tag_filter: Iterable[SubsystemTag] | None = None,
        handles: Iterable[SubsystemHandle] | None = None,
        grace_period: float | None = None,
    ) -> list[str]:
        """
        Best-effort teardown in reverse launch order. Returns one message per
        subsystem that could not be terminated; never raises for those.
        """
        targets = list(handles) if handles is not None else self.handles()
        tags = set(tag_filter) if tag_filter is not None else None
        failures: list[str] = []
        for handle in reversed(targets):
            if tags is not None and handle.tag not in tags:
                continue
            try:
                self.terminate(handle, grace_period)
            except TerminationError as e:
                logger.error("Teardown failure: %s", e)
                failures.append(str(e))
        return failures
