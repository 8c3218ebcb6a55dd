from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Callable

import settings

from models import SubsystemHandle, SubsystemStatus
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

ReadinessCheck = Callable[[SubsystemHandle], bool]


class ReadinessOutcome(str, Enum):
    ready = "ready"
    timeout = "timeout"
    subsystem_crashed = "subsystem_crashed"


class ReadinessProber:
    def __init__(
        self,
        supervisor: ProcessSupervisor,
        max_interval: float | None = None,
        backoff: float = 1.5,
    ) -> None:
        self.supervisor = supervisor
        self.max_interval = (
            settings.READY_MAX_INTERVAL_S if max_interval is None else max_interval
        )
        self.backoff = backoff

    @staticmethod
    def _check(check_fn: ReadinessCheck, handle: SubsystemHandle) -> bool:
        try:
            return bool(check_fn(handle))
        except Exception as e:  # pylint: disable=broad-except
            logger.debug("Readiness check for %s raised: %s", handle.tag.value, e)
            return False

    def await_ready(
        self,
        handle: SubsystemHandle,
        check_fn: ReadinessCheck,
        interval: float,
        deadline: float,
    ) -> ReadinessOutcome:
        """
        Poll `check_fn(handle)` until it passes, `deadline` seconds elapse, or
        the process is gone. Only the calling thread waits.
        """
        start = time.monotonic()
        end = start + deadline
        delay = interval

        while True:
            if self._check(check_fn, handle):
                logger.info(
                    "%s ready after %.2fs",
                    handle.tag.value,
                    time.monotonic() - start,
                )
                return ReadinessOutcome.ready

            status = self.supervisor.poll(handle)
            if status in (SubsystemStatus.exited, SubsystemStatus.crashed):
                # One-shot subsystems report ready by exiting; look once more
                if self._check(check_fn, handle):
                    return ReadinessOutcome.ready
                logger.warning(
                    "%s died while waiting for readiness (exit=%s, signal=%s)",
                    handle.tag.value,
                    handle.exit_code,
                    handle.signal,
                )
                return ReadinessOutcome.subsystem_crashed

            remaining = end - time.monotonic()
            if remaining <= 0:
                logger.warning(
                    "%s not ready after %.1fs", handle.tag.value, deadline
                )
                return ReadinessOutcome.timeout
            time.sleep(min(delay, remaining))
            delay = min(delay * self.backoff, max(self.max_interval, interval))
