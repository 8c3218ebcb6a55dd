import logging
import time

import psutil
from fastapi import APIRouter, Depends, HTTPException

from errors import NotFound
from implementations import Orchestrator
from models import (
    HandleView,
    InstanceMetrics,
    SubsystemMetrics,
    SubsystemStatus,
    SubsystemTag,
)
from security import verify_bearer_token
from .vms import get_orchestrator

logger = logging.getLogger(__name__)

router_metrics = APIRouter(
    prefix="/metrics", dependencies=[Depends(verify_bearer_token)]
)


def human_bytes(n: float | None) -> str:
    if n is None:
        return "-"
    for unit in ("B", "KB", "MB", "GB", "TB", "PB"):
        if n < 1024 or unit == "PB":
            return f"{n:.1f} {unit}"
        n /= 1024.0
    return "-"


def safe(call, default=None):
    try:
        return call()
    except (psutil.AccessDenied, psutil.ZombieProcess, psutil.NoSuchProcess):
        return default


_LIVE = (SubsystemStatus.ready, SubsystemStatus.running)


def _measure(view: HandleView) -> SubsystemMetrics:
    tag, pid = view.tag.value, view.pid
    # an exited handle's pid may already belong to another process
    if not pid or view.status not in _LIVE:
        return SubsystemMetrics(tag=tag, pid=pid, alive=False)
    try:
        p = psutil.Process(pid)
        alive = p.is_running() and p.status() != psutil.STATUS_ZOMBIE
        p.cpu_percent(interval=None)
    except psutil.Error:
        return SubsystemMetrics(tag=tag, pid=pid, alive=False)
    if not alive:
        return SubsystemMetrics(tag=tag, pid=pid, alive=False)

    rss = safe(lambda: p.memory_info().rss)
    return SubsystemMetrics(
        tag=tag,
        pid=pid,
        alive=True,
        cpu_percent=safe(lambda: p.cpu_percent(interval=None)),
        rss_bytes=rss,
        rss_human=human_bytes(rss),
        num_threads=safe(p.num_threads),
    )


@router_metrics.get("/{name}", response_model=InstanceMetrics)
async def get_metrics(
    name: str, orch: Orchestrator = Depends(get_orchestrator)
) -> InstanceMetrics:
    try:
        snap = orch.registry.snapshot(name)
    except NotFound as e:
        raise HTTPException(404, "VM not found") from e

    out: list[SubsystemMetrics] = []
    for tag in SubsystemTag:
        view = snap.latest(tag)
        if view is None:
            continue
        out.append(_measure(view))
    logger.debug("Metrics for %s: %s", name, out)
    return InstanceMetrics(ts=time.time(), name=name, subsystems=out)
