from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Any, Callable

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse

import settings
from errors import NotFound, OrchestratorError
from implementations import Orchestrator
from models import (
    InstanceSnapshot,
    MigrateOut,
    SubsystemTag,
    VMCreate,
    VMOut,
    VMState,
    VMStatusOut,
)
from security import verify_bearer_token

logger = logging.getLogger(__name__)

vms_router = APIRouter(prefix="/vm", dependencies=[Depends(verify_bearer_token)])


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def _http_error(e: OrchestratorError, name: str, orch: Orchestrator) -> HTTPException:
    detail: dict[str, Any] = {"name": name, "error": e.kind, "reason": str(e)}
    if not isinstance(e, NotFound):
        try:
            detail["state"] = orch.registry.snapshot(name).state.value
        except NotFound:
            pass
    return HTTPException(e.status_code, detail=detail)


def _retrieve(task: "asyncio.Future[Any]") -> None:
    # Failures were already logged by the lifecycle; just mark them retrieved
    if not task.cancelled():
        task.exception()


async def _bounded(fn: Callable[..., InstanceSnapshot], *args) -> InstanceSnapshot | None:
    """
    Run a blocking transition on a worker thread. The request waits at most
    REQUEST_WAIT_S; after that (or if the client goes away) the transition
    keeps going in the background and None is returned.
    """
    task = asyncio.ensure_future(asyncio.to_thread(fn, *args))
    task.add_done_callback(_retrieve)
    try:
        return await asyncio.wait_for(
            asyncio.shield(task), timeout=settings.REQUEST_WAIT_S
        )
    except asyncio.TimeoutError:
        return None


async def _transition(
    orch: Orchestrator,
    name: str,
    response: Response,
    fn: Callable[..., InstanceSnapshot],
    *args,
) -> VMOut:
    try:
        snap = await _bounded(fn, *args)
    except OrchestratorError as e:
        raise _http_error(e, name, orch) from e
    if snap is None:
        logger.info("VM %s still transitioning, answering 202", name)
        response.status_code = 202
        try:
            snap = orch.registry.snapshot(name)
        except NotFound:
            # create has not registered the record yet
            now = time.time()
            return VMOut(
                name=name,
                state=VMState.creating,
                node=orch.node_name,
                created_at=now,
                updated_at=now,
            )
    return VMOut.from_snapshot(snap, orch.node_name)


# ---- Endpoints REST ----
@vms_router.post("/create", response_model=VMOut)
async def create_vm(
    req: VMCreate, response: Response, orch: Orchestrator = Depends(get_orchestrator)
) -> VMOut:
    logger.info("Creating VM: %s", req.name)
    return await _transition(orch, req.name, response, orch.lifecycle.create, req)


@vms_router.post("/start/{name}", response_model=VMOut)
async def start_vm(
    name: str, response: Response, orch: Orchestrator = Depends(get_orchestrator)
) -> VMOut:
    logger.info("Starting VM: %s", name)
    return await _transition(orch, name, response, orch.lifecycle.start, name)


@vms_router.post("/stop/{name}", response_model=VMOut)
async def stop_vm(
    name: str, response: Response, orch: Orchestrator = Depends(get_orchestrator)
) -> VMOut:
    logger.info("Stopping VM: %s", name)
    return await _transition(orch, name, response, orch.lifecycle.stop, name)


@vms_router.get("/status/{name}", response_model=VMStatusOut)
async def get_vm_status(
    name: str, orch: Orchestrator = Depends(get_orchestrator)
) -> VMStatusOut:
    try:
        return orch.status.status(name)
    except NotFound as e:
        raise _http_error(e, name, orch) from e


@vms_router.post("/migrate/{name}", response_model=MigrateOut, status_code=501)
async def migrate_vm(
    name: str, orch: Orchestrator = Depends(get_orchestrator)
) -> MigrateOut:
    return MigrateOut(name=name, supported=orch.lifecycle.migrate(name))


@vms_router.get("/", response_model=list[VMOut])
async def list_vms(orch: Orchestrator = Depends(get_orchestrator)) -> list[VMOut]:
    return [VMOut.from_snapshot(s, orch.node_name) for s in orch.registry.list()]


@vms_router.delete("/{name}", response_model=VMOut)
async def purge_vm(name: str, orch: Orchestrator = Depends(get_orchestrator)) -> VMOut:
    try:
        snap = orch.lifecycle.purge(name)
    except OrchestratorError as e:
        raise _http_error(e, name, orch) from e
    return VMOut.from_snapshot(snap, orch.node_name)


@vms_router.get("/logs/{name}/{subsystem}")
async def tail_log(
    name: str,
    subsystem: SubsystemTag,
    lines: int = Query(120, ge=1, le=5000),
    orch: Orchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    try:
        snap = orch.registry.snapshot(name)
    except NotFound as e:
        raise _http_error(e, name, orch) from e
    view = snap.latest(subsystem)
    if view is None or not view.log_path or not os.path.exists(view.log_path):
        raise HTTPException(404, f"No {subsystem.value} log for VM {name!r}")
    with open(view.log_path, "r", encoding="utf-8", errors="ignore") as f:
        data = f.readlines()
    return JSONResponse(
        {
            "name": name,
            "subsystem": subsystem.value,
            "lines": lines,
            "log": "".join(data[-lines:]),
        }
    )
