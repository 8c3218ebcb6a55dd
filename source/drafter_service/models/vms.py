from __future__ import annotations
import os
import re
from enum import Enum
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, field_validator

if TYPE_CHECKING:
    from .instances import HandleView, InstanceSnapshot


class VMState(str, Enum):
    creating = "creating"
    ready = "ready"
    starting = "starting"
    running = "running"
    stopping = "stopping"
    stopped = "stopped"
    failed = "failed"


class SubsystemTag(str, Enum):
    network = "network"
    snapshotter = "snapshotter"
    resume = "resume"
    forwarder = "forwarder"


class SubsystemStatus(str, Enum):
    launching = "launching"
    ready = "ready"
    running = "running"
    exited = "exited"
    crashed = "crashed"


_SIZE_RE = re.compile(r"^\s*(\d+)\s*([KMGT]?)(?:i?B)?\s*$", re.IGNORECASE)
_SIZE_FACTORS_MIB = {"K": 1 / 1024, "": 1, "M": 1, "G": 1024, "T": 1024 * 1024}


def parse_size_mib(value: object) -> int:
    """
    Turn 2048, "2048", "512M", "2G" or "2GiB" into MiB.
    Bare numbers are already MiB.
    """
    if isinstance(value, bool):
        raise ValueError("size must be a number or a size string")
    if isinstance(value, int):
        mib = value
    else:
        m = _SIZE_RE.match(str(value))
        if not m:
            raise ValueError(f"invalid size: {value!r}")
        mib = int(int(m.group(1)) * _SIZE_FACTORS_MIB[m.group(2).upper()])
    if mib <= 0:
        raise ValueError("size must be positive")
    return mib


class VMCreate(BaseModel):
    name: str = Field(
        default=...,
        min_length=1,
        max_length=63,
        pattern=r"^[A-Za-z0-9][A-Za-z0-9_.-]*$",
        json_schema_extra={"example": "redis-0"},
    )
    memory: int = Field(
        default=..., ge=128, description="MiB, or a size string such as '2G'"
    )
    cpus: int = Field(
        default=..., ge=1, le=os.cpu_count() or 64, json_schema_extra={"example": 1}
    )
    disk_size: int = Field(
        default=..., ge=64, description="MiB, or a size string such as '10G'"
    )
    image_path: str = Field(default=..., min_length=1)

    @field_validator("memory", "disk_size", mode="before")
    @classmethod
    def _sizes(cls, v):
        return parse_size_mib(v)


class VMOut(BaseModel):
    name: str
    state: VMState
    node: str
    created_at: float
    updated_at: float
    last_error: str | None = None
    error_kind: str | None = None
    errors: list[str] = Field(default_factory=list)

    @staticmethod
    def from_snapshot(snap: "InstanceSnapshot", node: str) -> "VMOut":
        return VMOut(
            name=snap.name,
            state=snap.state,
            node=node,
            created_at=snap.created_at,
            updated_at=snap.updated_at,
            last_error=snap.last_error,
            error_kind=snap.error_kind,
            errors=list(snap.stop_errors),
        )


class SubsystemOut(BaseModel):
    tag: SubsystemTag
    pid: int | None
    status: SubsystemStatus
    healthy: bool
    exit_code: int | None = None
    signal: int | None = None
    started_at: float

    @staticmethod
    def from_view(view: "HandleView", healthy: bool) -> "SubsystemOut":
        return SubsystemOut(
            tag=view.tag,
            pid=view.pid,
            status=view.status,
            healthy=healthy,
            exit_code=view.exit_code,
            signal=view.signal,
            started_at=view.started_at,
        )


class VMStatusOut(BaseModel):
    name: str
    state: VMState
    subsystems: dict[str, bool]
    details: list[SubsystemOut] = Field(default_factory=list)
    last_error: str | None = None


class MigrateOut(BaseModel):
    name: str
    supported: bool = False
    reason: str = "migration is not implemented"
