from __future__ import annotations
from pydantic import BaseModel


class SubsystemMetrics(BaseModel):
    tag: str
    pid: int | None
    alive: bool
    cpu_percent: float | int | None = None
    rss_bytes: int | None = None
    rss_human: str | None = None
    num_threads: int | None = None


class InstanceMetrics(BaseModel):
    ts: float | int
    name: str
    subsystems: list[SubsystemMetrics]
