"""
Subsystem readiness checks. Each factory returns a callable taking the
SubsystemHandle and answering "usable yet?". They must be cheap and never
block for long; the prober calls them repeatedly until its deadline.
"""

import json
import os
import socket
import subprocess
from typing import Callable

import psutil

import settings
from models import SubsystemHandle

ReadinessCheck = Callable[[SubsystemHandle], bool]


def namespace_ready(netns: str, netns_dir: str | None = None) -> ReadinessCheck:
    """The namespace exists and a non-loopback interface in it has an address."""
    base = settings.NETNS_DIR if netns_dir is None else netns_dir

    def _check(handle: SubsystemHandle) -> bool:
        if not os.path.exists(os.path.join(base, netns)):
            return False
        out = subprocess.run(
            ["ip", "-json", "-n", netns, "addr", "show"],
            capture_output=True,
            text=True,
            timeout=2,
            check=True,
        )
        for iface in json.loads(out.stdout or "[]"):
            if iface.get("ifname") == "lo":
                continue
            if iface.get("addr_info"):
                return True
        return False

    return _check


def package_complete(artifacts: list[str]) -> ReadinessCheck:
    """One-shot packaging: exited cleanly and wrote every artifact."""

    def _check(handle: SubsystemHandle) -> bool:
        if handle.proc is None or handle.proc.poll() != 0:
            return False
        return all(os.path.exists(p) for p in artifacts)

    return _check


def endpoint_accepting(host: str, port: int, timeout: float = 0.5) -> ReadinessCheck:
    def _check(handle: SubsystemHandle) -> bool:
        try:
            with socket.create_connection((host or "127.0.0.1", int(port)), timeout=timeout):
                return True
        except OSError:
            return False

    return _check


def listener_bound(port: int) -> ReadinessCheck:
    """The subsystem process (or a child of it) is listening on `port`."""

    def _check(handle: SubsystemHandle) -> bool:
        if handle.pid is None:
            return False
        try:
            root = psutil.Process(handle.pid)
            procs = [root, *root.children(recursive=True)]
        except psutil.Error:
            return False
        for proc in procs:
            try:
                conns = proc.net_connections(kind="tcp")
            except psutil.Error:
                continue
            for c in conns:
                if c.status == psutil.CONN_LISTEN and c.laddr and c.laddr.port == port:
                    return True
        return False

    return _check
