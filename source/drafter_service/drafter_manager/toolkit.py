from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Callable

import settings

from models import InstanceSnapshot, SubsystemHandle, SubsystemTag, VMCreate
from errors import LaunchError, ValidationError

from .addressing import addresses_for_slot
from .args import (
    InstancePaths,
    forwarder_args,
    nat_args,
    packager_extract_args,
    peer_args,
    snapshotter_args,
)
from .checks import (
    endpoint_accepting,
    listener_bound,
    namespace_ready,
    package_complete,
)
from .proc import run_checked

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubsystemPlan:
    """Everything the lifecycle needs to launch one subsystem and wait on it."""

    tag: SubsystemTag
    args: list[str]
    check: Callable[[SubsystemHandle], bool]
    deadline: float
    log_path: str | None = None


class DrafterToolkit:
    """
    The only place that knows the drafter binaries: how to call them for a
    given instance and how to tell that each one is usable.
    """

    def __init__(self, bin_dir: str | None = None) -> None:
        self.bin_dir = settings.DRAFTER_BIN_DIR if bin_dir is None else bin_dir

    def _exe(self, args: list[str]) -> list[str]:
        if self.bin_dir:
            return [os.path.join(self.bin_dir, args[0]), *args[1:]]
        return args

    def validate(self, spec: VMCreate) -> None:
        if not os.path.isfile(spec.image_path):
            raise ValidationError(f"image_path {spec.image_path!r} is not a file")

    def prepare(self, snap: InstanceSnapshot) -> None:
        """Lay out the work directory and extract the blueprint from the image."""
        paths = InstancePaths(snap.workdir)
        for d in (paths.blueprint_dir, paths.package_dir, paths.logs_dir):
            os.makedirs(d, exist_ok=True)

        cmd = self._exe(packager_extract_args(snap.spec.image_path, paths))
        logger.info("Extracting blueprint for %s from %s", snap.name, snap.spec.image_path)
        try:
            run_checked(cmd, timeout=settings.EXTRACT_TIMEOUT_S, log_path=paths.log("packager"))
        except (OSError, subprocess.SubprocessError) as e:
            raise LaunchError(f"blueprint extraction failed: {e}") from e

    def plan(self, tag: SubsystemTag, snap: InstanceSnapshot) -> SubsystemPlan:
        paths = InstancePaths(snap.workdir)
        addr = addresses_for_slot(snap.slot)
        log_path = paths.log(tag.value)

        if tag == SubsystemTag.network:
            return SubsystemPlan(
                tag=tag,
                args=nat_args(settings.HOST_INTERFACE),
                check=namespace_ready(addr.netns),
                deadline=settings.NETWORK_READY_TIMEOUT_S,
                log_path=log_path,
            )
        if tag == SubsystemTag.snapshotter:
            return SubsystemPlan(
                tag=tag,
                args=snapshotter_args(
                    netns=addr.netns,
                    cpu_template=settings.CPU_TEMPLATE,
                    cpus=snap.spec.cpus,
                    memory_mib=snap.spec.memory,
                    paths=paths,
                ),
                check=package_complete(paths.package_artifacts),
                deadline=settings.SNAPSHOT_TIMEOUT_S,
                log_path=log_path,
            )
        if tag == SubsystemTag.resume:
            return SubsystemPlan(
                tag=tag,
                args=peer_args(
                    netns=addr.netns,
                    laddr=addr.peer_laddr,
                    raddr=settings.PEER_REMOTE_ADDR,
                    paths=paths,
                ),
                check=endpoint_accepting(addr.peer_host, addr.peer_port),
                deadline=settings.RESUME_READY_TIMEOUT_S,
                log_path=log_path,
            )
        if tag == SubsystemTag.forwarder:
            return SubsystemPlan(
                tag=tag,
                args=forwarder_args(addr.forward_rules()),
                check=listener_bound(addr.forward_port),
                deadline=settings.FORWARDER_READY_TIMEOUT_S,
                log_path=log_path,
            )
        raise ValueError(f"unknown subsystem {tag!r}")
