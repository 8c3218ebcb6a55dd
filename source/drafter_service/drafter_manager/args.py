import json
import os
from dataclasses import dataclass


@dataclass(frozen=True)
class InstancePaths:
    """On-disk layout of one instance's work directory."""

    workdir: str

    def _join(self, *parts: str) -> str:
        return os.path.join(self.workdir, *parts)

    @property
    def blueprint_dir(self) -> str:
        return self._join("blueprint")

    @property
    def package_dir(self) -> str:
        return self._join("package")

    @property
    def logs_dir(self) -> str:
        return self._join("logs")

    def log(self, tag: str) -> str:
        return self._join("logs", f"{tag}.log")

    @property
    def blueprint_kernel(self) -> str:
        return self._join("blueprint", "vmlinux")

    @property
    def blueprint_disk(self) -> str:
        return self._join("blueprint", "rootfs.ext4")

    def package(self, artifact: str) -> str:
        return self._join("package", artifact)

    @property
    def package_artifacts(self) -> list[str]:
        return [
            self.package("state.bin"),
            self.package("memory.bin"),
            self.package("vmlinux"),
            self.package("rootfs.ext4"),
            self.package("config.json"),
        ]


def _devices(devices: list[dict[str, str]]) -> str:
    return json.dumps(devices, separators=(",", ":"))


def packager_extract_args(package_path: str, paths: InstancePaths) -> list[str]:
    return [
        "drafter-packager",
        "--package-path",
        package_path,
        "--extract",
        "--devices",
        _devices(
            [
                {"name": "kernel", "path": paths.blueprint_kernel},
                {"name": "disk", "path": paths.blueprint_disk},
            ]
        ),
    ]


def nat_args(host_interface: str) -> list[str]:
    return ["drafter-nat", "--host-interface", host_interface]


def snapshotter_args(
    netns: str,
    cpu_template: str,
    cpus: int,
    memory_mib: int,
    paths: InstancePaths,
) -> list[str]:
    return [
        "drafter-snapshotter",
        "--netns",
        netns,
        "--cpu-template",
        cpu_template,
        "--cpu-count",
        str(cpus),
        "--memory-size",
        str(memory_mib),
        "--devices",
        _devices(
            [
                {"name": "state", "output": paths.package("state.bin")},
                {"name": "memory", "output": paths.package("memory.bin")},
                {
                    "name": "kernel",
                    "input": paths.blueprint_kernel,
                    "output": paths.package("vmlinux"),
                },
                {
                    "name": "disk",
                    "input": paths.blueprint_disk,
                    "output": paths.package("rootfs.ext4"),
                },
                {"name": "config", "output": paths.package("config.json")},
            ]
        ),
    ]


def peer_args(netns: str, laddr: str, raddr: str, paths: InstancePaths) -> list[str]:
    return [
        "drafter-peer",
        "--netns",
        netns,
        "--raddr",
        raddr,
        "--laddr",
        laddr,
        "--devices",
        _devices(
            [
                {"name": "state", "base": paths.package("state.bin")},
                {"name": "memory", "base": paths.package("memory.bin")},
                {"name": "kernel", "base": paths.package("vmlinux")},
                {"name": "disk", "base": paths.package("rootfs.ext4")},
                {"name": "config", "base": paths.package("config.json")},
            ]
        ),
    ]


def forwarder_args(rules: list[dict[str, str]]) -> list[str]:
    """`rules` items: {netns, internalPort, protocol, externalAddr}."""
    return ["drafter-forwarder", "--port-forwards", _devices(rules)]
