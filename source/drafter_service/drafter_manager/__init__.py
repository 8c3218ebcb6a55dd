"""Drafter toolkit integration: argument schemas, addressing and readiness checks."""

from .addressing import InstanceAddresses, addresses_for_slot
from .args import InstancePaths
from .toolkit import DrafterToolkit, SubsystemPlan

__all__ = [
    "InstanceAddresses",
    "addresses_for_slot",
    "InstancePaths",
    "DrafterToolkit",
    "SubsystemPlan",
]
