"""
Control plane package.

Re-exports the protocols, the in-memory adapters and the qemu-img disk tool.
The libvirt adapter lives in controlplane.libvirt_adapter and is imported
only where a real host is used, since it needs the libvirt bindings.
"""

from virtual_datacenter.controlplane.base import ControlPlane, DiskTool
from virtual_datacenter.controlplane.disks import QemuImgDiskTool
from virtual_datacenter.controlplane.mock import InMemoryControlPlane, InMemoryDiskTool

__all__ = [
    "ControlPlane",
    "DiskTool",
    "InMemoryControlPlane",
    "InMemoryDiskTool",
    "QemuImgDiskTool",
]
