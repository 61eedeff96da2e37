"""
Disk images through qemu-img.

Domain disks are plain files in the VDC namespace, so storage stays outside
the libvirt connection: a derived disk is a qcow2 overlay on the shared base
image, a blank disk is an empty image for additional hypervisor storage.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

from virtual_datacenter.core.errors import ControlPlaneError
from virtual_datacenter.core.process import Runner, run_command

logger = logging.getLogger(__name__)


class QemuImgDiskTool:
    """DiskTool over qemu-img."""

    def __init__(self, runner: Runner | None = None) -> None:
        self._run = runner or run_command

    def _call(self, cmd: Sequence[str], operation: str, target: Path) -> None:
        result = self._run(cmd)
        if result.returncode != 0:
            raise ControlPlaneError(
                (result.stderr or "").strip() or f"exit status {result.returncode}",
                operation=operation,
                resource=str(target),
            )

    def create_derived_disk(self, base: Path, target: Path, size_gb: int) -> None:
        if not base.exists():
            raise ControlPlaneError(f"base image not found: {base}", operation="disk.derived", resource=str(target))
        target.parent.mkdir(parents=True, exist_ok=True)
        cmd = ["qemu-img", "create", "-f", "qcow2", "-F", "qcow2", "-b", str(base), str(target), f"{size_gb}G"]
        self._call(cmd, "disk.derived", target)
        logger.info("created disk %s (%sG, backed by %s)", target, size_gb, base.name)

    def create_blank_disk(self, target: Path, size_gb: int, fmt: str = "qcow2") -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        cmd = ["qemu-img", "create", "-f", fmt, str(target), f"{size_gb}G"]
        self._call(cmd, "disk.blank", target)
        logger.info("created blank disk %s (%sG, %s)", target, size_gb, fmt)
