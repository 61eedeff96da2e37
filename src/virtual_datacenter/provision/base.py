"""
Provisioning interfaces.

Goal
Keep the orchestrator independent of how boot media and credentials are
produced and of how a device becomes a running domain.

Design notes
ComputeProvisioner is implemented by the tier specific deployers.
BootMediaBuilder and KeyGenerator wrap external tools and have in memory
stand ins for tests.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from virtual_datacenter.core.errors import ConsistencyWarning
from virtual_datacenter.core.types import Device, ManagementNetwork
from virtual_datacenter.fabric.builder import AttachmentPlan
from virtual_datacenter.provision.configgen import ConfigBundle


class BootMediaBuilder(Protocol):
    """Pack cloud-init files into a NoCloud ISO labelled cidata."""

    def build(self, files: Dict[str, Path], iso_path: Path) -> None:
        """Write iso_path from the given file name to source path mapping."""


class KeyGenerator(Protocol):
    """Create or reuse the VDC keypair."""

    def ensure_keypair(self, private_key: Path, comment: str) -> str:
        """Return the public key text, generating the pair when missing."""


@dataclass
class ProvisionResult:
    """
    Outcome for one device.

    action
    unchanged   domain and disk already existed
    created     domain and disk were created
    recreated   a stale domain without its disk was removed and rebuilt
    """

    device: str
    domain: str
    action: str
    bundle: Optional[ConfigBundle] = None
    warnings: List[ConsistencyWarning] = field(default_factory=list)


class ComputeProvisioner(Protocol):
    def provision(
        self,
        device: Device,
        plan: AttachmentPlan,
        management: ManagementNetwork,
        ssh_public_key: str,
    ) -> ProvisionResult:
        """Ensure the device has a disk, boot media and a running domain."""
