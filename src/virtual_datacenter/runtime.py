"""
Runtime.

This is the composition layer of the system.
It wires registry, control plane, disk tool, boot media and key generator
into the orchestrator, the lifecycle manager and the reconciler.

Core components take their collaborators as arguments and never build them.
Runtime handles environment configuration.

Two factories
from_settings  libvirt bindings, qemu-img, genisoimage and ssh-keygen
in_memory      in-memory control plane and fakes, nothing leaves the process
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from virtual_datacenter.controlplane.base import ControlPlane, DiskTool
from virtual_datacenter.controlplane.disks import QemuImgDiskTool
from virtual_datacenter.controlplane.mock import InMemoryControlPlane, InMemoryDiskTool
from virtual_datacenter.core.errors import ValidationError
from virtual_datacenter.core.settings import VdcSettings
from virtual_datacenter.core.types import Topology
from virtual_datacenter.lifecycle.manager import LifecycleManager
from virtual_datacenter.namespace.paths import VdcPaths
from virtual_datacenter.namespace.registry import VdcRegistry
from virtual_datacenter.orchestrator.pipeline import DeploymentOrchestrator
from virtual_datacenter.orchestrator.verification import ReachabilityCheck
from virtual_datacenter.provision.base import BootMediaBuilder, KeyGenerator
from virtual_datacenter.provision.credentials import SshKeygen
from virtual_datacenter.provision.media import IsoMediaBuilder
from virtual_datacenter.provision.mock import FakeMediaBuilder, StaticKeyGenerator
from virtual_datacenter.reconcile.orphans import Reconciler
from virtual_datacenter.topology.loader import load_topology

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: VdcSettings
    registry: VdcRegistry
    control_plane: ControlPlane
    disk_tool: DiskTool
    media: BootMediaBuilder
    keys: KeyGenerator
    reachability: Optional[ReachabilityCheck] = None

    @classmethod
    def from_settings(cls, settings: VdcSettings) -> "Runtime":
        # the libvirt bindings are only needed against a real host
        from virtual_datacenter.controlplane.libvirt_adapter import LibvirtConfig, LibvirtControlPlane

        logger.debug("runtime on %s, project root %s", settings.libvirt_uri, settings.project_root)
        return cls(
            settings=settings,
            registry=VdcRegistry(settings.registry_path, settings.registry),
            control_plane=LibvirtControlPlane(LibvirtConfig(uri=settings.libvirt_uri)),
            disk_tool=QemuImgDiskTool(),
            media=IsoMediaBuilder(),
            keys=SshKeygen(),
        )

    @classmethod
    def in_memory(cls, settings: VdcSettings) -> "Runtime":
        return cls(
            settings=settings,
            registry=VdcRegistry(settings.registry_path, settings.registry),
            control_plane=InMemoryControlPlane(),
            disk_tool=InMemoryDiskTool(),
            media=FakeMediaBuilder(),
            keys=StaticKeyGenerator(),
        )

    def paths_for(self, vdc: str) -> VdcPaths:
        return VdcPaths(self.settings.project_root, vdc)

    def orchestrator(self) -> DeploymentOrchestrator:
        return DeploymentOrchestrator(
            settings=self.settings,
            registry=self.registry,
            control_plane=self.control_plane,
            disk_tool=self.disk_tool,
            media=self.media,
            keys=self.keys,
            reachability=self.reachability,
        )

    def lifecycle(self) -> LifecycleManager:
        return LifecycleManager(self.settings, self.registry, self.control_plane)

    def reconciler(self, vdc: str) -> Reconciler:
        return Reconciler(self.paths_for(vdc), self.control_plane)

    def resolve_topology(self, vdc: str, topology_file: Optional[Path] = None) -> Topology:
        """
        Load the topology for a VDC.

        An explicit file wins. Otherwise the copy kept in the VDC namespace
        by the last deployment is used.
        """
        if topology_file is not None:
            return load_topology(topology_file, name=vdc, default_resources=self.settings.default_resources)
        stored = self.paths_for(vdc).topology_file
        if not stored.exists():
            raise ValidationError([f"vdc {vdc} has no stored topology, pass --topology"])
        return load_topology(stored, name=vdc, default_resources=self.settings.default_resources)
