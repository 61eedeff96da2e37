"""
Domain deployers.

One deployer per tier family. Both follow the same existence checks, which is
what makes a redeploy incremental:

domain live, disk present    nothing to do
domain live, disk missing    the domain is stale: remove it, rebuild both
domain missing               create disk if missing, boot media, domain

The boot media is rebuilt whenever a domain is created so it always matches
the current attachment plan.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple

from virtual_datacenter.controlplane.base import ControlPlane, DiskAttachment, DiskTool, DomainSpec
from virtual_datacenter.core.errors import ConsistencyWarning
from virtual_datacenter.core.types import AdditionalDisk, Device, ManagementNetwork
from virtual_datacenter.fabric.builder import AttachmentPlan
from virtual_datacenter.namespace.paths import VdcPaths
from virtual_datacenter.provision.base import BootMediaBuilder, ProvisionResult
from virtual_datacenter.provision.configgen import ConfigBundle, render_config_bundle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeployerConfig:
    """
    base_image
    Cloud image every boot disk is derived from.

    user
    Login created by cloud-init with the VDC public key.
    """

    base_image: Path
    os_variant: str = "ubuntu24.04"
    user: str = "ubuntu"


class DomainDeployer:
    """Shared provisioning flow. Subclasses pick extra disks and checks."""

    kind = "device"

    def __init__(
        self,
        paths: VdcPaths,
        control_plane: ControlPlane,
        disk_tool: DiskTool,
        media: BootMediaBuilder,
        config: DeployerConfig,
    ) -> None:
        self._paths = paths
        self._cp = control_plane
        self._disks = disk_tool
        self._media = media
        self._config = config

    def extra_disks(self, device: Device) -> List[AdditionalDisk]:
        return []

    def preflight(self, device: Device, plan: AttachmentPlan) -> List[ConsistencyWarning]:
        return []

    def provision(
        self,
        device: Device,
        plan: AttachmentPlan,
        management: ManagementNetwork,
        ssh_public_key: str,
    ) -> ProvisionResult:
        domain = self._paths.domain_name(device.name)
        disk = self._paths.disk_path(device.name)
        bundle = render_config_bundle(
            device,
            plan,
            management,
            ssh_public_key,
            instance_id=domain,
            user=self._config.user,
        )
        warnings = list(plan.warnings) + self.preflight(device, plan)

        live = self._cp.inspect_domain(domain)
        action = "created"
        if live is not None:
            if disk.exists():
                logger.debug("%s %s already deployed", self.kind, domain)
                return ProvisionResult(device=device.name, domain=domain, action="unchanged", bundle=bundle, warnings=warnings)
            warnings.append(
                ConsistencyWarning(stage="devices", resource=domain, message=f"disk {disk.name} missing, rebuilding domain")
            )
            logger.warning("%s %s has no disk, removing stale domain", self.kind, domain)
            self._cp.destroy_domain(domain)
            action = "recreated"

        disk_attachments = self._materialize_disks(device, disk)
        iso = self._write_boot_media(device, bundle)

        spec = DomainSpec(
            name=domain,
            vcpus=device.resources.vcpus,
            memory_mb=device.resources.memory_mb,
            disks=(*disk_attachments, DiskAttachment(path=iso, format="raw", device="cdrom")),
            networks=plan.networks,
            os_variant=self._config.os_variant,
        )
        self._cp.create_domain(spec)
        logger.info(
            "%s %s %s: %s vcpu, %s MB, %s data interfaces",
            self.kind,
            domain,
            action,
            spec.vcpus,
            spec.memory_mb,
            len(plan.attachments),
        )
        return ProvisionResult(device=device.name, domain=domain, action=action, bundle=bundle, warnings=warnings)

    def _materialize_disks(self, device: Device, disk: Path) -> Tuple[DiskAttachment, ...]:
        if not disk.exists():
            self._disks.create_derived_disk(self._config.base_image, disk, device.resources.disk_gb)

        out = [DiskAttachment(path=disk, format="qcow2")]
        for extra in self.extra_disks(device):
            path = self._paths.extra_disk_path(device.name, extra.name, extra.format)
            if not path.exists():
                self._disks.create_blank_disk(path, extra.size_gb, extra.format)
            out.append(DiskAttachment(path=path, format=extra.format))
        return tuple(out)

    def _write_boot_media(self, device: Device, bundle: ConfigBundle) -> Path:
        seed_dir = self._paths.cloud_init_device_dir(device.name)
        seed_dir.mkdir(parents=True, exist_ok=True)
        files = {}
        for name, content in bundle.files().items():
            path = seed_dir / name
            path.write_text(content, encoding="utf-8")
            files[name] = path
        iso = self._paths.boot_iso_path(device.name)
        self._media.build(files, iso)
        return iso


class HypervisorDeployer(DomainDeployer):
    """Hypervisors carry optional blank data disks after the boot disk."""

    kind = "hypervisor"

    def extra_disks(self, device: Device) -> List[AdditionalDisk]:
        return list(device.additional_disks)


class SwitchDeployer(DomainDeployer):
    """Switches have no extra disks. Cabled interfaces must fit the port count."""

    kind = "switch"

    def preflight(self, device: Device, plan: AttachmentPlan) -> List[ConsistencyWarning]:
        if device.ports is not None and len(plan.attachments) > device.ports:
            return [
                ConsistencyWarning(
                    stage="devices",
                    resource=device.name,
                    message=f"{len(plan.attachments)} cabled interfaces exceed {device.ports} ports",
                )
            ]
        return []
