"""
Runtime settings.

Settings are a frozen dataclass built once by the CLI and passed down.
Library modules never read the environment themselves.

Environment variables
VDC_PROJECT_ROOT   root holding config/ and images/, default current directory
VDC_LIBVIRT_URI    libvirt connection URI
VDC_BASE_IMAGE     file name of the shared cloud image under images/
VDC_SUBNET_PREFIX  first two octets of the management subnet scan, default 192.168
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping, Optional

from virtual_datacenter.core.types import ComputeResources


@dataclass(frozen=True)
class SubnetScanConfig:
    """
    Management subnet scan range.

    Candidates are {prefix}.{octet}.0/24 for octet in first_octet..last_octet.
    """

    prefix: str = "192.168"
    first_octet: int = 10
    last_octet: int = 254


@dataclass(frozen=True)
class RegistryConfig:
    """
    Registry update policy.

    max_attempts
    Optimistic update retries before giving up with AllocationConflict.

    lock_timeout_seconds
    How long to wait for the lock file before treating the attempt as a conflict.
    """

    max_attempts: int = 5
    lock_timeout_seconds: float = 10.0
    retry_delay_seconds: float = 0.2


@dataclass(frozen=True)
class VdcSettings:
    """
    Settings shared by every command.

    project_root
    Directory that contains config/ (registry and namespaces) and images/.

    base_image_name
    Cloud image every device disk is derived from.

    default_resources
    Sizing used when a device omits its resources section.
    """

    project_root: Path = field(default_factory=Path.cwd)
    libvirt_uri: str = "qemu:///system"
    base_image_name: str = "ubuntu-24.04-server-cloudimg-amd64.img"
    os_variant: str = "ubuntu24.04"
    subnets: SubnetScanConfig = field(default_factory=SubnetScanConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    default_resources: ComputeResources = field(
        default_factory=lambda: ComputeResources(vcpus=4, memory_mb=8192, disk_gb=50)
    )
    default_user: str = "ubuntu"

    @property
    def config_dir(self) -> Path:
        return self.project_root / "config"

    @property
    def registry_path(self) -> Path:
        return self.config_dir / "vdc-registry.json"

    @property
    def images_dir(self) -> Path:
        return self.project_root / "images"

    @property
    def base_image(self) -> Path:
        return self.images_dir / self.base_image_name

    def with_root(self, root: Path) -> "VdcSettings":
        return replace(self, project_root=root)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "VdcSettings":
        env = os.environ if environ is None else environ
        settings = cls()

        root = env.get("VDC_PROJECT_ROOT")
        if root:
            settings = replace(settings, project_root=Path(root).expanduser().resolve())

        uri = env.get("VDC_LIBVIRT_URI")
        if uri:
            settings = replace(settings, libvirt_uri=uri)

        image = env.get("VDC_BASE_IMAGE")
        if image:
            settings = replace(settings, base_image_name=image)

        prefix = env.get("VDC_SUBNET_PREFIX")
        if prefix:
            settings = replace(settings, subnets=replace(settings.subnets, prefix=prefix.strip(".")))

        return settings
