"""
VDC namespace layout.

Every artifact a VDC produces lives under config/vdc-{name}/ and every control
plane object it creates carries the {name}- prefix. This module is the only
place that knows either convention.

Layout
  config/vdc-{name}/
    topology.yaml
    disks/{domain}.qcow2
    disks/{domain}-{extra}.{format}
    cloud-init/{domain}/            meta-data, user-data, network-config
    cloud-init/{domain}-cidata.iso
    bgp-configs/{device}-bgp.conf
    network-xmls/{network}.xml
    ssh-keys/id_rsa, id_rsa.pub

All name and path methods are pure. Only ensure() and remove() touch the disk.
"""

from __future__ import annotations

import hashlib
import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List

from virtual_datacenter.core.errors import ValidationError

logger = logging.getLogger(__name__)

SUBDIRS = ("disks", "cloud-init", "bgp-configs", "network-xmls", "ssh-keys")
MGMT_SUFFIX = "-mgmt"
SEGMENT_INFIX = "-p2p-link-"
NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


def short_bridge(seed: str) -> str:
    """Bridge names are limited to 15 characters by the kernel."""
    return "br" + hashlib.sha1(seed.encode()).hexdigest()[:10]


def check_name(name: str, where: str) -> str:
    """
    Return name if it is usable as a directory and libvirt name.

    VDC and device names end up in config/vdc-{name}/, in domain names and
    in rmtree targets, so a slash, a dot or a leading dash is refused.
    """
    if not NAME_PATTERN.match(name):
        raise ValidationError([f"{where}: invalid name {name!r}, use letters, digits, dash and underscore"])
    return name


@dataclass(frozen=True)
class VdcPaths:
    """
    Paths and control plane names for one VDC.

    root
    Project root. The namespace directory is root/config/vdc-{vdc}.
    """

    root: Path
    vdc: str

    def __post_init__(self) -> None:
        check_name(self.vdc, "vdc")

    # Control plane names.

    @property
    def prefix(self) -> str:
        return f"{self.vdc}-"

    def domain_name(self, device: str) -> str:
        return f"{self.vdc}-{device}"

    def device_from_domain(self, domain: str) -> str:
        return domain[len(self.prefix):]

    @property
    def mgmt_network_name(self) -> str:
        return f"{self.vdc}{MGMT_SUFFIX}"

    def segment_name(self, cable_index: int) -> str:
        return f"{self.vdc}{SEGMENT_INFIX}{cable_index}"

    def bridge_name(self, network: str) -> str:
        return short_bridge(network)

    # Filesystem layout.

    @property
    def base_dir(self) -> Path:
        return self.root / "config" / f"vdc-{self.vdc}"

    @property
    def topology_file(self) -> Path:
        return self.base_dir / "topology.yaml"

    @property
    def disks_dir(self) -> Path:
        return self.base_dir / "disks"

    def disk_path(self, device: str) -> Path:
        return self.disks_dir / f"{self.domain_name(device)}.qcow2"

    def extra_disk_path(self, device: str, disk: str, fmt: str = "qcow2") -> Path:
        return self.disks_dir / f"{self.domain_name(device)}-{disk}.{fmt}"

    @property
    def cloud_init_dir(self) -> Path:
        return self.base_dir / "cloud-init"

    def cloud_init_device_dir(self, device: str) -> Path:
        return self.cloud_init_dir / self.domain_name(device)

    def boot_iso_path(self, device: str) -> Path:
        return self.cloud_init_dir / f"{self.domain_name(device)}-cidata.iso"

    @property
    def routing_dir(self) -> Path:
        return self.base_dir / "bgp-configs"

    def routing_config_path(self, device: str) -> Path:
        return self.routing_dir / f"{device}-bgp.conf"

    @property
    def network_xml_dir(self) -> Path:
        return self.base_dir / "network-xmls"

    def network_xml_path(self, network: str) -> Path:
        return self.network_xml_dir / f"{network}.xml"

    @property
    def ssh_dir(self) -> Path:
        return self.base_dir / "ssh-keys"

    @property
    def private_key(self) -> Path:
        return self.ssh_dir / "id_rsa"

    @property
    def public_key(self) -> Path:
        return self.ssh_dir / "id_rsa.pub"

    # Side effects.

    def exists(self) -> bool:
        return self.base_dir.is_dir()

    def ensure(self) -> Path:
        """Create the namespace tree. Safe to call repeatedly."""
        for sub in SUBDIRS:
            (self.base_dir / sub).mkdir(parents=True, exist_ok=True)
        return self.base_dir

    def remove(self, keep: Iterable[str] = ()) -> List[Path]:
        """
        Delete the namespace tree.

        keep names subdirectories, such as ssh-keys or disks, that survive
        while the rest of the tree is removed around them.
        Returns the removed top level paths.
        """
        if not self.base_dir.exists():
            return []

        kept = {self.base_dir / name for name in keep}
        if not any(p.exists() for p in kept):
            shutil.rmtree(self.base_dir)
            logger.info("removed namespace %s", self.base_dir)
            return [self.base_dir]

        removed: List[Path] = []
        for child in sorted(self.base_dir.iterdir()):
            if child in kept:
                continue
            if child.is_dir():
                shutil.rmtree(child)
            else:
                child.unlink()
            removed.append(child)
        logger.info("removed namespace %s, kept %s", self.base_dir, sorted(p.name for p in kept if p.exists()))
        return removed

    # Read only views.

    def list_disks(self) -> List[Path]:
        if not self.disks_dir.is_dir():
            return []
        return sorted(p for p in self.disks_dir.iterdir() if p.is_file())

    def list_artifacts(self) -> Dict[str, List[Path]]:
        """Return files per namespace subdirectory."""
        out: Dict[str, List[Path]] = {}
        for sub in SUBDIRS:
            d = self.base_dir / sub
            if d.is_dir():
                out[sub] = sorted(p for p in d.rglob("*") if p.is_file())
            else:
                out[sub] = []
        return out

    def disk_usage(self) -> int:
        """Bytes allocated by files under the namespace."""
        if not self.base_dir.exists():
            return 0
        return sum(p.stat().st_size for p in self.base_dir.rglob("*") if p.is_file())
