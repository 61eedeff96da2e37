"""
Core types.

This file defines the shared data structures used across the engine.

Important design choice
The topology document is parsed once into these typed records.
Every other module works on Topology, Device and Cable objects and never
looks at the raw YAML again.

Naming
Device names are the names used in the topology document.
Control plane names are always derived from them by the namespace layer,
never stored on the records here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from ipaddress import IPv4Address, IPv4Interface, IPv4Network
from typing import Any, Dict, List, Optional


class DeviceTier(str, Enum):
    """
    Device tiers in a simulated fabric.

    hypervisor
      Compute node running a routing daemon on its uplinks.

    leaf
      First switch tier, hypervisors attach here.

    spine
      Aggregation tier above the leaves.

    superspine
      Optional third tier for larger fabrics.
    """

    hypervisor = "hypervisor"
    leaf = "leaf"
    spine = "spine"
    superspine = "superspine"


SWITCH_TIERS = (DeviceTier.leaf, DeviceTier.spine, DeviceTier.superspine)


class VdcStatus(str, Enum):
    """
    Registry status of a VDC.

    created
      Registered and namespace materialized, nothing deployed yet.

    running
      Last deployment finished without failures.

    degraded
      Last deployment finished with per resource failures.

    stopped
      Domains were shut down by the lifecycle manager.
    """

    created = "created"
    running = "running"
    degraded = "degraded"
    stopped = "stopped"


@dataclass(frozen=True)
class Interface:
    """
    A data interface declared on a device.

    position is the 0 based index in the device's interface list.
    It decides the attachment slot and therefore the guest interface name.
    """

    name: str
    position: int


@dataclass(frozen=True)
class ComputeResources:
    """Compute sizing of one domain."""

    vcpus: int
    memory_mb: int
    disk_gb: int


@dataclass(frozen=True)
class AdditionalDisk:
    """Extra blank disk attached to a hypervisor after its boot disk."""

    name: str
    size_gb: int
    format: str = "qcow2"


@dataclass
class Device:
    """
    A hypervisor or a switch.

    router_id and asn are the routing identity used by the generated BGP config.
    management_address carries its prefix length so the boot bundle can
    render a static address without consulting the topology again.
    """

    name: str
    tier: DeviceTier
    router_id: IPv4Address
    asn: int
    management_address: IPv4Interface
    resources: ComputeResources
    interfaces: List[Interface] = field(default_factory=list)
    additional_disks: List[AdditionalDisk] = field(default_factory=list)
    ports: Optional[int] = None

    @property
    def is_switch(self) -> bool:
        return self.tier in SWITCH_TIERS

    def interface(self, name: str) -> Optional[Interface]:
        """Return the declared interface with this name, or None."""
        for intf in self.interfaces:
            if intf.name == name:
                return intf
        return None


@dataclass(frozen=True)
class CableEndpoint:
    device: str
    interface: str

    def __str__(self) -> str:
        return f"{self.device}:{self.interface}"


@dataclass(frozen=True)
class Cable:
    """
    One point to point cable.

    index is the position in the document's cabling list.
    The segment carrying this cable is named after it, so reordering the
    cabling list renames segments.
    """

    index: int
    source: CableEndpoint
    destination: CableEndpoint
    description: str = ""

    def endpoints(self) -> tuple[CableEndpoint, CableEndpoint]:
        return (self.source, self.destination)

    def touches(self, device: str, interface: str) -> bool:
        """Return True if (device, interface) is either endpoint."""
        for ep in self.endpoints():
            if ep.device == device and ep.interface == interface:
                return True
        return False

    def peer_of(self, device: str, interface: str) -> Optional[CableEndpoint]:
        if self.source.device == device and self.source.interface == interface:
            return self.destination
        if self.destination.device == device and self.destination.interface == interface:
            return self.source
        return None


@dataclass(frozen=True)
class ManagementNetwork:
    """
    Management network parameters of a VDC.

    The gateway is the host side of the NAT network.
    DHCP is only used for devices booted without a static address.
    """

    subnet: IPv4Network
    gateway: IPv4Address
    dhcp_start: IPv4Address
    dhcp_end: IPv4Address

    @classmethod
    def for_subnet(
        cls,
        subnet: IPv4Network,
        gateway: Optional[IPv4Address] = None,
        dhcp_first: int = 50,
        dhcp_last: int = 200,
    ) -> "ManagementNetwork":
        base = subnet.network_address
        return cls(
            subnet=subnet,
            gateway=gateway or base + 1,
            dhcp_start=base + dhcp_first,
            dhcp_end=base + dhcp_last,
        )

    @property
    def netmask(self) -> IPv4Address:
        return self.subnet.netmask


@dataclass(frozen=True)
class ValidationPolicy:
    """
    Duplicate detection switches from the document's validation section.

    All checks are on unless the document turns them off.
    """

    check_duplicate_ips: bool = True
    check_router_id_uniqueness: bool = True
    check_asn_uniqueness: bool = True


@dataclass
class Topology:
    """
    Parsed topology document.

    name
    The VDC name. A name passed on the command line overrides the document.

    management
    None when the document leaves subnet selection to the allocator.

    document
    The raw mapping as loaded, kept so the namespace copy can be rewritten
    with the effective name and subnet.
    """

    name: str
    devices: List[Device]
    cables: List[Cable]
    management: Optional[ManagementNetwork] = None
    validation: ValidationPolicy = field(default_factory=ValidationPolicy)
    document: Dict[str, Any] = field(default_factory=dict)

    def device(self, name: str) -> Optional[Device]:
        for dev in self.devices:
            if dev.name == name:
                return dev
        return None

    def by_tier(self, tier: DeviceTier) -> List[Device]:
        return [d for d in self.devices if d.tier == tier]

    @property
    def hypervisors(self) -> List[Device]:
        return self.by_tier(DeviceTier.hypervisor)

    @property
    def switches(self) -> List[Device]:
        return [d for d in self.devices if d.is_switch]
