"""
Control plane interfaces.

Goal
Define the virtualization capabilities the engine needs without binding it
to libvirt. The orchestrator, reconciler and lifecycle manager only talk to
these protocols.

Design notes
Two object kinds, domains and networks, each with
{create, start, stop, destroy, list, inspect}.
Storage is a separate narrow protocol since disk images are plain files in
the VDC namespace.

create_domain defines and boots in one step. Attachment order is the order
of DomainSpec.networks, which is how interface slot order is guaranteed.

Adapters raise ControlPlaneError for any failed call. inspect_* returns None
for an unknown name instead of raising.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from ipaddress import IPv4Address, IPv4Interface, IPv4Network
from pathlib import Path
from typing import List, Optional, Protocol, Tuple


class DomainState(str, Enum):
    running = "running"
    shut_off = "shut off"
    paused = "paused"
    other = "other"

    @classmethod
    def parse(cls, raw: str) -> "DomainState":
        text = raw.strip().lower()
        for state in cls:
            if state.value == text:
                return state
        return cls.other


@dataclass(frozen=True)
class DiskAttachment:
    """
    Disk attached to a domain.

    device is disk or cdrom. Attachment order is the list order.
    """

    path: Path
    format: str = "qcow2"
    device: str = "disk"


@dataclass(frozen=True)
class DomainSpec:
    """
    Everything needed to define and start one domain.

    networks
    Network names in attachment order. The management network is first,
    then one entry per attached data interface.
    """

    name: str
    vcpus: int
    memory_mb: int
    disks: Tuple[DiskAttachment, ...]
    networks: Tuple[str, ...]
    os_variant: str = "ubuntu24.04"


@dataclass(frozen=True)
class DomainInfo:
    name: str
    state: DomainState
    vcpus: int = 0
    memory_mb: int = 0
    networks: Tuple[str, ...] = ()
    disks: Tuple[str, ...] = ()

    @property
    def running(self) -> bool:
        return self.state == DomainState.running


@dataclass(frozen=True)
class NetworkSpec:
    """
    Network definition.

    forward_mode
    nat for the management network, none for isolated fabric segments.

    address
    Host side address with prefix, None for segments without layer 3.

    definition_path
    Where adapters that work from definition files keep a copy.
    """

    name: str
    bridge: str
    forward_mode: str = "none"
    address: Optional[IPv4Interface] = None
    dhcp_start: Optional[IPv4Address] = None
    dhcp_end: Optional[IPv4Address] = None
    stp: bool = False
    definition_path: Optional[Path] = None


@dataclass(frozen=True)
class NetworkInfo:
    name: str
    active: bool
    bridge: str = ""
    subnet: Optional[IPv4Network] = None


class ControlPlane(Protocol):
    """
    Domain and network capabilities.

    list_* accept an optional name prefix. An empty prefix lists everything.
    stop_domain with force pulls the plug instead of asking the guest.
    destroy_domain removes the definition; a running domain is forced off first.
    """

    def list_domains(self, prefix: str = "") -> List[DomainInfo]:
        """Return live domains whose name starts with prefix."""

    def inspect_domain(self, name: str) -> Optional[DomainInfo]:
        """Return one domain or None."""

    def create_domain(self, spec: DomainSpec) -> None:
        """Define and start a domain."""

    def start_domain(self, name: str) -> None:
        """Start a defined domain."""

    def stop_domain(self, name: str, force: bool = False) -> None:
        """Shut a domain down."""

    def destroy_domain(self, name: str) -> None:
        """Remove a domain definition."""

    def list_networks(self, prefix: str = "") -> List[NetworkInfo]:
        """Return networks whose name starts with prefix."""

    def inspect_network(self, name: str) -> Optional[NetworkInfo]:
        """Return one network or None."""

    def create_network(self, spec: NetworkSpec) -> None:
        """Define, start and autostart a network."""

    def start_network(self, name: str) -> None:
        """Start a defined network."""

    def stop_network(self, name: str) -> None:
        """Stop a network without removing its definition."""

    def destroy_network(self, name: str) -> None:
        """Stop and remove a network definition."""


class DiskTool(Protocol):
    """Disk image capabilities."""

    def create_derived_disk(self, base: Path, target: Path, size_gb: int) -> None:
        """Create a copy on write disk backed by base."""

    def create_blank_disk(self, target: Path, size_gb: int, fmt: str = "qcow2") -> None:
        """Create an empty disk."""
