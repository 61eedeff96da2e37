"""
Fabric builder.

Two invariants drive this module.

1. Every cable gets exactly one isolated segment, and all segments exist
   before any domain that attaches to them is created.
2. A device's Nth declared data interface becomes its Nth data attachment,
   on the segment of the cable that names it. Attachments are never created
   as placeholders and rewired later.

Slot numbering
Slot 0 is the management network, which the guest sees as enp1s0.
Data attachment k (1 based) is seen as enp{k+1}s0. The routing config is
rendered from the same plan, so the names it references are the names the
guest will enumerate.

An interface with no cable, or whose segment is missing from live state, is
skipped with a ConsistencyWarning. Later interfaces then move up one slot and
the plan reports their actual guest names.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from ipaddress import IPv4Interface
from typing import Collection, List, Optional, Tuple

from virtual_datacenter.controlplane.base import ControlPlane, NetworkSpec
from virtual_datacenter.core.errors import ConsistencyWarning, ControlPlaneError, ResourceFailure
from virtual_datacenter.core.types import CableEndpoint, Device, ManagementNetwork, Topology
from virtual_datacenter.namespace.paths import VdcPaths

logger = logging.getLogger(__name__)

UNATTACHED = "unattached"
MGMT_GUEST_INTERFACE = "enp1s0"


def guest_interface_name(slot: int) -> str:
    """Guest name of a PCI slot. Slot 0 is management."""
    return f"enp{slot + 1}s0"


@dataclass(frozen=True)
class InterfaceAttachment:
    """
    One data interface resolved to its segment.

    interface
    Name declared in the topology.

    slot
    1 based data slot, after skipped interfaces are removed.

    guest_name
    Name the guest will assign, derived from slot.
    """

    interface: str
    position: int
    segment: str
    slot: int
    guest_name: str
    peer: Optional[CableEndpoint] = None


@dataclass
class AttachmentPlan:
    device: str
    management_network: str
    attachments: List[InterfaceAttachment] = field(default_factory=list)
    warnings: List[ConsistencyWarning] = field(default_factory=list)

    @property
    def networks(self) -> Tuple[str, ...]:
        """Networks in attachment order, management first."""
        return (self.management_network, *(a.segment for a in self.attachments))

    @property
    def degraded(self) -> bool:
        return bool(self.warnings)


@dataclass
class SegmentReport:
    created: List[str] = field(default_factory=list)
    existing: List[str] = field(default_factory=list)
    started: List[str] = field(default_factory=list)
    failures: List[ResourceFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class FabricBuilder:
    """Creates segments and maps interfaces to them for one VDC."""

    def __init__(self, paths: VdcPaths, control_plane: ControlPlane) -> None:
        self._paths = paths
        self._cp = control_plane

    @property
    def paths(self) -> VdcPaths:
        return self._paths

    def management_spec(self, management: ManagementNetwork) -> NetworkSpec:
        name = self._paths.mgmt_network_name
        return NetworkSpec(
            name=name,
            bridge=self._paths.bridge_name(name),
            forward_mode="nat",
            address=IPv4Interface(f"{management.gateway}/{management.subnet.prefixlen}"),
            dhcp_start=management.dhcp_start,
            dhcp_end=management.dhcp_end,
            stp=True,
            definition_path=self._paths.network_xml_path(name),
        )

    def segment_spec(self, cable_index: int) -> NetworkSpec:
        name = self._paths.segment_name(cable_index)
        return NetworkSpec(
            name=name,
            bridge=self._paths.bridge_name(name),
            forward_mode="none",
            stp=False,
            definition_path=self._paths.network_xml_path(name),
        )

    def segment_names(self, topology: Topology) -> List[str]:
        return [self._paths.segment_name(c.index) for c in topology.cables]

    def ensure_management_network(self, management: ManagementNetwork) -> bool:
        """
        Create the management network when missing, start it when inactive.

        Returns True when something was created. ControlPlaneError propagates:
        without management connectivity no device is reachable.
        """
        spec = self.management_spec(management)
        existing = self._cp.inspect_network(spec.name)
        if existing is not None:
            if existing.subnet is not None and existing.subnet != management.subnet:
                logger.warning(
                    "management network %s is bound to %s, expected %s",
                    spec.name,
                    existing.subnet,
                    management.subnet,
                )
            if not existing.active:
                self._cp.start_network(spec.name)
            return False
        self._cp.create_network(spec)
        logger.info("created management network %s on %s", spec.name, management.subnet)
        return True

    def build_segments(self, topology: Topology) -> SegmentReport:
        """
        Create one isolated segment per cable.

        Existing segments are kept, and started if inactive. No domain is
        touched. A failed segment is recorded and the next one is attempted.
        """
        report = SegmentReport()
        for cable in topology.cables:
            spec = self.segment_spec(cable.index)
            try:
                existing = self._cp.inspect_network(spec.name)
                if existing is not None:
                    report.existing.append(spec.name)
                    if not existing.active:
                        self._cp.start_network(spec.name)
                        report.started.append(spec.name)
                    continue
                self._cp.create_network(spec)
                report.created.append(spec.name)
                logger.info("segment %s: %s <-> %s", spec.name, cable.source, cable.destination)
            except ControlPlaneError as exc:
                logger.error("segment %s failed: %s", spec.name, exc.message)
                report.failures.append(ResourceFailure.from_error(exc, stage="fabric", resource=spec.name))
        return report

    def resolve_interface_segment(self, topology: Topology, device: str, interface: str) -> str:
        """Return the segment carrying (device, interface), or UNATTACHED."""
        for cable in topology.cables:
            if cable.touches(device, interface):
                return self._paths.segment_name(cable.index)
        return UNATTACHED

    def _peer(self, topology: Topology, device: str, interface: str) -> Optional[CableEndpoint]:
        for cable in topology.cables:
            peer = cable.peer_of(device, interface)
            if peer is not None:
                return peer
        return None

    def attachment_plan(
        self,
        topology: Topology,
        device: Device,
        live_segments: Optional[Collection[str]] = None,
    ) -> AttachmentPlan:
        """
        Resolve a device's data interfaces in declared order.

        live_segments
        When given, a segment missing from it is treated like an unattached
        interface. This is the inconsistent state where a segment failed to
        build; the device comes up with fewer interfaces.
        """
        plan = AttachmentPlan(device=device.name, management_network=self._paths.mgmt_network_name)
        slot = 0
        for intf in sorted(device.interfaces, key=lambda i: i.position):
            segment = self.resolve_interface_segment(topology, device.name, intf.name)
            if segment == UNATTACHED:
                plan.warnings.append(
                    ConsistencyWarning(
                        stage="devices",
                        resource=f"{device.name}:{intf.name}",
                        message="interface is not cabled, skipping attachment",
                    )
                )
                continue
            if live_segments is not None and segment not in live_segments:
                plan.warnings.append(
                    ConsistencyWarning(
                        stage="devices",
                        resource=f"{device.name}:{intf.name}",
                        message=f"segment {segment} does not exist, skipping attachment",
                    )
                )
                continue
            slot += 1
            plan.attachments.append(
                InterfaceAttachment(
                    interface=intf.name,
                    position=intf.position,
                    segment=segment,
                    slot=slot,
                    guest_name=guest_interface_name(slot),
                    peer=self._peer(topology, device.name, intf.name),
                )
            )

        return plan
