"""
Fabric graph.

This module converts a parsed Topology into a graph representation that
validators and reports can reason about.

Design goals
1. Keep this deterministic and simple.
2. Never decide anything about segments or slots here, that is the builder's job.
3. Make it easy to attach evidence to validation outputs.

What is a FabricGraph
- nodes: device name -> Device
- adjacency: device name -> list of edges

Every cable yields one edge in each direction. Cables naming undeclared
devices are skipped; the validator reports those as errors before the graph
is ever built for real work.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List

from virtual_datacenter.core.types import Device, DeviceTier, Topology
from virtual_datacenter.fabric.roles import allowed_neighbors, tier_label, uplink_tier


@dataclass(frozen=True)
class GraphEdge:
    """
    GraphEdge represents one adjacency entry.

    We carry:
    - local interface
    - peer device name
    - peer interface
    - cable index, which also names the segment
    """

    local_intf: str
    peer_device: str
    peer_intf: str
    cable_index: int


@dataclass
class FabricGraph:
    """
    FabricGraph is the in memory topology.

    nodes maps name to Device.
    adjacency maps name to a list of GraphEdge for that node.
    """

    nodes: Dict[str, Device]
    adjacency: Dict[str, List[GraphEdge]] = field(default_factory=dict)

    def edges_from(self, device: str) -> List[GraphEdge]:
        """Return the outgoing edges for a device name."""
        return self.adjacency.get(device, [])

    def has_device(self, device: str) -> bool:
        """Return True if a device name exists in nodes."""
        return device in self.nodes

    def neighbor_tiers(self, device: str) -> List[DeviceTier]:
        return [self.nodes[e.peer_device].tier for e in self.edges_from(device) if e.peer_device in self.nodes]


def build_fabric_graph(topology: Topology) -> FabricGraph:
    """Build a FabricGraph with one edge per direction per cable."""

    nodes = {d.name: d for d in topology.devices}
    g = FabricGraph(nodes=nodes, adjacency={name: [] for name in nodes})

    for cable in topology.cables:
        src, dst = cable.source, cable.destination
        if src.device not in nodes or dst.device not in nodes:
            continue
        g.adjacency[src.device].append(
            GraphEdge(local_intf=src.interface, peer_device=dst.device, peer_intf=dst.interface, cable_index=cable.index)
        )
        g.adjacency[dst.device].append(
            GraphEdge(local_intf=dst.interface, peer_device=src.device, peer_intf=src.interface, cable_index=cable.index)
        )

    return g


@dataclass
class TopologyValidationResult:
    """
    Result of topology validation.

    ok means no blocking errors.
    errors are blocking.
    warnings are non blocking but important signals.
    evidence is a structured dictionary that can be shown in reports.
    """

    ok: bool
    errors: List[str]
    warnings: List[str]
    evidence: Dict[str, object]


def check_tier_sanity(g: FabricGraph) -> TopologyValidationResult:
    """
    Check tier invariants of a leaf and spine fabric.

    Everything here is a warning. Partial fabrics are valid while a topology
    is being grown, so nothing in this check blocks a deployment.

    Checks
    1. Every device has at least one cable.
    2. Every cable joins tiers that normally meet, for example hypervisor to leaf.
    3. When the upper tier exists, every device has at least one uplink into it.
    """

    warnings: List[str] = []
    evidence: Dict[str, object] = {}

    counts = {tier.value: 0 for tier in DeviceTier}
    for dev in g.nodes.values():
        counts[dev.tier.value] += 1
    evidence["device_counts"] = counts

    neighbor_evidence: Dict[str, object] = {}
    for name, dev in g.nodes.items():
        edges = g.edges_from(name)
        tiers = g.neighbor_tiers(name)
        neighbor_evidence[name] = {
            "cables": len(edges),
            "neighbor_tiers": sorted({t.value for t in tiers}),
        }

        if not edges:
            warnings.append(f"{tier_label(dev.tier)} {name} has no cables")
            continue

        unexpected = sorted(
            {e.peer_device for e in edges if e.peer_device in g.nodes and g.nodes[e.peer_device].tier not in allowed_neighbors(dev.tier)}
        )
        if unexpected:
            warnings.append(f"{tier_label(dev.tier)} {name} is cabled to unexpected tiers: {unexpected}")

        up = uplink_tier(dev.tier)
        if up is not None and counts[up.value] > 0 and up not in tiers:
            warnings.append(f"{tier_label(dev.tier)} {name} has no uplink to any {tier_label(up)}")

    evidence["neighbors"] = neighbor_evidence
    return TopologyValidationResult(ok=True, errors=[], warnings=warnings, evidence=evidence)
