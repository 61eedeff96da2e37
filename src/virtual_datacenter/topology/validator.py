"""
Topology validator.

Checks run in a fixed order. A failing group stops the run so later checks
never report noise caused by an earlier problem.

1. AS numbers are within 1..4294967295. Stops at the first bad device.
2. Duplicates, collected over one full scan:
   device names, interface names within a device, router ids, management
   addresses, AS numbers. The last three follow the document's validation
   switches. Management addresses outside the declared subnet are reported
   in the same scan.
3. Cabling. Every endpoint names a declared device and interface, and no
   interface is used by two cables. Stops at the first bad cable.

Tier sanity from the fabric graph is reported as warnings only.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Tuple

from virtual_datacenter.core.errors import ValidationError
from virtual_datacenter.core.types import Topology
from virtual_datacenter.fabric.graph import TopologyValidationResult, build_fabric_graph, check_tier_sanity

logger = logging.getLogger(__name__)

ASN_MIN = 1
ASN_MAX = 4294967295


def _check_asn_range(topology: Topology) -> List[str]:
    for dev in topology.devices:
        if not ASN_MIN <= dev.asn <= ASN_MAX:
            return [f"device {dev.name}: asn {dev.asn} outside {ASN_MIN}-{ASN_MAX}"]
    return []


def _duplicates(pairs: List[Tuple[str, str]], what: str) -> List[str]:
    seen: Dict[str, str] = {}
    errors: List[str] = []
    for key, owner in pairs:
        if key in seen:
            errors.append(f"duplicate {what} {key}: devices {seen[key]} and {owner}")
        else:
            seen[key] = owner
    return errors


def _check_duplicates(topology: Topology) -> List[str]:
    policy = topology.validation
    errors: List[str] = []

    errors += _duplicates([(d.name, d.name) for d in topology.devices], "device name")

    for dev in topology.devices:
        names: Dict[str, int] = {}
        for intf in dev.interfaces:
            if intf.name in names:
                errors.append(f"device {dev.name}: interface {intf.name} declared twice")
            names[intf.name] = intf.position

    if policy.check_router_id_uniqueness:
        errors += _duplicates([(str(d.router_id), d.name) for d in topology.devices], "router_id")

    if policy.check_duplicate_ips:
        errors += _duplicates(
            [(str(d.management_address.ip), d.name) for d in topology.devices],
            "management ip",
        )

    if policy.check_asn_uniqueness:
        errors += _duplicates([(str(d.asn), d.name) for d in topology.devices], "asn")

    if topology.management is not None:
        subnet = topology.management.subnet
        for dev in topology.devices:
            if dev.management_address.ip not in subnet:
                errors.append(f"device {dev.name}: management ip {dev.management_address.ip} outside {subnet}")
            if dev.management_address.ip == topology.management.gateway:
                errors.append(f"device {dev.name}: management ip {dev.management_address.ip} is the gateway")

    return errors


def _check_cabling(topology: Topology) -> List[str]:
    used: Dict[Tuple[str, str], int] = {}
    for cable in topology.cables:
        for ep in cable.endpoints():
            dev = topology.device(ep.device)
            if dev is None:
                return [f"cable[{cable.index}]: device {ep.device} is not declared"]
            if dev.interface(ep.interface) is None:
                return [f"cable[{cable.index}]: device {ep.device} has no interface {ep.interface}"]
            key = (ep.device, ep.interface)
            if key in used:
                return [
                    f"cable[{cable.index}]: device {ep.device} interface {ep.interface} "
                    f"already used by cable[{used[key]}]"
                ]
            used[key] = cable.index
    return []


def validate_topology(topology: Topology) -> TopologyValidationResult:
    """Run every check and return a result; never raises."""
    evidence: Dict[str, object] = {
        "devices": len(topology.devices),
        "cables": len(topology.cables),
    }

    for check in (_check_asn_range, _check_duplicates, _check_cabling):
        errors = check(topology)
        if errors:
            evidence["failed_check"] = check.__name__.lstrip("_")
            return TopologyValidationResult(ok=False, errors=errors, warnings=[], evidence=evidence)

    tier = check_tier_sanity(build_fabric_graph(topology))
    evidence.update(tier.evidence)
    return TopologyValidationResult(ok=True, errors=[], warnings=tier.warnings, evidence=evidence)


def ensure_valid(topology: Topology) -> TopologyValidationResult:
    """Validate and raise ValidationError on any blocking error."""
    result = validate_topology(topology)
    if not result.ok:
        raise ValidationError(result.errors)
    for warning in result.warnings:
        logger.warning("topology %s: %s", topology.name, warning)
    return result
