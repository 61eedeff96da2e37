"""
Fabric tier helpers.

Why this file exists
The topology carries a tier per device, but fabric logic often asks questions like:

- Is this a switch, meaning it gets the default switch sizing and no extra disks
- Which tiers may a device of this tier be cabled to
- Which tiers sit above this one, meaning its uplinks

We keep these helpers centralized so validation, graph checks and reporting
stay consistent.
"""

from __future__ import annotations

from typing import FrozenSet

from virtual_datacenter.core.types import DeviceTier

_ALLOWED_NEIGHBORS = {
    DeviceTier.hypervisor: frozenset({DeviceTier.leaf}),
    DeviceTier.leaf: frozenset({DeviceTier.hypervisor, DeviceTier.spine}),
    DeviceTier.spine: frozenset({DeviceTier.leaf, DeviceTier.superspine}),
    DeviceTier.superspine: frozenset({DeviceTier.spine}),
}

_UPLINK_TIER = {
    DeviceTier.hypervisor: DeviceTier.leaf,
    DeviceTier.leaf: DeviceTier.spine,
    DeviceTier.spine: DeviceTier.superspine,
}


def is_switch_tier(tier: DeviceTier) -> bool:
    return tier != DeviceTier.hypervisor


def is_compute_tier(tier: DeviceTier) -> bool:
    return tier == DeviceTier.hypervisor


def allowed_neighbors(tier: DeviceTier) -> FrozenSet[DeviceTier]:
    """
    Return the tiers a device of this tier is normally cabled to.

    Leaf to leaf links are absent on purpose: peer links between leaves
    are not part of an unnumbered BGP fabric.
    """
    return _ALLOWED_NEIGHBORS[tier]


def uplink_tier(tier: DeviceTier) -> DeviceTier | None:
    """Return the tier above this one, or None for the top tier."""
    return _UPLINK_TIER.get(tier)


def tier_label(tier: DeviceTier) -> str:
    if tier == DeviceTier.superspine:
        return "super spine"
    return tier.value
