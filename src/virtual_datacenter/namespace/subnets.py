"""
Management subnet allocation.

Candidates are scanned in order, {prefix}.10.0/24 first, so successive VDCs
get predictable subnets. A candidate is taken when either source claims it:

- the registry, which records every known VDC
- the live control plane, any network named *-mgmt bound to that subnet

Both sources are consulted because the registry can drift from the host,
for example after a VDC was destroyed by hand.

Reservation happens inside the registry's optimistic update, so two
processes racing for the first free subnet cannot both win.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from ipaddress import IPv4Network
from typing import Iterable, Iterator, List, Optional, Set

from virtual_datacenter.controlplane.base import ControlPlane
from virtual_datacenter.core.errors import AllocationConflict
from virtual_datacenter.core.settings import SubnetScanConfig
from virtual_datacenter.core.types import VdcStatus
from virtual_datacenter.namespace.paths import MGMT_SUFFIX
from virtual_datacenter.namespace.registry import VdcRecord, VdcRegistry, prefix_clash

logger = logging.getLogger(__name__)


def candidate_subnets(scan: SubnetScanConfig) -> Iterator[IPv4Network]:
    for octet in range(scan.first_octet, scan.last_octet + 1):
        yield IPv4Network(f"{scan.prefix}.{octet}.0/24")


def first_free_subnet(used: Iterable[IPv4Network], scan: SubnetScanConfig) -> IPv4Network:
    """Return the first candidate that does not overlap any used subnet."""
    taken = list(used)
    for cand in candidate_subnets(scan):
        if not any(cand.overlaps(u) for u in taken):
            return cand
    raise AllocationConflict(
        f"no free /24 left in {scan.prefix}.{scan.first_octet}-{scan.last_octet}.0",
        stage="namespace",
    )


def _parse(subnet: str) -> Optional[IPv4Network]:
    if not subnet:
        return None
    try:
        return IPv4Network(subnet, strict=False)
    except ValueError:
        logger.warning("ignoring malformed subnet %r in registry", subnet)
        return None


@dataclass
class Reservation:
    """
    Result of reserve().

    created is True when this call added the registry entry.
    """

    record: VdcRecord
    subnet: IPv4Network
    created: bool


class SubnetAllocator:
    def __init__(
        self,
        registry: VdcRegistry,
        control_plane: ControlPlane,
        scan: SubnetScanConfig | None = None,
    ) -> None:
        self._registry = registry
        self._cp = control_plane
        self._scan = scan or SubnetScanConfig()

    def live_subnets(self) -> dict[str, IPv4Network]:
        """Management network name to subnet, for every live *-mgmt network."""
        out: dict[str, IPv4Network] = {}
        for net in self._cp.list_networks():
            if net.name.endswith(MGMT_SUFFIX) and net.subnet is not None:
                out[net.name] = net.subnet
        return out

    def used_subnets(self, exclude_vdc: Optional[str] = None) -> Set[IPv4Network]:
        used: Set[IPv4Network] = set()
        for rec in self._registry.list():
            if rec.name == exclude_vdc:
                continue
            parsed = _parse(rec.management_subnet)
            if parsed is not None:
                used.add(parsed)
        own = f"{exclude_vdc}{MGMT_SUFFIX}" if exclude_vdc else None
        for name, subnet in self.live_subnets().items():
            if name != own:
                used.add(subnet)
        return used

    def next_free(self) -> IPv4Network:
        return first_free_subnet(self.used_subnets(), self._scan)

    def reserve(
        self,
        vdc: str,
        requested: Optional[IPv4Network] = None,
        config_file: str = "",
        require_new: bool = False,
    ) -> Reservation:
        """
        Confirm or reserve the management subnet of a VDC.

        Existing entry
        Its subnet is returned unchanged. A different requested subnet is a
        conflict, never a silent overwrite. With require_new the existing
        entry itself is the conflict.

        No entry
        The requested subnet is used if free, otherwise the first free
        candidate. A live {vdc}-mgmt network left over from an earlier run
        keeps its subnet.
        A name sharing a dash prefix with a registered VDC, such as dc1-a next
        to dc1, is a conflict.
        """
        own_mgmt = f"{vdc}{MGMT_SUFFIX}"
        live = self.live_subnets()
        live_others = [s for name, s in live.items() if name != own_mgmt]
        own_live = live.get(own_mgmt)

        def _reserve(records: List[VdcRecord]) -> Reservation:
            existing = next((r for r in records if r.name == vdc), None)
            if existing is not None:
                if require_new:
                    raise AllocationConflict("vdc already exists", stage="namespace", resource=vdc)
                current = _parse(existing.management_subnet)
                if current is not None:
                    if requested is not None and requested != current:
                        raise AllocationConflict(
                            f"vdc is registered with subnet {current}, refusing {requested}",
                            stage="namespace",
                            resource=vdc,
                        )
                    return Reservation(record=existing, subnet=current, created=False)
            else:
                clash = prefix_clash(vdc, [r.name for r in records])
                if clash is not None:
                    raise AllocationConflict(
                        f"name overlaps the namespace of vdc {clash}", stage="namespace", resource=vdc
                    )

            used: List[IPv4Network] = list(live_others)
            for r in records:
                if r.name == vdc:
                    continue
                parsed = _parse(r.management_subnet)
                if parsed is not None:
                    used.append(parsed)

            if requested is not None:
                clash = next((u for u in used if requested.overlaps(u)), None)
                if clash is not None:
                    raise AllocationConflict(
                        f"subnet {requested} overlaps {clash} already in use",
                        stage="namespace",
                        resource=vdc,
                    )
                subnet = requested
            elif own_live is not None and not any(own_live.overlaps(u) for u in used):
                subnet = own_live
            else:
                subnet = first_free_subnet(used, self._scan)

            if existing is not None:
                existing.management_subnet = str(subnet)
                return Reservation(record=existing, subnet=subnet, created=False)

            record = VdcRecord(
                name=vdc,
                namespace=f"vdc-{vdc}",
                management_subnet=str(subnet),
                status=VdcStatus.created,
                config_file=config_file,
            )
            records.append(record)
            return Reservation(record=record, subnet=subnet, created=True)

        reservation = self._registry.update(_reserve)
        if reservation.created:
            logger.info("reserved management subnet %s for vdc %s", reservation.subnet, vdc)
        return reservation
