"""
Orphan detection.

Compares what the topology declares with what the control plane and the
namespace directory actually hold for one VDC.

Owned resources
A live domain or network is owned when its name carries the {vdc}- prefix.
The registry never holds two VDC names where one is a dash prefix of the
other, so the prefix alone is exact.
A disk file is owned when a live domain has it attached, or when it is the
boot or additional disk path of a declared device whose domain is live.
Ownership is an exact path match, never a parse of the file name, so
devices such as hv1 and hv1-b or hv1.rack1 cannot claim each other.

Report
orphaned_*  owned and live, but not declared
missing_*   declared, but not live
orphaned_disks  files in disks/ without an owning live domain

Removal needs a confirmation or force. Every orphan is removed on its own;
one failure is recorded and the rest still go.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set

from virtual_datacenter.controlplane.base import ControlPlane, DomainInfo
from virtual_datacenter.core.errors import ConsistencyWarning, ControlPlaneError, ResourceFailure
from virtual_datacenter.core.types import Topology
from virtual_datacenter.namespace.paths import VdcPaths

logger = logging.getLogger(__name__)

Confirm = Callable[[str], bool]


@dataclass
class OrphanReport:
    vdc: str
    orphaned_domains: List[str] = field(default_factory=list)
    missing_domains: List[str] = field(default_factory=list)
    orphaned_networks: List[str] = field(default_factory=list)
    missing_networks: List[str] = field(default_factory=list)
    orphaned_disks: List[Path] = field(default_factory=list)

    @property
    def orphan_count(self) -> int:
        return len(self.orphaned_domains) + len(self.orphaned_networks) + len(self.orphaned_disks)

    @property
    def clean(self) -> bool:
        return self.orphan_count == 0

    def warnings(self) -> List[ConsistencyWarning]:
        out: List[ConsistencyWarning] = []
        for name in self.orphaned_domains:
            out.append(ConsistencyWarning("reconcile", name, "domain not declared in topology"))
        for name in self.orphaned_networks:
            out.append(ConsistencyWarning("reconcile", name, "network not declared in topology"))
        for path in self.orphaned_disks:
            out.append(ConsistencyWarning("reconcile", path.name, "disk without an owning domain"))
        for name in self.missing_domains:
            out.append(ConsistencyWarning("reconcile", name, "declared domain is not live"))
        for name in self.missing_networks:
            out.append(ConsistencyWarning("reconcile", name, "declared network is not live"))
        return out

    def describe(self) -> str:
        return (
            f"{len(self.orphaned_domains)} domains, {len(self.orphaned_networks)} networks, "
            f"{len(self.orphaned_disks)} disks"
        )


@dataclass
class CleanupResult:
    aborted: bool = False
    removed_domains: List[str] = field(default_factory=list)
    removed_networks: List[str] = field(default_factory=list)
    removed_disks: List[Path] = field(default_factory=list)
    failures: List[ResourceFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.aborted and not self.failures


def owned_disks(paths: VdcPaths, topology: Topology, live: Iterable[DomainInfo]) -> Set[Path]:
    live = list(live)
    live_names = {d.name for d in live}
    owned: Set[Path] = {Path(source) for d in live for source in d.disks}
    for device in topology.devices:
        if paths.domain_name(device.name) not in live_names:
            continue
        owned.add(paths.disk_path(device.name))
        owned.update(paths.extra_disk_path(device.name, d.name, d.format) for d in device.additional_disks)
    return owned


class Reconciler:
    def __init__(self, paths: VdcPaths, control_plane: ControlPlane) -> None:
        self._paths = paths
        self._cp = control_plane

    def live_domains(self) -> List[DomainInfo]:
        return self._cp.list_domains(self._paths.prefix)

    def live_networks(self) -> List[str]:
        return [n.name for n in self._cp.list_networks(self._paths.prefix)]

    def detect(self, topology: Topology) -> OrphanReport:
        expected_domains: Set[str] = {self._paths.domain_name(d.name) for d in topology.devices}
        expected_networks: Set[str] = {self._paths.mgmt_network_name}
        expected_networks.update(self._paths.segment_name(c.index) for c in topology.cables)

        live_infos = self.live_domains()
        live_domains = [d.name for d in live_infos]
        live_networks = self.live_networks()

        report = OrphanReport(vdc=self._paths.vdc)
        report.orphaned_domains = sorted(set(live_domains) - expected_domains)
        report.missing_domains = sorted(expected_domains - set(live_domains))
        report.orphaned_networks = sorted(set(live_networks) - expected_networks)
        report.missing_networks = sorted(expected_networks - set(live_networks))
        owned = owned_disks(self._paths, topology, live_infos)
        report.orphaned_disks = [p for p in self._paths.list_disks() if p not in owned]

        logger.info("vdc %s orphan scan: %s", self._paths.vdc, report.describe())
        return report

    def cleanup(
        self,
        report: OrphanReport,
        confirm: Optional[Confirm] = None,
        force: bool = False,
    ) -> CleanupResult:
        """
        Remove every orphan in the report.

        Without force, confirm is asked once with a summary. A missing
        callback or a negative answer aborts without touching anything.
        """
        result = CleanupResult()
        if report.clean:
            return result
        if not force:
            prompt = f"Remove {report.describe()} orphaned from vdc {report.vdc}?"
            if confirm is None or not confirm(prompt):
                logger.info("orphan cleanup for vdc %s aborted", report.vdc)
                result.aborted = True
                return result

        for name in report.orphaned_domains:
            try:
                info = self._cp.inspect_domain(name)
                if info is not None and info.running:
                    self._cp.stop_domain(name, force=True)
                self._cp.destroy_domain(name)
                result.removed_domains.append(name)
                logger.info("removed orphaned domain %s", name)
            except ControlPlaneError as exc:
                result.failures.append(ResourceFailure.from_error(exc, stage="reconcile", resource=name))

        for name in report.orphaned_networks:
            try:
                self._cp.destroy_network(name)
                result.removed_networks.append(name)
                logger.info("removed orphaned network %s", name)
            except ControlPlaneError as exc:
                result.failures.append(ResourceFailure.from_error(exc, stage="reconcile", resource=name))

        for path in report.orphaned_disks:
            try:
                path.unlink()
                result.removed_disks.append(path)
                logger.info("removed orphaned disk %s", path)
            except OSError as exc:
                result.failures.append(
                    ResourceFailure(stage="reconcile", resource=str(path), message=exc.strerror or str(exc))
                )

        return result
