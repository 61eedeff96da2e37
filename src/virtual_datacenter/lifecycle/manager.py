"""
Lifecycle manager.

stop / start
Soft stop or start of every domain the VDC owns. Networks and disks stay,
so a stopped VDC comes back exactly as it was.

destroy
1. confirmation unless force
2. stop then remove every owned domain, pulling the plug when a graceful
   stop fails
3. remove every owned network
4. delete the namespace tree; ssh-keys survive unless credential removal
   was confirmed separately, disks survive with keep_disks
5. drop the registry entry

summary / list
Read only views over the registry, the control plane and the namespace.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from virtual_datacenter.controlplane.base import ControlPlane, DomainInfo, DomainState, NetworkInfo
from virtual_datacenter.core.errors import ControlPlaneError, OrchestratorError, ResourceFailure
from virtual_datacenter.core.settings import VdcSettings
from virtual_datacenter.core.types import DeviceTier, Topology, VdcStatus
from virtual_datacenter.fabric.roles import is_compute_tier
from virtual_datacenter.namespace.paths import VdcPaths
from virtual_datacenter.namespace.registry import VdcRecord, VdcRegistry
from virtual_datacenter.topology.loader import load_topology

logger = logging.getLogger(__name__)

Confirm = Callable[[str], bool]


@dataclass
class LifecycleResult:
    vdc: str
    action: str
    succeeded: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failures: List[ResourceFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass
class DestroyResult:
    vdc: str
    aborted: bool = False
    removed_domains: List[str] = field(default_factory=list)
    forced_domains: List[str] = field(default_factory=list)
    removed_networks: List[str] = field(default_factory=list)
    namespace_removed: bool = False
    credentials_removed: bool = False
    disks_kept: bool = False
    unregistered: bool = False
    failures: List[ResourceFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.aborted and not self.failures


@dataclass
class VdcSummary:
    """
    Read only view of one VDC.

    status
    running when any owned domain runs, stopped otherwise, absent when
    nothing is registered or live.

    tiers
    Domain name to tier, taken from the namespace copy of the topology.
    """

    name: str
    status: str
    record: Optional[VdcRecord] = None
    domains: List[DomainInfo] = field(default_factory=list)
    networks: List[NetworkInfo] = field(default_factory=list)
    disks: List[Path] = field(default_factory=list)
    disk_usage_bytes: int = 0
    namespace_dir: Optional[Path] = None
    tiers: Dict[str, DeviceTier] = field(default_factory=dict)
    topology: Optional[Topology] = None

    @property
    def running_domains(self) -> int:
        return sum(1 for d in self.domains if d.running)

    def domains_in(self, tier_family: str) -> List[DomainInfo]:
        """tier_family is hypervisor or switch."""
        out = []
        for dom in self.domains:
            tier = self.tiers.get(dom.name)
            if tier is None:
                continue
            if (tier_family == "hypervisor") == is_compute_tier(tier):
                out.append(dom)
        return out


class LifecycleManager:
    def __init__(self, settings: VdcSettings, registry: VdcRegistry, control_plane: ControlPlane) -> None:
        self._settings = settings
        self._registry = registry
        self._cp = control_plane

    def paths_for(self, vdc: str) -> VdcPaths:
        return VdcPaths(self._settings.project_root, vdc)

    def owned_domains(self, vdc: str) -> List[DomainInfo]:
        return self._cp.list_domains(f"{vdc}-")

    def owned_networks(self, vdc: str) -> List[NetworkInfo]:
        return self._cp.list_networks(f"{vdc}-")

    def stop(self, vdc: str) -> LifecycleResult:
        result = LifecycleResult(vdc=vdc, action="stop")
        for dom in self.owned_domains(vdc):
            if dom.state == DomainState.shut_off:
                result.skipped.append(dom.name)
                continue
            try:
                self._cp.stop_domain(dom.name)
                result.succeeded.append(dom.name)
                logger.info("stopped %s", dom.name)
            except ControlPlaneError as exc:
                result.failures.append(ResourceFailure.from_error(exc, stage="stop", resource=dom.name))
        if self._registry.get(vdc) is not None:
            self._registry.set_status(vdc, VdcStatus.stopped)
        return result

    def start(self, vdc: str) -> LifecycleResult:
        result = LifecycleResult(vdc=vdc, action="start")
        for dom in self.owned_domains(vdc):
            if dom.running:
                result.skipped.append(dom.name)
                continue
            try:
                self._cp.start_domain(dom.name)
                result.succeeded.append(dom.name)
                logger.info("started %s", dom.name)
            except ControlPlaneError as exc:
                result.failures.append(ResourceFailure.from_error(exc, stage="start", resource=dom.name))
        if self._registry.get(vdc) is not None:
            self._registry.set_status(vdc, VdcStatus.running if result.ok else VdcStatus.degraded)
        return result

    def destroy(
        self,
        vdc: str,
        force: bool = False,
        confirm: Optional[Confirm] = None,
        remove_credentials: bool = False,
        confirm_credentials: Optional[Confirm] = None,
        keep_disks: bool = False,
    ) -> DestroyResult:
        """
        Tear a VDC down.

        Credentials are only removed when remove_credentials is set and
        confirm_credentials agrees. force skips the main confirmation only.
        """
        result = DestroyResult(vdc=vdc)
        paths = self.paths_for(vdc)

        if not force:
            if confirm is None or not confirm(f"Destroy every resource of vdc {vdc}?"):
                logger.info("destroy of vdc %s aborted", vdc)
                result.aborted = True
                return result

        for dom in self.owned_domains(vdc):
            try:
                if dom.state != DomainState.shut_off:
                    try:
                        self._cp.stop_domain(dom.name)
                    except ControlPlaneError as exc:
                        logger.warning("graceful stop of %s failed (%s), forcing", dom.name, exc.message)
                        self._cp.stop_domain(dom.name, force=True)
                        result.forced_domains.append(dom.name)
                self._cp.destroy_domain(dom.name)
                result.removed_domains.append(dom.name)
                logger.info("removed domain %s", dom.name)
            except ControlPlaneError as exc:
                result.failures.append(ResourceFailure.from_error(exc, stage="destroy", resource=dom.name))

        for net in self.owned_networks(vdc):
            try:
                self._cp.destroy_network(net.name)
                result.removed_networks.append(net.name)
                logger.info("removed network %s", net.name)
            except ControlPlaneError as exc:
                result.failures.append(ResourceFailure.from_error(exc, stage="destroy", resource=net.name))

        drop_keys = False
        if remove_credentials and paths.ssh_dir.exists():
            drop_keys = confirm_credentials is not None and confirm_credentials(
                f"Remove ssh keys of vdc {vdc} in {paths.ssh_dir}?"
            )

        keep: List[str] = []
        if not drop_keys:
            keep.append(paths.ssh_dir.name)
        if keep_disks:
            keep.append(paths.disks_dir.name)
            result.disks_kept = paths.disks_dir.exists()

        try:
            had_keys = paths.ssh_dir.exists()
            paths.remove(keep=keep)
            result.namespace_removed = True
            result.credentials_removed = had_keys and not paths.ssh_dir.exists()
        except OSError as exc:
            result.failures.append(
                ResourceFailure(stage="destroy", resource=str(paths.base_dir), message=exc.strerror or str(exc))
            )

        result.unregistered = self._registry.remove(vdc)
        return result

    def _load_topology(self, paths: VdcPaths) -> Optional[Topology]:
        if not paths.topology_file.exists():
            return None
        try:
            return load_topology(paths.topology_file, name=paths.vdc)
        except OrchestratorError as exc:
            logger.warning("cannot read %s: %s", paths.topology_file, exc)
            return None

    def summary(self, vdc: str) -> VdcSummary:
        paths = self.paths_for(vdc)
        record = self._registry.get(vdc)
        domains = self.owned_domains(vdc)
        networks = self.owned_networks(vdc)

        if any(d.running for d in domains):
            status = VdcStatus.running.value
        elif record is None and not domains and not networks and not paths.exists():
            status = "absent"
        else:
            status = VdcStatus.stopped.value

        topology = self._load_topology(paths)
        tiers: Dict[str, DeviceTier] = {}
        if topology is not None:
            tiers = {paths.domain_name(d.name): d.tier for d in topology.devices}

        return VdcSummary(
            name=vdc,
            status=status,
            record=record,
            domains=domains,
            networks=networks,
            disks=paths.list_disks(),
            disk_usage_bytes=paths.disk_usage(),
            namespace_dir=paths.base_dir if paths.exists() else None,
            tiers=tiers,
            topology=topology,
        )

    def list(self) -> List[VdcSummary]:
        return [self.summary(rec.name) for rec in self._registry.list()]
