"""
Deployment orchestrator.

Fixed order pipeline:

validate -> namespace -> management_network -> fabric -> devices -> routing -> verify

Each stage checks existence before creating anything, so running the whole
pipeline again against a deployed VDC only adds what is missing.

Fatal, the run stops:
- ValidationError in validate
- AllocationConflict in namespace
- any ControlPlaneError in namespace or management_network

Collected, the run continues:
- ControlPlaneError for one segment or one device
- ConsistencyWarning from any stage

Devices are provisioned one at a time in document order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from ipaddress import IPv4Network
from typing import Dict, List, Optional

from virtual_datacenter.controlplane.base import ControlPlane, DiskTool
from virtual_datacenter.core.errors import (
    ConsistencyWarning,
    ControlPlaneError,
    ResourceFailure,
)
from virtual_datacenter.core.settings import VdcSettings
from virtual_datacenter.core.types import Device, ManagementNetwork, Topology, VdcStatus
from virtual_datacenter.fabric.builder import FabricBuilder
from virtual_datacenter.fabric.roles import is_switch_tier
from virtual_datacenter.namespace.paths import VdcPaths
from virtual_datacenter.namespace.registry import VdcRegistry
from virtual_datacenter.namespace.subnets import SubnetAllocator
from virtual_datacenter.orchestrator.verification import (
    ExpectedDomain,
    ReachabilityCheck,
    VerificationOutcome,
    VerificationSpec,
    evaluate_verification,
)
from virtual_datacenter.provision.base import BootMediaBuilder, KeyGenerator, ProvisionResult
from virtual_datacenter.provision.configgen import ConfigBundle
from virtual_datacenter.provision.deployers import (
    DeployerConfig,
    DomainDeployer,
    HypervisorDeployer,
    SwitchDeployer,
)
from virtual_datacenter.topology.loader import bind_management, dump_topology
from virtual_datacenter.topology.validator import ensure_valid

logger = logging.getLogger(__name__)

STAGES = ("validate", "namespace", "management_network", "fabric", "devices", "routing", "verify")


@dataclass
class StageResult:
    name: str
    ok: bool
    summary: str = ""


@dataclass
class DeploymentReport:
    """
    Outcome of one pipeline run.

    devices maps device name to its provisioning action.
    ok is True when nothing failed and verification passed.
    Warnings never make a report fail.
    """

    vdc: str
    subnet: Optional[IPv4Network] = None
    stages: List[StageResult] = field(default_factory=list)
    failures: List[ResourceFailure] = field(default_factory=list)
    warnings: List[ConsistencyWarning] = field(default_factory=list)
    devices: Dict[str, str] = field(default_factory=dict)
    segments_created: List[str] = field(default_factory=list)
    verification: Optional[VerificationOutcome] = None

    @property
    def ok(self) -> bool:
        if self.failures:
            return False
        return self.verification is None or self.verification.ok

    def stage(self, name: str) -> Optional[StageResult]:
        for s in self.stages:
            if s.name == name:
                return s
        return None


class DeploymentOrchestrator:
    """Runs the deployment pipeline for one VDC at a time."""

    def __init__(
        self,
        settings: VdcSettings,
        registry: VdcRegistry,
        control_plane: ControlPlane,
        disk_tool: DiskTool,
        media: BootMediaBuilder,
        keys: KeyGenerator,
        reachability: Optional[ReachabilityCheck] = None,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._cp = control_plane
        self._disks = disk_tool
        self._media = media
        self._keys = keys
        self._reachability = reachability
        self._subnets = SubnetAllocator(registry, control_plane, settings.subnets)

    def paths_for(self, vdc: str) -> VdcPaths:
        return VdcPaths(self._settings.project_root, vdc)

    def deploy(
        self,
        topology: Topology,
        requested_subnet: Optional[IPv4Network] = None,
        require_new: bool = False,
    ) -> DeploymentReport:
        """
        Run the pipeline.

        requested_subnet
        Explicit subnet, a conflict is fatal. Without it the subnet declared in
        the document is preferred when free, else the first free one is used.

        require_new
        Refuse to run for a VDC that is already registered.
        """
        report = DeploymentReport(vdc=topology.name)
        paths = self.paths_for(topology.name)
        builder = FabricBuilder(paths, self._cp)

        # validate
        result = ensure_valid(topology)
        for w in result.warnings:
            report.warnings.append(ConsistencyWarning(stage="validate", resource=topology.name, message=w))
        report.stages.append(
            StageResult("validate", True, f"{len(topology.devices)} devices, {len(topology.cables)} cables")
        )

        # namespace
        management, public_key = self._prepare_namespace(topology, paths, requested_subnet, require_new, report)
        topology = bind_management(topology, management)
        dump_topology(topology, paths.topology_file)
        report.subnet = management.subnet

        # management_network
        try:
            created = builder.ensure_management_network(management)
        except ControlPlaneError as exc:
            exc.stage = "management_network"
            raise
        report.stages.append(
            StageResult("management_network", True, "created" if created else "exists")
        )

        # fabric
        seg = builder.build_segments(topology)
        report.segments_created = list(seg.created)
        report.failures.extend(seg.failures)
        report.stages.append(
            StageResult(
                "fabric",
                seg.ok,
                f"{len(seg.created)} created, {len(seg.existing)} existing, {len(seg.failures)} failed",
            )
        )

        # devices
        bundles = self._provision_devices(topology, paths, builder, management, public_key, report)

        # routing
        written = self._write_routing(paths, bundles)
        report.stages.append(StageResult("routing", True, f"{written} configs written"))

        # verify
        report.verification = self._verify(topology, paths, builder)
        report.stages.append(
            StageResult("verify", report.verification.ok, "; ".join(report.verification.failures) or "ok")
        )

        status = VdcStatus.running if report.ok else VdcStatus.degraded
        self._registry.set_status(topology.name, status)
        logger.info(
            "vdc %s deployed: %s, %s failures, %s warnings",
            topology.name,
            status.value,
            len(report.failures),
            len(report.warnings),
        )
        return report

    def _prepare_namespace(
        self,
        topology: Topology,
        paths: VdcPaths,
        requested: Optional[IPv4Network],
        require_new: bool,
        report: DeploymentReport,
    ) -> tuple[ManagementNetwork, str]:
        declared = topology.management.subnet if topology.management is not None else None
        registered = self._registry.get(topology.name) is not None
        hint = requested
        if requested is None and declared is not None and not registered:
            if declared in self._subnets.used_subnets(exclude_vdc=topology.name):
                report.warnings.append(
                    ConsistencyWarning(
                        stage="namespace",
                        resource=topology.name,
                        message=f"declared subnet {declared} is in use, allocating another",
                    )
                )
            else:
                hint = declared

        reservation = self._subnets.reserve(
            topology.name,
            requested=hint,
            config_file=str(paths.topology_file),
            require_new=require_new,
        )
        if reservation.created and not require_new:
            report.warnings.append(
                ConsistencyWarning(
                    stage="namespace",
                    resource=topology.name,
                    message=f"vdc was not registered, registered with subnet {reservation.subnet}",
                )
            )

        paths.ensure()

        gateway = topology.management.gateway if topology.management is not None and declared == reservation.subnet else None
        management = ManagementNetwork.for_subnet(reservation.subnet, gateway=gateway)

        try:
            public_key = self._keys.ensure_keypair(paths.private_key, comment=f"vdc-{topology.name}")
        except ControlPlaneError as exc:
            exc.stage = "namespace"
            raise

        report.stages.append(
            StageResult("namespace", True, f"{paths.base_dir} subnet {reservation.subnet}")
        )
        return management, public_key

    def deployer_for(self, device: Device, paths: VdcPaths) -> DomainDeployer:
        config = DeployerConfig(
            base_image=self._settings.base_image,
            os_variant=self._settings.os_variant,
            user=self._settings.default_user,
        )
        cls = SwitchDeployer if is_switch_tier(device.tier) else HypervisorDeployer
        return cls(paths, self._cp, self._disks, self._media, config)

    def _provision_devices(
        self,
        topology: Topology,
        paths: VdcPaths,
        builder: FabricBuilder,
        management: ManagementNetwork,
        public_key: str,
        report: DeploymentReport,
    ) -> Dict[str, ConfigBundle]:
        live_segments = {n.name for n in self._cp.list_networks(paths.prefix)}
        bundles: Dict[str, ConfigBundle] = {}
        failed = 0

        for device in topology.devices:
            plan = builder.attachment_plan(topology, device, live_segments)
            deployer = self.deployer_for(device, paths)
            try:
                outcome: ProvisionResult = deployer.provision(device, plan, management, public_key)
            except ControlPlaneError as exc:
                failed += 1
                resource = exc.resource or paths.domain_name(device.name)
                logger.error("device %s failed: %s", device.name, exc.message)
                report.failures.append(ResourceFailure(stage="devices", resource=resource, message=exc.message))
                report.warnings.extend(plan.warnings)
                report.devices[device.name] = "failed"
                continue

            for warning in outcome.warnings:
                logger.warning("%s", warning)
            report.warnings.extend(outcome.warnings)
            report.devices[device.name] = outcome.action
            if outcome.bundle is not None:
                bundles[device.name] = outcome.bundle

        changed = sum(1 for a in report.devices.values() if a in ("created", "recreated"))
        report.stages.append(
            StageResult("devices", failed == 0, f"{changed} provisioned, {failed} failed, {len(topology.devices)} total")
        )
        return bundles

    def _write_routing(self, paths: VdcPaths, bundles: Dict[str, ConfigBundle]) -> int:
        written = 0
        for device, bundle in bundles.items():
            path = paths.routing_config_path(device)
            if path.exists() and path.read_text(encoding="utf-8") == bundle.routing_config:
                continue
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(bundle.routing_config, encoding="utf-8")
            written += 1
        return written

    def _verify(self, topology: Topology, paths: VdcPaths, builder: FabricBuilder) -> VerificationOutcome:
        live_segments = {n.name for n in self._cp.list_networks(paths.prefix)}
        spec = VerificationSpec(
            management_network=paths.mgmt_network_name,
            segments=builder.segment_names(topology),
        )
        for device in topology.devices:
            plan = builder.attachment_plan(topology, device, live_segments)
            spec.domains.append(
                ExpectedDomain(
                    device=device.name,
                    domain=paths.domain_name(device.name),
                    address=device.management_address.ip,
                    networks=plan.networks,
                )
            )
        return evaluate_verification(spec, self._cp, self._reachability)
