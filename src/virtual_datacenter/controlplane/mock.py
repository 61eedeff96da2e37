"""
In memory control plane.

This adapter is used for tests and dry runs.
It behaves like a tiny hypervisor: a dict of domains and a dict of networks.

Features
- Records every mutating call in events, in order
- Refuses to create a name twice, like a real control plane would
- Can inject failures per operation and name to exercise partial failure paths
- Can inject stop failures to exercise the forced removal path

The disk tool writes small placeholder files so filesystem based checks
(orphan disks, redeploy after a deleted disk) behave as with real images.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from ipaddress import IPv4Network
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from virtual_datacenter.controlplane.base import (
    DomainInfo,
    DomainSpec,
    DomainState,
    NetworkInfo,
    NetworkSpec,
)
from virtual_datacenter.core.errors import ControlPlaneError


@dataclass
class InMemoryControlPlane:
    """
    In memory control plane.

    failures
    Set of (operation, name) pairs that raise ControlPlaneError.
    Operation names match ControlPlaneError.operation, for example
    ("domain.create", "dc1-hv1").

    stuck
    Domain names that ignore a graceful stop and stay running.
    """

    domains: Dict[str, DomainInfo] = field(default_factory=dict)
    networks: Dict[str, NetworkInfo] = field(default_factory=dict)
    specs: Dict[str, DomainSpec] = field(default_factory=dict)
    events: List[Tuple[str, str]] = field(default_factory=list)
    failures: Set[Tuple[str, str]] = field(default_factory=set)
    stuck: Set[str] = field(default_factory=set)

    def _check(self, operation: str, name: str) -> None:
        if (operation, name) in self.failures:
            raise ControlPlaneError("injected failure", operation=operation, resource=name)

    def _record(self, operation: str, name: str) -> None:
        self.events.append((operation, name))

    def calls(self, operation: str) -> List[str]:
        """Names passed to one operation, in call order."""
        return [name for op, name in self.events if op == operation]

    # Domains.

    def list_domains(self, prefix: str = "") -> List[DomainInfo]:
        return [d for n, d in sorted(self.domains.items()) if n.startswith(prefix)]

    def inspect_domain(self, name: str) -> Optional[DomainInfo]:
        return self.domains.get(name)

    def create_domain(self, spec: DomainSpec) -> None:
        self._check("domain.create", spec.name)
        if spec.name in self.domains:
            raise ControlPlaneError("domain already exists", operation="domain.create", resource=spec.name)
        for net in spec.networks:
            if net not in self.networks:
                raise ControlPlaneError(f"network {net} not found", operation="domain.create", resource=spec.name)
        self.domains[spec.name] = DomainInfo(
            name=spec.name,
            state=DomainState.running,
            vcpus=spec.vcpus,
            memory_mb=spec.memory_mb,
            networks=tuple(spec.networks),
            disks=tuple(str(d.path) for d in spec.disks),
        )
        self.specs[spec.name] = spec
        self._record("domain.create", spec.name)

    def start_domain(self, name: str) -> None:
        self._check("domain.start", name)
        dom = self._domain(name, "domain.start")
        self.domains[name] = replace(dom, state=DomainState.running)
        self._record("domain.start", name)

    def stop_domain(self, name: str, force: bool = False) -> None:
        op = "domain.force_stop" if force else "domain.stop"
        self._check(op, name)
        dom = self._domain(name, op)
        if not force and name in self.stuck:
            raise ControlPlaneError("guest did not shut down", operation=op, resource=name)
        self.domains[name] = replace(dom, state=DomainState.shut_off)
        self._record(op, name)

    def destroy_domain(self, name: str) -> None:
        self._check("domain.destroy", name)
        self._domain(name, "domain.destroy")
        del self.domains[name]
        self.specs.pop(name, None)
        self._record("domain.destroy", name)

    def _domain(self, name: str, operation: str) -> DomainInfo:
        dom = self.domains.get(name)
        if dom is None:
            raise ControlPlaneError("domain not found", operation=operation, resource=name)
        return dom

    # Networks.

    def list_networks(self, prefix: str = "") -> List[NetworkInfo]:
        return [n for name, n in sorted(self.networks.items()) if name.startswith(prefix)]

    def inspect_network(self, name: str) -> Optional[NetworkInfo]:
        return self.networks.get(name)

    def create_network(self, spec: NetworkSpec) -> None:
        self._check("network.create", spec.name)
        if spec.name in self.networks:
            raise ControlPlaneError("network already exists", operation="network.create", resource=spec.name)
        subnet: Optional[IPv4Network] = spec.address.network if spec.address is not None else None
        self.networks[spec.name] = NetworkInfo(name=spec.name, active=True, bridge=spec.bridge, subnet=subnet)
        self._record("network.create", spec.name)

    def start_network(self, name: str) -> None:
        self._check("network.start", name)
        net = self._network(name, "network.start")
        self.networks[name] = replace(net, active=True)
        self._record("network.start", name)

    def stop_network(self, name: str) -> None:
        self._check("network.stop", name)
        net = self._network(name, "network.stop")
        self.networks[name] = replace(net, active=False)
        self._record("network.stop", name)

    def destroy_network(self, name: str) -> None:
        self._check("network.destroy", name)
        self._network(name, "network.destroy")
        del self.networks[name]
        self._record("network.destroy", name)

    def _network(self, name: str, operation: str) -> NetworkInfo:
        net = self.networks.get(name)
        if net is None:
            raise ControlPlaneError("network not found", operation=operation, resource=name)
        return net


@dataclass
class InMemoryDiskTool:
    """
    Disk tool that writes placeholder files.

    created lists (kind, path) in call order.
    """

    created: List[Tuple[str, Path]] = field(default_factory=list)
    failures: Set[Path] = field(default_factory=set)

    def create_derived_disk(self, base: Path, target: Path, size_gb: int) -> None:
        self._write("derived", target, f"backing={base} size={size_gb}G\n")

    def create_blank_disk(self, target: Path, size_gb: int, fmt: str = "qcow2") -> None:
        self._write("blank", target, f"format={fmt} size={size_gb}G\n")

    def _write(self, kind: str, target: Path, body: str) -> None:
        if target in self.failures:
            raise ControlPlaneError("injected failure", operation=f"disk.{kind}", resource=str(target))
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(body, encoding="utf-8")
        self.created.append((kind, target))
