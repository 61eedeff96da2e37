"""
Verification engine.

Purpose
After devices are provisioned, we must compare live state to the deployment
plan. This module evaluates expected domains and networks against what the
control plane reports.

Checks
- management network exists and is active
- every declared segment exists and is active
- every declared domain exists and is running
- every domain is attached to its planned networks, in planned order

Extensibility
A ReachabilityCheck can be supplied to test each device's management address,
for example with an ssh connect. Without one, reachability is not checked and
the evidence says so.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from ipaddress import IPv4Address
from typing import Dict, List, Optional, Protocol, Tuple

from virtual_datacenter.controlplane.base import ControlPlane


class ReachabilityCheck(Protocol):
    def reachable(self, device: str, address: IPv4Address) -> bool:
        """Return True when the device answers on its management address."""


@dataclass
class ExpectedDomain:
    device: str
    domain: str
    address: IPv4Address
    networks: Tuple[str, ...]


@dataclass
class VerificationSpec:
    management_network: str
    segments: List[str] = field(default_factory=list)
    domains: List[ExpectedDomain] = field(default_factory=list)


@dataclass
class VerificationOutcome:
    """
    Verification outcome.

    ok
    True only when every check passes.

    failures
    List of human readable failure messages.

    evidence
    Structured evidence that can be shown in reports.
    """

    ok: bool
    failures: list[str]
    evidence: dict[str, object]


def evaluate_verification(
    spec: VerificationSpec,
    control_plane: ControlPlane,
    reachability: Optional[ReachabilityCheck] = None,
) -> VerificationOutcome:
    failures: list[str] = []
    results: List[Dict[str, object]] = []

    for name in [spec.management_network, *spec.segments]:
        net = control_plane.inspect_network(name)
        if net is None:
            failures.append(f"network {name} missing")
            results.append({"type": "network", "name": name, "ok": False, "reason": "missing"})
        elif not net.active:
            failures.append(f"network {name} inactive")
            results.append({"type": "network", "name": name, "ok": False, "reason": "inactive"})
        else:
            results.append({"type": "network", "name": name, "ok": True})

    for exp in spec.domains:
        dom = control_plane.inspect_domain(exp.domain)
        if dom is None:
            failures.append(f"domain {exp.domain} missing")
            results.append({"type": "domain", "name": exp.domain, "ok": False, "reason": "missing"})
            continue
        if not dom.running:
            failures.append(f"domain {exp.domain} is {dom.state.value}")
            results.append({"type": "domain", "name": exp.domain, "ok": False, "reason": dom.state.value})
            continue
        if dom.networks and tuple(dom.networks) != tuple(exp.networks):
            failures.append(
                f"domain {exp.domain} attached to {list(dom.networks)}, expected {list(exp.networks)}"
            )
            results.append({"type": "domain", "name": exp.domain, "ok": False, "reason": "attachments"})
            continue
        if reachability is not None and not reachability.reachable(exp.device, exp.address):
            failures.append(f"device {exp.device} unreachable at {exp.address}")
            results.append({"type": "domain", "name": exp.domain, "ok": False, "reason": "unreachable"})
            continue
        results.append({"type": "domain", "name": exp.domain, "ok": True})

    evidence: dict[str, object] = {
        "check_results": results,
        "reachability_checked": reachability is not None,
    }
    return VerificationOutcome(ok=not failures, failures=failures, evidence=evidence)
