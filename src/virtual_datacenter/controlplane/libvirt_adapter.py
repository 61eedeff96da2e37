"""
libvirt adapter.

Implements ControlPlane over the libvirt Python bindings. Domains and
networks are defined from XML rendered by libvirt_xml, and live state is read
back from virDomain.state(), isActive() and XMLDesc(), never from localized
command output.

Every call is synchronous: the adapter waits for libvirt to answer before
returning, so the orchestrator never races its own previous step. A graceful
stop polls the domain state until the guest powers off or the timeout hits.

libvirtError is translated to ControlPlaneError naming the operation and the
resource. Lookups of unknown names return None.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, List, Optional

import libvirt

from virtual_datacenter.controlplane.base import (
    DomainInfo,
    DomainSpec,
    DomainState,
    NetworkInfo,
    NetworkSpec,
)
from virtual_datacenter.controlplane.libvirt_xml import (
    parse_domain_xml,
    parse_network_xml,
    render_domain_xml,
    render_network_xml,
)
from virtual_datacenter.core.errors import ControlPlaneError

logger = logging.getLogger(__name__)

Connect = Callable[[str], Any]

_STATE_MAP = {
    libvirt.VIR_DOMAIN_RUNNING: DomainState.running,
    libvirt.VIR_DOMAIN_BLOCKED: DomainState.running,
    libvirt.VIR_DOMAIN_PAUSED: DomainState.paused,
    libvirt.VIR_DOMAIN_PMSUSPENDED: DomainState.paused,
    libvirt.VIR_DOMAIN_SHUTOFF: DomainState.shut_off,
}


def domain_state(domain: Any) -> DomainState:
    state, _reason = domain.state()
    return _STATE_MAP.get(state, DomainState.other)


@contextmanager
def _translated(operation: str, resource: str) -> Iterator[None]:
    try:
        yield
    except libvirt.libvirtError as exc:
        raise ControlPlaneError(str(exc).strip() or "libvirt error", operation=operation, resource=resource) from exc


@dataclass(frozen=True)
class LibvirtConfig:
    """
    uri
    libvirt connection URI.

    shutdown_timeout_seconds
    Graceful stop waits this long for the guest to power off.
    """

    uri: str = "qemu:///system"
    shutdown_timeout_seconds: float = 60.0
    poll_interval_seconds: float = 2.0


class LibvirtControlPlane:
    """ControlPlane over a libvirt connection."""

    def __init__(self, config: LibvirtConfig | None = None, connect: Connect | None = None) -> None:
        self._config = config or LibvirtConfig()
        self._connect = connect or libvirt.open
        self._conn: Any = None

    @property
    def conn(self) -> Any:
        """Lazy connection, reopened when libvirtd dropped it."""
        if self._conn is None or not self._conn.isAlive():
            with _translated("connect", self._config.uri):
                self._conn = self._connect(self._config.uri)
            if self._conn is None:
                raise ControlPlaneError("connection refused", operation="connect", resource=self._config.uri)
        return self._conn

    def _domain(self, name: str) -> Optional[Any]:
        try:
            return self.conn.lookupByName(name)
        except libvirt.libvirtError:
            return None

    def _network(self, name: str) -> Optional[Any]:
        try:
            return self.conn.networkLookupByName(name)
        except libvirt.libvirtError:
            return None

    # Domains.

    def _domain_info(self, domain: Any) -> DomainInfo:
        name = domain.name()
        with _translated("domain.inspect", name):
            state = domain_state(domain)
            vcpus, memory_mb, networks, disks = parse_domain_xml(domain.XMLDesc(0))
        return DomainInfo(name=name, state=state, vcpus=vcpus, memory_mb=memory_mb, networks=networks, disks=disks)

    def list_domains(self, prefix: str = "") -> List[DomainInfo]:
        with _translated("domain.list", prefix or "*"):
            domains = [d for d in self.conn.listAllDomains(0) if d.name().startswith(prefix)]
        return sorted((self._domain_info(d) for d in domains), key=lambda d: d.name)

    def inspect_domain(self, name: str) -> Optional[DomainInfo]:
        domain = self._domain(name)
        return self._domain_info(domain) if domain is not None else None

    def create_domain(self, spec: DomainSpec) -> None:
        xml = render_domain_xml(spec)
        with _translated("domain.create", spec.name):
            domain = self.conn.defineXML(xml)
        try:
            with _translated("domain.create", spec.name):
                domain.create()
        except ControlPlaneError:
            with _translated("domain.create", spec.name):
                domain.undefine()
            raise
        logger.info("created domain %s with %s networks", spec.name, len(spec.networks))

    def _require_domain(self, name: str, operation: str) -> Any:
        domain = self._domain(name)
        if domain is None:
            raise ControlPlaneError("domain not found", operation=operation, resource=name)
        return domain

    def start_domain(self, name: str) -> None:
        domain = self._require_domain(name, "domain.start")
        with _translated("domain.start", name):
            domain.create()

    def stop_domain(self, name: str, force: bool = False) -> None:
        domain = self._require_domain(name, "domain.stop")
        if force:
            with _translated("domain.force_stop", name):
                domain.destroy()
            return

        with _translated("domain.stop", name):
            domain.shutdown()
        deadline = time.monotonic() + self._config.shutdown_timeout_seconds
        while True:
            with _translated("domain.stop", name):
                if domain_state(domain) == DomainState.shut_off:
                    return
            if time.monotonic() >= deadline:
                break
            time.sleep(self._config.poll_interval_seconds)
        raise ControlPlaneError(
            f"guest still running after {self._config.shutdown_timeout_seconds:.0f}s",
            operation="domain.stop",
            resource=name,
        )

    def destroy_domain(self, name: str) -> None:
        domain = self._require_domain(name, "domain.destroy")
        with _translated("domain.destroy", name):
            if domain_state(domain) != DomainState.shut_off:
                domain.destroy()
            domain.undefine()

    # Networks.

    def _network_info(self, network: Any) -> NetworkInfo:
        name = network.name()
        with _translated("network.inspect", name):
            bridge, subnet = parse_network_xml(network.XMLDesc(0))
            active = network.isActive() == 1
        return NetworkInfo(name=name, active=active, bridge=bridge, subnet=subnet)

    def list_networks(self, prefix: str = "") -> List[NetworkInfo]:
        with _translated("network.list", prefix or "*"):
            networks = [n for n in self.conn.listAllNetworks(0) if n.name().startswith(prefix)]
        return sorted((self._network_info(n) for n in networks), key=lambda n: n.name)

    def inspect_network(self, name: str) -> Optional[NetworkInfo]:
        network = self._network(name)
        return self._network_info(network) if network is not None else None

    def create_network(self, spec: NetworkSpec) -> None:
        xml = render_network_xml(spec)
        if spec.definition_path is not None:
            spec.definition_path.parent.mkdir(parents=True, exist_ok=True)
            spec.definition_path.write_text(xml, encoding="utf-8")

        with _translated("network.create", spec.name):
            network = self.conn.networkDefineXML(xml)
            if network.isActive() != 1:
                network.create()
            network.setAutostart(1)
        logger.info("created network %s (bridge %s)", spec.name, spec.bridge)

    def _require_network(self, name: str, operation: str) -> Any:
        network = self._network(name)
        if network is None:
            raise ControlPlaneError("network not found", operation=operation, resource=name)
        return network

    def start_network(self, name: str) -> None:
        network = self._require_network(name, "network.start")
        with _translated("network.start", name):
            network.create()

    def stop_network(self, name: str) -> None:
        network = self._require_network(name, "network.stop")
        with _translated("network.stop", name):
            network.destroy()

    def destroy_network(self, name: str) -> None:
        network = self._require_network(name, "network.destroy")
        with _translated("network.destroy", name):
            if network.isActive() == 1:
                network.destroy()
            network.undefine()
