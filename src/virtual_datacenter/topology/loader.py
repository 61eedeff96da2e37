"""
Topology loader.

Reads a YAML topology document into typed records.

Schema example
global:
  datacenter_name: dc1
  management: {subnet: 192.168.10.0/24, gateway: 192.168.10.1}
validation: {check_duplicate_ips: true, check_router_id_uniqueness: true, check_asn_uniqueness: true}
hypervisors:
  - name: hv1
    router_id: 10.255.0.1
    asn: 65001
    management: {ip: 192.168.10.11/24}
    resources: {cpu: 4, memory: 8192, disk: 50}
    data_interfaces: [{name: enp2s0}, {name: enp3s0}]
    additional_disks: [{name: data1, size: 20, format: qcow2}]
switches:
  leaf:
    - {name: leaf1, router_id: 10.255.1.1, asn: 65101, management: {ip: 192.168.10.21/24}}
  spine: []
  superspine: []
cabling:
  - source: {device: hv1, interface: enp2s0}
    destination: {device: leaf1, interface: eth1}
    description: hv1 uplink

Device, disk and VDC names are limited to letters, digits, dash and
underscore, starting with a letter or digit.

Structural problems (missing fields, wrong types) raise ValidationError at the
first one found, naming its location such as hypervisors[1] or
switches.leaf[0]. Semantic checks live in validator.py.

Switches may omit data_interfaces. Their interfaces are then taken from the
cabling list in cable order, since a switch exposes whatever ports are cabled.
"""

from __future__ import annotations

import copy
from dataclasses import replace
from ipaddress import IPv4Address, IPv4Interface, IPv4Network
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from virtual_datacenter.core.errors import ValidationError
from virtual_datacenter.core.types import (
    AdditionalDisk,
    Cable,
    CableEndpoint,
    ComputeResources,
    Device,
    DeviceTier,
    Interface,
    ManagementNetwork,
    SWITCH_TIERS,
    Topology,
    ValidationPolicy,
)
from virtual_datacenter.namespace.paths import check_name

DEFAULT_RESOURCES = ComputeResources(vcpus=4, memory_mb=8192, disk_gb=50)
DISK_FORMATS = {"qcow2", "raw"}


def _fail(where: str, message: str) -> ValidationError:
    return ValidationError([f"{where}: {message}"])


def _mapping(obj: Any, where: str) -> Dict[str, Any]:
    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise _fail(where, f"expected a mapping, got {type(obj).__name__}")
    return obj


def _sequence(obj: Any, where: str) -> List[Any]:
    if obj is None:
        return []
    if not isinstance(obj, list):
        raise _fail(where, f"expected a list, got {type(obj).__name__}")
    return obj


def _required(obj: Dict[str, Any], key: str, where: str) -> Any:
    value = obj.get(key)
    if value is None or value == "":
        raise _fail(where, f"missing required field {key}")
    return value


def _int(value: Any, where: str, field_name: str) -> int:
    if isinstance(value, bool):
        raise _fail(where, f"{field_name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise _fail(where, f"{field_name} must be an integer, got {value!r}") from None


def _parse_management(obj: Dict[str, Any]) -> Optional[ManagementNetwork]:
    mgmt = _mapping(obj.get("management"), "global.management")
    subnet_raw = mgmt.get("subnet")
    if not subnet_raw:
        return None
    try:
        subnet = IPv4Network(str(subnet_raw), strict=False)
    except ValueError:
        raise _fail("global.management", f"invalid subnet {subnet_raw!r}") from None
    gateway: Optional[IPv4Address] = None
    if mgmt.get("gateway"):
        try:
            gateway = IPv4Address(str(mgmt["gateway"]))
        except ValueError:
            raise _fail("global.management", f"invalid gateway {mgmt['gateway']!r}") from None
    return ManagementNetwork.for_subnet(subnet, gateway=gateway)


def _parse_policy(obj: Dict[str, Any]) -> ValidationPolicy:
    val = _mapping(obj.get("validation"), "validation")
    return ValidationPolicy(
        check_duplicate_ips=bool(val.get("check_duplicate_ips", True)),
        check_router_id_uniqueness=bool(val.get("check_router_id_uniqueness", True)),
        check_asn_uniqueness=bool(val.get("check_asn_uniqueness", True)),
    )


def _parse_resources(obj: Any, where: str, default: ComputeResources) -> ComputeResources:
    res = _mapping(obj, f"{where}.resources")
    return ComputeResources(
        vcpus=_int(res.get("cpu", default.vcpus), where, "resources.cpu"),
        memory_mb=_int(res.get("memory", default.memory_mb), where, "resources.memory"),
        disk_gb=_int(res.get("disk", default.disk_gb), where, "resources.disk"),
    )


def _parse_interfaces(obj: Any, where: str) -> List[Interface]:
    out: List[Interface] = []
    for pos, item in enumerate(_sequence(obj, f"{where}.data_interfaces")):
        if isinstance(item, str):
            name = item
        else:
            name = str(_required(_mapping(item, f"{where}.data_interfaces[{pos}]"), "name", f"{where}.data_interfaces[{pos}]"))
        out.append(Interface(name=name, position=pos))
    return out


def _parse_disks(obj: Any, where: str) -> List[AdditionalDisk]:
    out: List[AdditionalDisk] = []
    for i, item in enumerate(_sequence(obj, f"{where}.additional_disks")):
        loc = f"{where}.additional_disks[{i}]"
        disk = _mapping(item, loc)
        fmt = str(disk.get("format") or "qcow2")
        if fmt not in DISK_FORMATS:
            raise _fail(loc, f"unsupported disk format {fmt!r}")
        out.append(
            AdditionalDisk(
                name=check_name(str(disk.get("name") or f"data{i + 1}"), f"{loc}.name"),
                size_gb=_int(disk.get("size", 10), loc, "size"),
                format=fmt,
            )
        )
    return out


def _device_from_dict(
    obj: Any,
    tier: DeviceTier,
    where: str,
    default_resources: ComputeResources,
    subnet: Optional[IPv4Network],
) -> Device:
    """Convert a device mapping into a Device."""
    dev = _mapping(obj, where)
    name = check_name(str(_required(dev, "name", where)), f"{where}.name")
    where = f"{where} ({name})"

    rid_raw = _required(dev, "router_id", where)
    try:
        router_id = IPv4Address(str(rid_raw))
    except ValueError:
        raise _fail(where, f"invalid router_id {rid_raw!r}") from None

    asn = _int(_required(dev, "asn", where), where, "asn")

    mgmt = _mapping(dev.get("management"), f"{where}.management")
    ip_raw = str(_required(mgmt, "ip", f"{where}.management"))
    if "/" not in ip_raw:
        ip_raw = f"{ip_raw}/{subnet.prefixlen if subnet is not None else 24}"
    try:
        address = IPv4Interface(ip_raw)
    except ValueError:
        raise _fail(where, f"invalid management ip {ip_raw!r}") from None

    ports = dev.get("ports")
    return Device(
        name=name,
        tier=tier,
        router_id=router_id,
        asn=asn,
        management_address=address,
        resources=_parse_resources(dev.get("resources"), where, default_resources),
        interfaces=_parse_interfaces(dev.get("data_interfaces"), where),
        additional_disks=_parse_disks(dev.get("additional_disks"), where) if tier == DeviceTier.hypervisor else [],
        ports=_int(ports, where, "ports") if ports is not None else None,
    )


def _endpoint(obj: Any, where: str) -> CableEndpoint:
    ep = _mapping(obj, where)
    return CableEndpoint(
        device=str(_required(ep, "device", where)),
        interface=str(_required(ep, "interface", where)),
    )


def _derive_switch_interfaces(devices: List[Device], cables: List[Cable], declared: set[str]) -> None:
    """Fill interfaces of switches that declared none, from the cabling list."""
    by_name = {d.name: d for d in devices}
    for cable in cables:
        for ep in cable.endpoints():
            dev = by_name.get(ep.device)
            if dev is None or not dev.is_switch or dev.name in declared:
                continue
            if dev.interface(ep.interface) is None:
                dev.interfaces.append(Interface(name=ep.interface, position=len(dev.interfaces)))


def parse_topology(
    doc: Any,
    name: Optional[str] = None,
    default_resources: ComputeResources | None = None,
) -> Topology:
    """
    Build a Topology from a parsed document.

    name overrides global.datacenter_name when given.
    """
    root = _mapping(doc, "document")
    glob = _mapping(root.get("global"), "global")
    vdc_name = name or glob.get("datacenter_name")
    if not vdc_name:
        raise _fail("global", "missing required field datacenter_name")
    vdc_name = check_name(str(vdc_name), "name" if name else "global.datacenter_name")

    defaults = default_resources or DEFAULT_RESOURCES
    management = _parse_management(glob)
    subnet = management.subnet if management is not None else None

    devices: List[Device] = []
    for i, item in enumerate(_sequence(root.get("hypervisors"), "hypervisors")):
        devices.append(_device_from_dict(item, DeviceTier.hypervisor, f"hypervisors[{i}]", defaults, subnet))

    switches = _mapping(root.get("switches"), "switches")
    known_tiers = {t.value for t in SWITCH_TIERS}
    for key in switches:
        if key not in known_tiers:
            raise _fail("switches", f"unknown tier {key!r}, expected one of {sorted(known_tiers)}")

    declared_switch_intfs: set[str] = set()
    for tier in SWITCH_TIERS:
        for i, item in enumerate(_sequence(switches.get(tier.value), f"switches.{tier.value}")):
            dev = _device_from_dict(item, tier, f"switches.{tier.value}[{i}]", defaults, subnet)
            if isinstance(item, dict) and item.get("data_interfaces") is not None:
                declared_switch_intfs.add(dev.name)
            devices.append(dev)

    cables: List[Cable] = []
    for i, item in enumerate(_sequence(root.get("cabling"), "cabling")):
        where = f"cabling[{i}]"
        cab = _mapping(item, where)
        cables.append(
            Cable(
                index=i,
                source=_endpoint(cab.get("source"), f"{where}.source"),
                destination=_endpoint(cab.get("destination"), f"{where}.destination"),
                description=str(cab.get("description") or ""),
            )
        )

    _derive_switch_interfaces(devices, cables, declared_switch_intfs)

    return Topology(
        name=vdc_name,
        devices=devices,
        cables=cables,
        management=management,
        validation=_parse_policy(root),
        document=copy.deepcopy(root),
    )


def load_topology(
    path: Path,
    name: Optional[str] = None,
    default_resources: ComputeResources | None = None,
) -> Topology:
    """Read and parse a topology file."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ValidationError([f"{path}: cannot read topology: {exc.strerror or exc}"]) from exc
    try:
        doc = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValidationError([f"{path}: malformed YAML: {exc}"]) from exc
    return parse_topology(doc, name=name, default_resources=default_resources)


def _rebase(address: IPv4Interface, old: IPv4Network, new: IPv4Network) -> IPv4Interface:
    offset = int(address.ip) - int(old.network_address)
    if offset <= 0 or offset >= new.num_addresses - 1:
        offset = int(address.ip) - int(address.network.network_address)
    return IPv4Interface(f"{new.network_address + offset}/{new.prefixlen}")


def bind_management(topology: Topology, management: ManagementNetwork) -> Topology:
    """
    Return a copy of the topology bound to the VDC's management network.

    Devices keep their host offset: 192.168.10.11 declared under
    192.168.10.0/24 becomes 192.168.12.11 when the VDC owns 192.168.12.0/24.
    The document copy is rewritten to match so the namespace copy of the
    topology reflects what was deployed.
    """
    old = topology.management.subnet if topology.management is not None else None
    devices: List[Device] = []
    for dev in topology.devices:
        addr = dev.management_address
        if addr.ip in management.subnet and addr.network.prefixlen == management.subnet.prefixlen:
            devices.append(dev)
            continue
        base = old if old is not None else addr.network
        devices.append(replace(dev, management_address=_rebase(addr, base, management.subnet)))

    doc = copy.deepcopy(topology.document)
    glob = doc.setdefault("global", {}) or {}
    doc["global"] = glob
    glob["datacenter_name"] = topology.name
    glob["management"] = {"subnet": str(management.subnet), "gateway": str(management.gateway)}

    addresses = {d.name: str(d.management_address) for d in devices}
    for item in doc.get("hypervisors") or []:
        if isinstance(item, dict) and item.get("name") in addresses:
            item.setdefault("management", {})["ip"] = addresses[item["name"]]
    for tier_items in (doc.get("switches") or {}).values():
        for item in tier_items or []:
            if isinstance(item, dict) and item.get("name") in addresses:
                item.setdefault("management", {})["ip"] = addresses[item["name"]]

    return replace(topology, devices=devices, management=management, document=doc)


def dump_topology(topology: Topology, path: Path) -> bool:
    """
    Write the topology document to path.

    Returns False without touching the file when the content is unchanged.
    """
    text = yaml.safe_dump(topology.document, sort_keys=False, default_flow_style=False)
    path = Path(path)
    if path.exists() and path.read_text(encoding="utf-8") == text:
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return True
