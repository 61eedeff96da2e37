"""
libvirt XML.

render_network_xml and render_domain_xml turn specs into definitions for
networkDefineXML and defineXML. parse_network_xml and parse_domain_xml read
back what the adapter reports from XMLDesc.

Isolated segments carry no forward element at all, which is how libvirt
expresses a network with no host routing.

Domain interfaces are written in DomainSpec.networks order and get no
explicit PCI address, so libvirt assigns slots in that order. Guest side this
is enp1s0 for the first entry (management), enp2s0 for the next and so on.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from ipaddress import IPv4Interface, IPv4Network
from typing import List, Optional, Tuple

from virtual_datacenter.controlplane.base import DomainSpec, NetworkSpec

LIBOSINFO_NS = "http://libosinfo.org/xmlns/libvirt/domain/1.0"
ET.register_namespace("libosinfo", LIBOSINFO_NS)

_OSINFO_VENDORS = {
    "ubuntu": "http://ubuntu.com/ubuntu/",
    "debian": "http://debian.org/debian/",
    "fedora": "http://fedoraproject.org/fedora/",
}

# libvirt memory units, KiB is the default
_KIB_PER_UNIT = {"k": 1, "kib": 1, "m": 1024, "mib": 1024, "g": 1024 * 1024, "gib": 1024 * 1024}


def _to_text(root: ET.Element) -> str:
    ET.indent(root, space="  ")
    return ET.tostring(root, encoding="unicode") + "\n"


def render_network_xml(spec: NetworkSpec) -> str:
    root = ET.Element("network")
    ET.SubElement(root, "name").text = spec.name

    if spec.forward_mode and spec.forward_mode != "none":
        ET.SubElement(root, "forward", mode=spec.forward_mode)

    ET.SubElement(
        root,
        "bridge",
        name=spec.bridge,
        stp="on" if spec.stp else "off",
        delay="0",
    )

    if spec.address is not None:
        ip = ET.SubElement(
            root,
            "ip",
            address=str(spec.address.ip),
            netmask=str(spec.address.netmask),
        )
        if spec.dhcp_start is not None and spec.dhcp_end is not None:
            dhcp = ET.SubElement(ip, "dhcp")
            ET.SubElement(dhcp, "range", start=str(spec.dhcp_start), end=str(spec.dhcp_end))

    return _to_text(root)


def parse_network_xml(xml: str) -> Tuple[str, Optional[IPv4Network]]:
    """Return (bridge name, subnet) from a network definition."""
    root = ET.fromstring(xml)

    bridge_el = root.find("bridge")
    bridge = bridge_el.get("name", "") if bridge_el is not None else ""

    subnet: Optional[IPv4Network] = None
    ip_el = root.find("ip")
    if ip_el is not None and ip_el.get("address"):
        address = ip_el.get("address", "")
        netmask = ip_el.get("netmask") or ip_el.get("prefix") or "24"
        try:
            subnet = IPv4Interface(f"{address}/{netmask}").network
        except ValueError:
            subnet = None

    return bridge, subnet


def osinfo_id(variant: str) -> Optional[str]:
    """libosinfo id for short names like ubuntu24.04, None when unknown."""
    for vendor, base in _OSINFO_VENDORS.items():
        if variant.startswith(vendor) and variant[len(vendor):]:
            return base + variant[len(vendor):]
    return None


def render_domain_xml(spec: DomainSpec) -> str:
    root = ET.Element("domain", type="kvm")
    ET.SubElement(root, "name").text = spec.name

    os_id = osinfo_id(spec.os_variant)
    if os_id is not None:
        metadata = ET.SubElement(root, "metadata")
        info = ET.SubElement(metadata, f"{{{LIBOSINFO_NS}}}libosinfo")
        ET.SubElement(info, f"{{{LIBOSINFO_NS}}}os", id=os_id)

    ET.SubElement(root, "memory", unit="MiB").text = str(spec.memory_mb)
    ET.SubElement(root, "vcpu").text = str(spec.vcpus)

    os_el = ET.SubElement(root, "os")
    ET.SubElement(os_el, "type", arch="x86_64", machine="q35").text = "hvm"
    ET.SubElement(os_el, "boot", dev="hd")
    if any(d.device == "cdrom" for d in spec.disks):
        ET.SubElement(os_el, "boot", dev="cdrom")

    features = ET.SubElement(root, "features")
    ET.SubElement(features, "acpi")
    ET.SubElement(features, "apic")
    ET.SubElement(root, "cpu", mode="host-passthrough")

    devices = ET.SubElement(root, "devices")
    virtio_index = 0
    sata_index = 0
    for disk in spec.disks:
        el = ET.SubElement(devices, "disk", type="file", device=disk.device)
        ET.SubElement(el, "driver", name="qemu", type=disk.format)
        ET.SubElement(el, "source", file=str(disk.path))
        if disk.device == "cdrom":
            ET.SubElement(el, "target", dev=f"sd{chr(ord('a') + sata_index)}", bus="sata")
            ET.SubElement(el, "readonly")
            sata_index += 1
        else:
            ET.SubElement(el, "target", dev=f"vd{chr(ord('a') + virtio_index)}", bus="virtio")
            virtio_index += 1

    for network in spec.networks:
        iface = ET.SubElement(devices, "interface", type="network")
        ET.SubElement(iface, "source", network=network)
        ET.SubElement(iface, "model", type="virtio")

    serial = ET.SubElement(devices, "serial", type="pty")
    ET.SubElement(serial, "target", port="0")
    console = ET.SubElement(devices, "console", type="pty")
    ET.SubElement(console, "target", type="serial", port="0")

    return _to_text(root)


def _memory_mb(el: Optional[ET.Element]) -> int:
    text = (el.text or "").strip() if el is not None else ""
    if not text:
        return 0
    kib = int(text) * _KIB_PER_UNIT.get(el.get("unit", "KiB").lower(), 1)
    return int(kib // 1024)


def parse_domain_xml(xml: str) -> Tuple[int, int, Tuple[str, ...], Tuple[str, ...]]:
    """Return (vcpus, memory MiB, networks in attachment order, disk sources)."""
    root = ET.fromstring(xml)

    vcpu_el = root.find("vcpu")
    vcpus = int((vcpu_el.text or "0").strip()) if vcpu_el is not None else 0
    memory_mb = _memory_mb(root.find("memory"))

    networks: List[str] = []
    disks: List[str] = []
    devices = root.find("devices")
    if devices is not None:
        for iface in devices.findall("interface"):
            source = iface.find("source")
            if iface.get("type") == "network" and source is not None and source.get("network"):
                networks.append(source.get("network", ""))
        for disk in devices.findall("disk"):
            source = disk.find("source")
            if source is not None and source.get("file"):
                disks.append(source.get("file", ""))

    return vcpus, memory_mb, tuple(networks), tuple(disks)
