"""
Boot configuration generator.

Pure functions only. Given a device, its resolved attachment plan, the VDC
management network and the VDC public key, produce the cloud-init bundle the
device boots with:

meta-data       instance id and hostname
user-data       user, packages, FRR daemons and frr.conf, sysctl, runcmd
network-config  netplan v2: static management address on enp1s0,
                link local only on data interfaces, router id on dummy lo1

The routing config references the guest interface names from the plan,
never names derived on its own, so a skipped interface cannot shift the BGP
neighbors out of step with the guest.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List

import yaml

from virtual_datacenter.core.types import Device, DeviceTier, ManagementNetwork
from virtual_datacenter.fabric.builder import MGMT_GUEST_INTERFACE, AttachmentPlan

FRR_DAEMONS = """\
zebra=yes
bgpd=yes
ospfd=no
ospf6d=no
ripd=no
ripngd=no
isisd=no
pimd=no
ldpd=no
nhrpd=no
eigrpd=no
babeld=no
sharpd=no
pbrd=no
bfdd=no
fabricd=no
vrrpd=no

vtysh_enable=yes
zebra_options="  -A 127.0.0.1 -s 90000000"
bgpd_options="   -A 127.0.0.1"
"""

SYSCTL_FORWARDING = "net.ipv4.ip_forward=1\nnet.ipv6.conf.all.forwarding=1\n"

BASE_PACKAGES = [
    "frr",
    "frr-pythontools",
    "iproute2",
    "net-tools",
    "tcpdump",
    "curl",
    "jq",
    "iperf3",
    "mtr",
    "traceroute",
    "ethtool",
]

SWITCH_PACKAGES = ["lldpd", "bridge-utils"]

NAMESERVERS = ["8.8.8.8", "8.8.4.4"]


@dataclass(frozen=True)
class ConfigBundle:
    """
    Rendered boot configuration of one device.

    routing_config is the frr.conf text, also embedded in user_data.
    It is kept separately so the orchestrator can write it to bgp-configs/.
    """

    hostname: str
    meta_data: str
    user_data: str
    network_config: str
    routing_config: str

    def files(self) -> Dict[str, str]:
        """Cloud-init file name to content, as laid out on the boot ISO."""
        return {
            "meta-data": self.meta_data,
            "user-data": self.user_data,
            "network-config": self.network_config,
        }


class _BlockDumper(yaml.SafeDumper):
    pass


def _str_representer(dumper: yaml.SafeDumper, data: str) -> yaml.ScalarNode:
    if "\n" in data:
        return dumper.represent_scalar("tag:yaml.org,2002:str", data, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", data)


_BlockDumper.add_representer(str, _str_representer)


def _dump(obj: Any) -> str:
    return yaml.dump(obj, Dumper=_BlockDumper, sort_keys=False, default_flow_style=False, width=120)


def render_routing_config(device: Device, plan: AttachmentPlan) -> str:
    """
    Render frr.conf for BGP unnumbered.

    One FABRIC peer group, one neighbor statement per attached interface,
    router id advertised from lo1.
    """
    lines: List[str] = [
        "!",
        f"! FRRouting configuration for {device.name}",
        "!",
        "frr defaults traditional",
        f"hostname {device.name}",
        "log syslog informational",
        "service integrated-vtysh-config",
        "!",
        f"router bgp {device.asn}",
        f" bgp router-id {device.router_id}",
        " bgp log-neighbor-changes",
        " bgp bestpath as-path multipath-relax",
        " no bgp default ipv4-unicast",
        " no bgp ebgp-requires-policy",
        " neighbor FABRIC peer-group",
        " neighbor FABRIC remote-as external",
        " neighbor FABRIC capability extended-nexthop",
    ]
    for att in plan.attachments:
        peer = f" to {att.peer}" if att.peer is not None else ""
        lines.append(f" ! {att.interface}{peer}")
        lines.append(f" neighbor {att.guest_name} interface peer-group FABRIC")
    lines += [
        " !",
        " address-family ipv4 unicast",
        "  neighbor FABRIC activate",
        "  neighbor FABRIC route-map ALLOW-ALL in",
        "  neighbor FABRIC route-map ALLOW-ALL out",
        "  redistribute connected route-map REDISTRIBUTE-LO1",
        "  maximum-paths 64",
        " exit-address-family",
        "!",
        "route-map ALLOW-ALL permit 10",
        f" set src {device.router_id}",
        "!",
        "ip protocol bgp route-map ALLOW-ALL",
        "!",
        "route-map REDISTRIBUTE-LO1 permit 10",
        " match interface lo1",
        "!",
        "end",
    ]
    return "\n".join(lines) + "\n"


def render_network_config(device: Device, plan: AttachmentPlan, management: ManagementNetwork) -> str:
    ethernets: Dict[str, Any] = {
        MGMT_GUEST_INTERFACE: {
            "dhcp4": False,
            "addresses": [str(device.management_address)],
            "routes": [{"to": "0.0.0.0/0", "via": str(management.gateway)}],
            "nameservers": {"addresses": list(NAMESERVERS)},
        }
    }
    for att in plan.attachments:
        ethernets[att.guest_name] = {
            "dhcp4": False,
            "dhcp6": False,
            "accept-ra": False,
            "link-local": ["ipv6"],
        }
    doc = {
        "version": 2,
        "ethernets": ethernets,
        "dummy-devices": {"lo1": {"addresses": [f"{device.router_id}/32"]}},
    }
    return _dump(doc)


def render_meta_data(device: Device, instance_id: str) -> str:
    return _dump({"instance-id": instance_id, "local-hostname": device.name})


def render_user_data(
    device: Device,
    plan: AttachmentPlan,
    ssh_public_key: str,
    routing_config: str,
    user: str = "ubuntu",
) -> str:
    packages = list(BASE_PACKAGES)
    if device.tier != DeviceTier.hypervisor:
        packages += SWITCH_PACKAGES

    runcmd: List[Any] = ["sysctl -p /etc/sysctl.d/99-forwarding.conf"]
    runcmd += [f"ip link set {att.guest_name} up" for att in plan.attachments]
    runcmd += [
        "chown frr:frr /etc/frr/frr.conf",
        "chmod 640 /etc/frr/frr.conf",
        "systemctl enable frr",
        "systemctl restart frr",
    ]

    doc = {
        "hostname": device.name,
        "fqdn": f"{device.name}.virtual-dc.local",
        "manage_etc_hosts": True,
        "users": [
            {
                "name": user,
                "sudo": "ALL=(ALL) NOPASSWD:ALL",
                "shell": "/bin/bash",
                "ssh_authorized_keys": [ssh_public_key.strip()],
            }
        ],
        "packages": packages,
        "package_update": True,
        "write_files": [
            {"path": "/etc/frr/daemons", "content": FRR_DAEMONS},
            {"path": "/etc/frr/frr.conf", "content": routing_config, "permissions": "0640"},
            {"path": "/etc/sysctl.d/99-forwarding.conf", "content": SYSCTL_FORWARDING, "permissions": "0644"},
        ],
        "runcmd": runcmd,
    }
    return "#cloud-config\n" + _dump(doc)


def render_config_bundle(
    device: Device,
    plan: AttachmentPlan,
    management: ManagementNetwork,
    ssh_public_key: str,
    instance_id: str | None = None,
    user: str = "ubuntu",
) -> ConfigBundle:
    """Render every boot file for one device. No side effects."""
    routing = render_routing_config(device, plan)
    return ConfigBundle(
        hostname=device.name,
        meta_data=render_meta_data(device, instance_id or device.name),
        user_data=render_user_data(device, plan, ssh_public_key, routing, user=user),
        network_config=render_network_config(device, plan, management),
        routing_config=routing,
    )
