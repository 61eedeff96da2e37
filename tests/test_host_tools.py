from __future__ import annotations

import subprocess
from ipaddress import IPv4Address, IPv4Interface, IPv4Network
from pathlib import Path
from typing import Any, Dict, List, Sequence

import pytest

from virtual_datacenter.controlplane.base import DiskAttachment, DomainSpec, NetworkSpec
from virtual_datacenter.controlplane.disks import QemuImgDiskTool
from virtual_datacenter.controlplane.libvirt_xml import (
    osinfo_id,
    parse_domain_xml,
    parse_network_xml,
    render_domain_xml,
    render_network_xml,
)
from virtual_datacenter.core import process
from virtual_datacenter.core.errors import ControlPlaneError
from virtual_datacenter.provision.credentials import SshKeygen
from virtual_datacenter.provision.media import IsoMediaBuilder


class FakeRunner:
    """Records commands and answers every one with the same result."""

    def __init__(self, returncode: int = 0, stderr: str = "") -> None:
        self.returncode = returncode
        self.stderr = stderr
        self.calls: List[List[str]] = []

    def __call__(self, cmd: Sequence[str]) -> subprocess.CompletedProcess[str]:
        self.calls.append(list(cmd))
        return subprocess.CompletedProcess(list(cmd), self.returncode, "", self.stderr)


def test_isolated_segment_xml_has_no_forward_element():
    xml = render_network_xml(NetworkSpec(name="dc1-p2p-link-0", bridge="brabc", forward_mode="none"))

    assert "<forward" not in xml
    assert "stp=\"off\"" in xml
    assert parse_network_xml(xml) == ("brabc", None)


def test_management_xml_round_trips_subnet():
    spec = NetworkSpec(
        name="dc1-mgmt",
        bridge="brmgmt",
        forward_mode="nat",
        address=IPv4Interface("192.168.10.1/24"),
        dhcp_start=IPv4Address("192.168.10.50"),
        dhcp_end=IPv4Address("192.168.10.200"),
        stp=True,
    )
    xml = render_network_xml(spec)

    assert "mode=\"nat\"" in xml
    assert "start=\"192.168.10.50\"" in xml
    assert parse_network_xml(xml) == ("brmgmt", IPv4Network("192.168.10.0/24"))


def test_domain_xml_keeps_interface_order_and_boots_disk_first():
    """The first interface is management, data segments follow in plan order."""
    spec = DomainSpec(
        name="dc1-hv1",
        vcpus=4,
        memory_mb=8192,
        disks=(
            DiskAttachment(path=Path("/d/dc1-hv1.qcow2")),
            DiskAttachment(path=Path("/d/dc1-hv1-data1.raw"), format="raw"),
            DiskAttachment(path=Path("/c/dc1-hv1-cidata.iso"), format="raw", device="cdrom"),
        ),
        networks=("dc1-mgmt", "dc1-p2p-link-3", "dc1-p2p-link-0"),
    )

    xml = render_domain_xml(spec)

    assert xml.index("dev=\"hd\"") < xml.index("dev=\"cdrom\"")
    assert "dev=\"vdb\"" in xml
    assert "dev=\"sda\"" in xml
    assert "http://ubuntu.com/ubuntu/24.04" in xml
    assert parse_domain_xml(xml) == (
        4,
        8192,
        ("dc1-mgmt", "dc1-p2p-link-3", "dc1-p2p-link-0"),
        ("/d/dc1-hv1.qcow2", "/d/dc1-hv1-data1.raw", "/c/dc1-hv1-cidata.iso"),
    )


def test_parse_domain_xml_converts_memory_units():
    xml = "<domain><vcpu>1</vcpu><memory unit='KiB'>2097152</memory><devices/></domain>"

    assert parse_domain_xml(xml) == (1, 2048, (), ())


def test_osinfo_id_for_unknown_variant():
    assert osinfo_id("debian12") == "http://debian.org/debian/12"
    assert osinfo_id("cumulus") is None


def test_qemu_img_derived_disk(tmp_path: Path):
    runner = FakeRunner()
    base = tmp_path / "base.img"
    base.write_text("base", encoding="utf-8")
    target = tmp_path / "disks" / "dc1-hv1.qcow2"

    QemuImgDiskTool(runner).create_derived_disk(base, target, 20)

    assert runner.calls[0] == ["qemu-img", "create", "-f", "qcow2", "-F", "qcow2", "-b", str(base), str(target), "20G"]


def test_qemu_img_requires_base_image(tmp_path: Path):
    with pytest.raises(ControlPlaneError):
        QemuImgDiskTool(FakeRunner()).create_derived_disk(tmp_path / "missing.img", tmp_path / "d.qcow2", 10)


def test_qemu_img_failure_carries_stderr(tmp_path: Path):
    runner = FakeRunner(returncode=1, stderr="qemu-img: Could not create file: Permission denied\n")

    with pytest.raises(ControlPlaneError) as excinfo:
        QemuImgDiskTool(runner).create_blank_disk(tmp_path / "dc1-hv1-data1.qcow2", 20)

    assert excinfo.value.operation == "disk.blank"
    assert "Permission denied" in excinfo.value.message


def test_iso_builder_uses_cidata_volume(tmp_path: Path):
    runner = FakeRunner()
    files = {"user-data": tmp_path / "user-data", "meta-data": tmp_path / "meta-data"}

    IsoMediaBuilder(runner, tool="genisoimage").build(files, tmp_path / "seed.iso")

    cmd = runner.calls[0]
    assert cmd[:6] == ["genisoimage", "-output", str(tmp_path / "seed.iso"), "-volid", "cidata", "-joliet"]
    assert cmd[-2:] == [str(tmp_path / "meta-data"), str(tmp_path / "user-data")]


def test_ssh_keygen_reuses_existing_pair(tmp_path: Path):
    runner = FakeRunner()
    private = tmp_path / "id_rsa"
    private.write_text("private", encoding="utf-8")
    private.with_name("id_rsa.pub").write_text("ssh-rsa AAAA existing\n", encoding="utf-8")

    key = SshKeygen(runner).ensure_keypair(private, comment="vdc-dc1")

    assert key == "ssh-rsa AAAA existing"
    assert runner.calls == []


def test_commands_run_in_the_c_locale(monkeypatch: pytest.MonkeyPatch):
    seen: Dict[str, Any] = {}

    def fake_run(cmd: List[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        seen.update(kwargs)
        return subprocess.CompletedProcess(cmd, 0, "", "")

    monkeypatch.setenv("LANG", "de_DE.UTF-8")
    monkeypatch.setattr(process.subprocess, "run", fake_run)

    process.run_command(["qemu-img", "--version"])

    assert seen["env"]["LC_ALL"] == "C"
    assert seen["env"]["LANG"] == "C"


def test_missing_tool_is_exit_127():
    result = process.run_command(["vdc-tool-that-does-not-exist"])

    assert result.returncode == 127
