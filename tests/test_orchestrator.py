from __future__ import annotations

from ipaddress import IPv4Network
from pathlib import Path
from typing import Any, Dict

import pytest

from virtual_datacenter.core.errors import AllocationConflict, ControlPlaneError, ValidationError
from virtual_datacenter.core.settings import RegistryConfig, VdcSettings
from virtual_datacenter.core.types import VdcStatus
from virtual_datacenter.runtime import Runtime
from virtual_datacenter.topology.loader import parse_topology


def make_document() -> Dict[str, Any]:
    """Two hypervisors, AS 65001 and 65002, on one leaf."""
    return {
        "global": {
            "datacenter_name": "dc1",
            "management": {"subnet": "192.168.10.0/24", "gateway": "192.168.10.1"},
        },
        "hypervisors": [
            {
                "name": "hv1",
                "router_id": "10.255.0.1",
                "asn": 65001,
                "management": {"ip": "192.168.10.11/24"},
                "resources": {"cpu": 2, "memory": 2048, "disk": 20},
                "data_interfaces": [{"name": "enp2s0"}],
                "additional_disks": [{"name": "data1", "size": 20}],
            },
            {
                "name": "hv2",
                "router_id": "10.255.0.2",
                "asn": 65002,
                "management": {"ip": "192.168.10.12/24"},
                "data_interfaces": [{"name": "enp2s0"}],
            },
        ],
        "switches": {
            "leaf": [
                {
                    "name": "leaf1",
                    "router_id": "10.255.1.1",
                    "asn": 65101,
                    "management": {"ip": "192.168.10.21/24"},
                    "data_interfaces": [{"name": "swp1"}, {"name": "swp2"}],
                }
            ]
        },
        "cabling": [
            {"source": {"device": "hv1", "interface": "enp2s0"}, "destination": {"device": "leaf1", "interface": "swp1"}},
            {"source": {"device": "hv2", "interface": "enp2s0"}, "destination": {"device": "leaf1", "interface": "swp2"}},
        ],
    }


def make_runtime(tmp_path: Path) -> Runtime:
    settings = VdcSettings(project_root=tmp_path, registry=RegistryConfig(retry_delay_seconds=0))
    return Runtime.in_memory(settings)


def test_first_deployment_builds_everything(tmp_path: Path):
    rt = make_runtime(tmp_path)
    cp = rt.control_plane

    report = rt.orchestrator().deploy(parse_topology(make_document()), require_new=True)

    assert report.ok
    assert report.warnings == []
    assert report.subnet == IPv4Network("192.168.10.0/24")
    assert report.segments_created == ["dc1-p2p-link-0", "dc1-p2p-link-1"]
    assert sorted(cp.domains) == ["dc1-hv1", "dc1-hv2", "dc1-leaf1"]
    assert sorted(cp.networks) == ["dc1-mgmt", "dc1-p2p-link-0", "dc1-p2p-link-1"]
    assert report.devices == {"hv1": "created", "hv2": "created", "leaf1": "created"}
    assert [s.name for s in report.stages] == [
        "validate",
        "namespace",
        "management_network",
        "fabric",
        "devices",
        "routing",
        "verify",
    ]

    assert rt.registry.get("dc1").status == VdcStatus.running
    assert rt.registry.get("dc1").management_subnet == "192.168.10.0/24"


def test_segments_exist_before_any_domain(tmp_path: Path):
    rt = make_runtime(tmp_path)
    rt.orchestrator().deploy(parse_topology(make_document()), require_new=True)

    ops = [op for op, _ in rt.control_plane.events]
    last_network = max(i for i, op in enumerate(ops) if op == "network.create")
    first_domain = min(i for i, op in enumerate(ops) if op == "domain.create")
    assert last_network < first_domain


def test_attachment_order_matches_declared_interfaces(tmp_path: Path):
    rt = make_runtime(tmp_path)
    rt.orchestrator().deploy(parse_topology(make_document()), require_new=True)

    specs = rt.control_plane.specs
    assert specs["dc1-leaf1"].networks == ("dc1-mgmt", "dc1-p2p-link-0", "dc1-p2p-link-1")
    assert specs["dc1-hv2"].networks == ("dc1-mgmt", "dc1-p2p-link-1")
    assert specs["dc1-hv1"].disks[-1].device == "cdrom"
    assert [d.path.name for d in specs["dc1-hv1"].disks[:2]] == ["dc1-hv1.qcow2", "dc1-hv1-data1.qcow2"]


def test_namespace_holds_every_artifact(tmp_path: Path):
    rt = make_runtime(tmp_path)
    rt.orchestrator().deploy(parse_topology(make_document()), require_new=True)
    paths = rt.paths_for("dc1")

    assert paths.topology_file.exists()
    assert paths.private_key.exists()
    assert paths.boot_iso_path("leaf1").exists()
    assert "router bgp 65101" in paths.routing_config_path("leaf1").read_text(encoding="utf-8")
    assert (paths.cloud_init_device_dir("hv1") / "user-data").read_text(encoding="utf-8").startswith("#cloud-config")
    assert [p.name for p in paths.list_disks()] == [
        "dc1-hv1-data1.qcow2",
        "dc1-hv1.qcow2",
        "dc1-hv2.qcow2",
        "dc1-leaf1.qcow2",
    ]


def test_redeploy_changes_nothing(tmp_path: Path):
    """
    Second run against a deployed VDC.

    Every stage finds its resources by existence, so no control plane call,
    disk or config write happens.
    """
    rt = make_runtime(tmp_path)
    orch = rt.orchestrator()
    orch.deploy(parse_topology(make_document()), require_new=True)
    events = list(rt.control_plane.events)
    disks = list(rt.disk_tool.created)

    report = orch.deploy(parse_topology(make_document()))

    assert report.ok
    assert report.warnings == []
    assert report.devices == {"hv1": "unchanged", "hv2": "unchanged", "leaf1": "unchanged"}
    assert report.segments_created == []
    assert rt.control_plane.events == events
    assert rt.disk_tool.created == disks
    assert report.stage("routing").summary == "0 configs written"


def test_redeploy_from_stored_topology(tmp_path: Path):
    rt = make_runtime(tmp_path)
    rt.orchestrator().deploy(parse_topology(make_document()), require_new=True)
    events = list(rt.control_plane.events)

    report = rt.orchestrator().deploy(rt.resolve_topology("dc1"))

    assert report.ok
    assert rt.control_plane.events == events


def test_deleted_disk_rebuilds_only_that_device(tmp_path: Path):
    """
    hv2 lost its disk.

    Its stale domain is removed and both are rebuilt. hv1 and leaf1 are left
    alone.
    """
    rt = make_runtime(tmp_path)
    orch = rt.orchestrator()
    orch.deploy(parse_topology(make_document()), require_new=True)
    rt.paths_for("dc1").disk_path("hv2").unlink()

    report = orch.deploy(parse_topology(make_document()))

    assert report.devices == {"hv1": "unchanged", "hv2": "recreated", "leaf1": "unchanged"}
    assert rt.control_plane.calls("domain.destroy") == ["dc1-hv2"]
    assert rt.control_plane.calls("domain.create")[-1] == "dc1-hv2"
    assert len(rt.control_plane.calls("domain.create")) == 4
    assert rt.paths_for("dc1").disk_path("hv2").exists()
    assert any(w.resource == "dc1-hv2" for w in report.warnings)


def test_two_vdcs_from_one_document_do_not_collide(tmp_path: Path):
    rt = make_runtime(tmp_path)
    orch = rt.orchestrator()

    first = orch.deploy(parse_topology(make_document()), require_new=True)
    second = orch.deploy(parse_topology(make_document(), name="dc2"), require_new=True)

    assert first.subnet == IPv4Network("192.168.10.0/24")
    assert second.subnet == IPv4Network("192.168.11.0/24")
    assert any("in use" in w.message for w in second.warnings)

    dc1 = {n for n in rt.control_plane.domains if n.startswith("dc1-")}
    dc2 = {n for n in rt.control_plane.domains if n.startswith("dc2-")}
    assert len(dc1) == 3 and len(dc2) == 3
    assert dc1.isdisjoint(dc2)
    assert rt.control_plane.networks["dc2-mgmt"].subnet == IPv4Network("192.168.11.0/24")

    netplan = (rt.paths_for("dc2").cloud_init_device_dir("hv1") / "network-config").read_text(encoding="utf-8")
    assert "192.168.11.11/24" in netplan


def test_device_failure_is_collected_and_retried(tmp_path: Path):
    """
    hv2 fails to boot, the rest still deploys and the VDC is degraded.

    A rerun after the fault clears only creates hv2.
    """
    rt = make_runtime(tmp_path)
    orch = rt.orchestrator()
    rt.control_plane.failures.add(("domain.create", "dc1-hv2"))

    report = orch.deploy(parse_topology(make_document()), require_new=True)

    assert not report.ok
    assert report.devices["hv2"] == "failed"
    assert report.devices["leaf1"] == "created"
    assert report.failures[0].resource == "dc1-hv2"
    assert report.failures[0].stage == "devices"
    assert rt.registry.get("dc1").status == VdcStatus.degraded

    rt.control_plane.failures.clear()
    retry = orch.deploy(parse_topology(make_document()))

    assert retry.ok
    assert retry.devices == {"hv1": "unchanged", "hv2": "created", "leaf1": "unchanged"}
    assert rt.registry.get("dc1").status == VdcStatus.running


def test_failed_segment_degrades_attached_devices(tmp_path: Path):
    """
    Segment 1 cannot be created.

    leaf1 and hv2 boot without it instead of failing, and leaf1:swp2 is reported.
    """
    rt = make_runtime(tmp_path)
    rt.control_plane.failures.add(("network.create", "dc1-p2p-link-1"))

    report = rt.orchestrator().deploy(parse_topology(make_document()), require_new=True)

    assert not report.ok
    assert report.failures[0].resource == "dc1-p2p-link-1"
    assert rt.control_plane.specs["dc1-leaf1"].networks == ("dc1-mgmt", "dc1-p2p-link-0")
    assert rt.control_plane.specs["dc1-hv2"].networks == ("dc1-mgmt",)
    assert any(w.resource == "leaf1:swp2" for w in report.warnings)


def test_management_network_failure_is_fatal(tmp_path: Path):
    rt = make_runtime(tmp_path)
    rt.control_plane.failures.add(("network.create", "dc1-mgmt"))

    with pytest.raises(ControlPlaneError) as excinfo:
        rt.orchestrator().deploy(parse_topology(make_document()), require_new=True)

    assert excinfo.value.stage == "management_network"
    assert rt.control_plane.domains == {}


def test_invalid_topology_creates_nothing(tmp_path: Path):
    rt = make_runtime(tmp_path)
    doc = make_document()
    doc["cabling"][0]["destination"]["interface"] = "swp9"

    with pytest.raises(ValidationError):
        rt.orchestrator().deploy(parse_topology(doc), require_new=True)

    assert rt.control_plane.events == []
    assert rt.registry.list() == []
    assert not rt.paths_for("dc1").exists()


def test_create_refuses_an_existing_vdc(tmp_path: Path):
    rt = make_runtime(tmp_path)
    rt.orchestrator().deploy(parse_topology(make_document()), require_new=True)

    with pytest.raises(AllocationConflict):
        rt.orchestrator().deploy(parse_topology(make_document()), require_new=True)


def test_explicit_subnet_in_use_is_a_conflict(tmp_path: Path):
    rt = make_runtime(tmp_path)
    rt.orchestrator().deploy(parse_topology(make_document()), require_new=True)

    with pytest.raises(AllocationConflict):
        rt.orchestrator().deploy(
            parse_topology(make_document(), name="dc2"),
            requested_subnet=IPv4Network("192.168.10.0/24"),
        )
    assert rt.registry.names() == ["dc1"]


def test_deploy_of_unregistered_vdc_registers_it_with_a_warning(tmp_path: Path):
    rt = make_runtime(tmp_path)

    report = rt.orchestrator().deploy(parse_topology(make_document()))

    assert report.ok
    assert any("not registered" in w.message for w in report.warnings)
    assert rt.registry.names() == ["dc1"]


def test_prefixed_vdc_name_cannot_take_over_existing_domains(tmp_path: Path):
    """dc1 owns dc1-a-hv1 through its device a-hv1, so a VDC named dc1-a is refused."""
    rt = make_runtime(tmp_path)
    doc = make_document()
    doc["hypervisors"][0]["name"] = "a-hv1"
    doc["cabling"][0]["source"]["device"] = "a-hv1"
    rt.orchestrator().deploy(parse_topology(doc), require_new=True)
    before = dict(rt.control_plane.domains)

    with pytest.raises(AllocationConflict):
        rt.orchestrator().deploy(parse_topology(make_document(), name="dc1-a"), require_new=True)

    assert rt.control_plane.domains == before
    assert "dc1-a-hv1" in rt.control_plane.domains
    assert rt.registry.names() == ["dc1"]
    assert not rt.paths_for("dc1-a").exists()
