from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List

from virtual_datacenter.controlplane.base import DiskAttachment, DomainInfo, DomainSpec, DomainState, NetworkSpec
from virtual_datacenter.core.settings import RegistryConfig, VdcSettings
from virtual_datacenter.runtime import Runtime
from virtual_datacenter.reconcile.orphans import owned_disks
from virtual_datacenter.topology.loader import parse_topology


def make_document(name: str = "dc1") -> Dict[str, Any]:
    return {
        "global": {"datacenter_name": name},
        "hypervisors": [
            {
                "name": "hv1",
                "router_id": "10.255.0.1",
                "asn": 65001,
                "management": {"ip": "192.168.10.11/24"},
                "data_interfaces": [{"name": "enp2s0"}],
            }
        ],
        "switches": {
            "leaf": [
                {"name": "leaf1", "router_id": "10.255.1.1", "asn": 65101, "management": {"ip": "192.168.10.21/24"}}
            ]
        },
        "cabling": [
            {"source": {"device": "hv1", "interface": "enp2s0"}, "destination": {"device": "leaf1", "interface": "swp1"}},
        ],
    }


def make_deployed(tmp_path: Path) -> Runtime:
    rt = Runtime.in_memory(VdcSettings(project_root=tmp_path, registry=RegistryConfig(retry_delay_seconds=0)))
    rt.orchestrator().deploy(parse_topology(make_document()), require_new=True)
    return rt


def inject_domain(rt: Runtime, name: str) -> None:
    rt.control_plane.create_domain(
        DomainSpec(name=name, vcpus=1, memory_mb=512, disks=(), networks=("dc1-mgmt",))
    )


def test_fresh_deployment_has_no_orphans(tmp_path: Path):
    rt = make_deployed(tmp_path)

    report = rt.reconciler("dc1").detect(rt.resolve_topology("dc1"))

    assert report.clean
    assert report.orphan_count == 0
    assert report.missing_domains == []
    assert report.missing_networks == []
    assert report.warnings() == []


def test_injected_domain_is_the_only_orphan(tmp_path: Path):
    rt = make_deployed(tmp_path)
    inject_domain(rt, "dc1-stray")

    report = rt.reconciler("dc1").detect(rt.resolve_topology("dc1"))

    assert report.orphan_count == 1
    assert report.orphaned_domains == ["dc1-stray"]


def test_missing_resources_are_reported(tmp_path: Path):
    rt = make_deployed(tmp_path)
    rt.control_plane.destroy_domain("dc1-leaf1")
    rt.control_plane.destroy_network("dc1-p2p-link-0")

    report = rt.reconciler("dc1").detect(rt.resolve_topology("dc1"))

    assert report.missing_domains == ["dc1-leaf1"]
    assert report.missing_networks == ["dc1-p2p-link-0"]
    assert [p.name for p in report.orphaned_disks] == ["dc1-leaf1.qcow2"]


def test_sibling_vdc_resources_are_not_orphans(tmp_path: Path):
    rt = make_deployed(tmp_path)
    rt.orchestrator().deploy(parse_topology(make_document("dc10")), require_new=True)

    report = rt.reconciler("dc1").detect(rt.resolve_topology("dc1"))

    assert report.clean


def test_cleanup_needs_confirmation(tmp_path: Path):
    rt = make_deployed(tmp_path)
    inject_domain(rt, "dc1-stray")
    reconciler = rt.reconciler("dc1")
    report = reconciler.detect(rt.resolve_topology("dc1"))
    prompts: List[str] = []

    def decline(prompt: str) -> bool:
        prompts.append(prompt)
        return False

    assert reconciler.cleanup(report).aborted
    assert reconciler.cleanup(report, confirm=decline).aborted
    assert len(prompts) == 1
    assert "dc1-stray" in rt.control_plane.domains


def test_cleanup_removes_orphans_independently(tmp_path: Path):
    rt = make_deployed(tmp_path)
    inject_domain(rt, "dc1-stray")
    rt.control_plane.create_network(NetworkSpec(name="dc1-p2p-link-9", bridge="br9"))
    rt.control_plane.failures.add(("network.destroy", "dc1-p2p-link-9"))
    disk = rt.paths_for("dc1").disks_dir / "dc1-old.qcow2"
    disk.write_text("old", encoding="utf-8")

    reconciler = rt.reconciler("dc1")
    result = reconciler.cleanup(reconciler.detect(rt.resolve_topology("dc1")), force=True)

    assert not result.ok
    assert result.removed_domains == ["dc1-stray"]
    assert result.removed_disks == [disk]
    assert result.failures[0].resource == "dc1-p2p-link-9"
    assert rt.control_plane.calls("domain.force_stop") == ["dc1-stray"]
    assert "dc1-hv1" in rt.control_plane.domains



def test_disk_of_a_gone_device_is_reported_next_to_a_prefix_sharing_device(tmp_path: Path):
    """hv1 is live and hv1-b is gone, so dc1-hv1-b.qcow2 has no owner."""
    doc = make_document()
    doc["hypervisors"].append(
        {"name": "hv1-b", "router_id": "10.255.0.2", "asn": 65002, "management": {"ip": "192.168.10.12/24"}}
    )
    rt = Runtime.in_memory(VdcSettings(project_root=tmp_path, registry=RegistryConfig(retry_delay_seconds=0)))
    rt.orchestrator().deploy(parse_topology(doc), require_new=True)
    rt.control_plane.destroy_domain("dc1-hv1-b")

    report = rt.reconciler("dc1").detect(rt.resolve_topology("dc1"))

    assert report.missing_domains == ["dc1-hv1-b"]
    assert [p.name for p in report.orphaned_disks] == ["dc1-hv1-b.qcow2"]


def test_owned_disks_match_exact_paths_not_file_stems(tmp_path: Path):
    """A dot in a device name must not cut the disk name short."""
    rt = make_deployed(tmp_path)
    paths = rt.paths_for("dc1")
    topology = parse_topology(make_document())
    next(d for d in topology.devices if d.name == "hv1").name = "hv1.rack1"
    live = [DomainInfo(name="dc1-hv1.rack1", state=DomainState.running)]

    owned = owned_disks(paths, topology, live)

    assert paths.disks_dir / "dc1-hv1.rack1.qcow2" in owned
    assert paths.disks_dir / "dc1-hv1.qcow2" not in owned
    assert paths.disks_dir / "dc1-hv1-data1.qcow2" not in owned


def test_disks_attached_to_a_live_domain_are_owned(tmp_path: Path):
    rt = make_deployed(tmp_path)
    paths = rt.paths_for("dc1")
    scratch = paths.disks_dir / "dc1-stray.qcow2"
    scratch.write_text("scratch", encoding="utf-8")
    rt.control_plane.create_domain(
        DomainSpec(
            name="dc1-stray", vcpus=1, memory_mb=512, disks=(DiskAttachment(path=scratch),), networks=("dc1-mgmt",)
        )
    )

    report = rt.reconciler("dc1").detect(rt.resolve_topology("dc1"))

    assert report.orphaned_domains == ["dc1-stray"]
    assert report.orphaned_disks == []
