from __future__ import annotations

from pathlib import Path

import pytest

from virtual_datacenter.core.errors import ValidationError
from virtual_datacenter.namespace.paths import SUBDIRS, VdcPaths, check_name, short_bridge


def test_names_and_paths_are_scoped_to_the_vdc(tmp_path: Path):
    paths = VdcPaths(tmp_path, "dc1")

    assert paths.domain_name("hv1") == "dc1-hv1"
    assert paths.device_from_domain("dc1-hv1") == "hv1"
    assert paths.mgmt_network_name == "dc1-mgmt"
    assert paths.segment_name(0) == "dc1-p2p-link-0"

    assert paths.base_dir == tmp_path / "config" / "vdc-dc1"
    assert paths.disk_path("hv1") == paths.base_dir / "disks" / "dc1-hv1.qcow2"
    assert paths.extra_disk_path("hv1", "data1", "raw") == paths.base_dir / "disks" / "dc1-hv1-data1.raw"
    assert paths.boot_iso_path("leaf1") == paths.base_dir / "cloud-init" / "dc1-leaf1-cidata.iso"
    assert paths.routing_config_path("leaf1") == paths.base_dir / "bgp-configs" / "leaf1-bgp.conf"
    assert paths.private_key == paths.base_dir / "ssh-keys" / "id_rsa"
    assert paths.public_key.name == "id_rsa.pub"


def test_two_vdcs_never_share_a_path_or_name(tmp_path: Path):
    a = VdcPaths(tmp_path, "dc1")
    b = VdcPaths(tmp_path, "dc2")

    assert a.disk_path("hv1") != b.disk_path("hv1")
    assert a.domain_name("hv1") != b.domain_name("hv1")
    assert a.bridge_name(a.segment_name(0)) != b.bridge_name(b.segment_name(0))
    assert not str(b.base_dir).startswith(str(a.base_dir) + "/")


def test_bridge_names_fit_the_kernel_limit():
    name = short_bridge("a-very-long-datacenter-name-p2p-link-123")
    assert len(name) <= 15
    assert name == short_bridge("a-very-long-datacenter-name-p2p-link-123")


@pytest.mark.parametrize("name", ["../etc", "dc1/x", "..", "hv1.rack1", "-dc1", "dc 1", ""])
def test_unsafe_vdc_names_are_refused(tmp_path: Path, name: str):
    """A VDC name becomes a directory under config/, so it may never leave it."""
    with pytest.raises(ValidationError) as excinfo:
        VdcPaths(tmp_path, name)

    assert excinfo.value.errors[0].startswith("vdc: invalid name")


def test_safe_names_pass_unchanged():
    assert check_name("dc1_lab-2", "vdc") == "dc1_lab-2"


def test_ensure_is_idempotent_and_remove_deletes_everything(tmp_path: Path):
    paths = VdcPaths(tmp_path, "dc1")
    paths.ensure()
    paths.ensure()

    for sub in SUBDIRS:
        assert (paths.base_dir / sub).is_dir()

    paths.disk_path("hv1").write_text("disk", encoding="utf-8")
    assert paths.list_disks() == [paths.disk_path("hv1")]
    assert paths.disk_usage() == 4

    removed = paths.remove()

    assert removed == [paths.base_dir]
    assert not paths.exists()
    assert paths.remove() == []


def test_remove_can_keep_named_subdirectories(tmp_path: Path):
    paths = VdcPaths(tmp_path, "dc1")
    paths.ensure()
    paths.private_key.write_text("key", encoding="utf-8")
    paths.disk_path("hv1").write_text("disk", encoding="utf-8")
    paths.topology_file.write_text("global: {}\n", encoding="utf-8")

    paths.remove(keep=["ssh-keys"])

    assert paths.private_key.exists()
    assert not paths.disks_dir.exists()
    assert not paths.topology_file.exists()

    assert paths.remove() == [paths.base_dir]
    assert not paths.exists()


def test_list_artifacts_groups_files_by_subdirectory(tmp_path: Path):
    paths = VdcPaths(tmp_path, "dc1")
    paths.ensure()
    seed = paths.cloud_init_device_dir("hv1")
    seed.mkdir(parents=True)
    (seed / "user-data").write_text("#cloud-config\n", encoding="utf-8")

    artifacts = paths.list_artifacts()

    assert artifacts["cloud-init"] == [seed / "user-data"]
    assert artifacts["disks"] == []
