from __future__ import annotations

import copy
from ipaddress import IPv4Address, IPv4Interface, IPv4Network
from pathlib import Path
from typing import Any, Dict

import pytest
import yaml

from virtual_datacenter.core.errors import ValidationError
from virtual_datacenter.core.types import DeviceTier, ManagementNetwork
from virtual_datacenter.topology.loader import bind_management, dump_topology, load_topology, parse_topology
from virtual_datacenter.topology.validator import ensure_valid, validate_topology


def make_document(name: str = "dc1") -> Dict[str, Any]:
    """Two hypervisors on one leaf, two cables."""
    return {
        "global": {
            "datacenter_name": name,
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


def test_parse_builds_typed_topology():
    topo = parse_topology(make_document())

    assert topo.name == "dc1"
    assert [d.name for d in topo.devices] == ["hv1", "hv2", "leaf1"]
    assert [d.name for d in topo.hypervisors] == ["hv1", "hv2"]
    assert [d.name for d in topo.switches] == ["leaf1"]

    hv1 = topo.device("hv1")
    assert hv1.tier == DeviceTier.hypervisor
    assert hv1.router_id == IPv4Address("10.255.0.1")
    assert hv1.management_address == IPv4Interface("192.168.10.11/24")
    assert hv1.resources.vcpus == 2
    assert hv1.additional_disks[0].name == "data1"
    assert hv1.additional_disks[0].format == "qcow2"

    hv2 = topo.device("hv2")
    assert hv2.resources.memory_mb == 8192

    assert topo.management.subnet == IPv4Network("192.168.10.0/24")
    assert topo.management.dhcp_start == IPv4Address("192.168.10.50")
    assert len(topo.cables) == 2
    assert topo.cables[1].index == 1


def test_name_argument_overrides_document_name():
    assert parse_topology(make_document(), name="lab7").name == "lab7"


def test_missing_field_names_its_location():
    doc = make_document()
    del doc["hypervisors"][1]["asn"]

    with pytest.raises(ValidationError) as excinfo:
        parse_topology(doc)

    assert "hypervisors[1] (hv2)" in excinfo.value.errors[0]
    assert "asn" in excinfo.value.errors[0]


def test_unsafe_names_are_rejected_with_their_location():
    """Names become paths and libvirt names, so dots and slashes never get that far."""
    doc = make_document()
    doc["hypervisors"][1]["name"] = "hv2.rack1"
    with pytest.raises(ValidationError) as excinfo:
        parse_topology(doc)
    assert excinfo.value.errors[0].startswith("hypervisors[1].name: invalid name 'hv2.rack1'")

    with pytest.raises(ValidationError) as excinfo:
        parse_topology(make_document("../../etc"))
    assert excinfo.value.errors[0].startswith("global.datacenter_name:")

    with pytest.raises(ValidationError) as excinfo:
        parse_topology(make_document(), name="dc1/x")
    assert excinfo.value.errors[0].startswith("name:")


def test_unknown_switch_tier_is_rejected():
    doc = make_document()
    doc["switches"]["border"] = []

    with pytest.raises(ValidationError):
        parse_topology(doc)


def test_switch_without_interfaces_takes_them_from_cabling():
    doc = make_document()
    del doc["switches"]["leaf"][0]["data_interfaces"]

    leaf = parse_topology(doc).device("leaf1")

    assert [(i.name, i.position) for i in leaf.interfaces] == [("swp1", 0), ("swp2", 1)]


def test_valid_document_passes_validation():
    result = validate_topology(parse_topology(make_document()))

    assert result.ok
    assert result.errors == []
    assert result.evidence["devices"] == 3


def test_cable_to_undeclared_interface_names_cable_and_device():
    doc = make_document()
    doc["cabling"][1]["destination"]["interface"] = "swp9"

    result = validate_topology(parse_topology(doc))

    assert not result.ok
    assert "cable[1]" in result.errors[0]
    assert "leaf1" in result.errors[0]
    assert "swp9" in result.errors[0]


def test_interface_used_by_two_cables_is_rejected():
    doc = make_document()
    doc["cabling"][1]["destination"]["interface"] = "swp1"

    result = validate_topology(parse_topology(doc))

    assert not result.ok
    assert "already used by cable[0]" in result.errors[0]


def test_duplicates_are_collected_in_one_pass():
    doc = make_document()
    doc["hypervisors"][1]["router_id"] = "10.255.0.1"
    doc["hypervisors"][1]["asn"] = 65001
    doc["hypervisors"][1]["management"]["ip"] = "192.168.10.11/24"

    result = validate_topology(parse_topology(doc))

    assert not result.ok
    assert len(result.errors) == 3
    assert any("router_id" in e for e in result.errors)
    assert any("asn" in e for e in result.errors)
    assert any("management ip" in e for e in result.errors)


def test_validation_switches_turn_checks_off():
    doc = make_document()
    doc["hypervisors"][1]["asn"] = 65001
    doc["validation"] = {"check_asn_uniqueness": False}

    assert validate_topology(parse_topology(doc)).ok


def test_asn_out_of_range_is_rejected():
    doc = make_document()
    doc["hypervisors"][0]["asn"] = 0

    with pytest.raises(ValidationError) as excinfo:
        ensure_valid(parse_topology(doc))

    assert "hv1" in str(excinfo.value)


def test_unattached_interface_is_a_warning_not_an_error():
    doc = make_document()
    doc["hypervisors"][0]["data_interfaces"].append({"name": "enp3s0"})

    result = validate_topology(parse_topology(doc))

    assert result.ok


def test_load_reports_malformed_yaml(tmp_path: Path):
    path = tmp_path / "topology.yaml"
    path.write_text("global: [unclosed\n", encoding="utf-8")

    with pytest.raises(ValidationError):
        load_topology(path)


def test_bind_management_rebases_addresses_and_document(tmp_path: Path):
    topo = parse_topology(make_document())
    mgmt = ManagementNetwork.for_subnet(IPv4Network("192.168.12.0/24"))

    bound = bind_management(topo, mgmt)

    assert bound.device("hv1").management_address == IPv4Interface("192.168.12.11/24")
    assert bound.device("leaf1").management_address == IPv4Interface("192.168.12.21/24")
    assert bound.document["global"]["management"]["subnet"] == "192.168.12.0/24"
    assert bound.document["hypervisors"][0]["management"]["ip"] == "192.168.12.11/24"
    assert topo.device("hv1").management_address == IPv4Interface("192.168.10.11/24")

    path = tmp_path / "topology.yaml"
    assert dump_topology(bound, path)
    assert not dump_topology(bound, path)

    reloaded = load_topology(path)
    assert reloaded.management.subnet == IPv4Network("192.168.12.0/24")
    assert reloaded.device("hv2").management_address == IPv4Interface("192.168.12.12/24")


def test_document_round_trips_through_yaml(tmp_path: Path):
    doc = make_document("dc9")
    path = tmp_path / "topology.yaml"
    path.write_text(yaml.safe_dump(copy.deepcopy(doc)), encoding="utf-8")

    topo = load_topology(path)

    assert topo.name == "dc9"
    assert topo.document["hypervisors"][0]["name"] == "hv1"
