import logging

import pytest

from egress_probe.nodes import build_descriptors, to_fleet_wire
from egress_probe.nodes.registry import FINGERPRINT_PREFIX


def test_build_descriptors_drops_invalid_nodes_and_keeps_indices(raw_nodes, caplog):
    with caplog.at_level(logging.WARNING, logger="egress_probe.nodes.registry"):
        descriptors = build_descriptors(raw_nodes)

    assert [d.index for d in descriptors] == [0, 2]
    assert [d.name for d in descriptors] == ["hk-01", "jp-02"]
    assert "Dropping node #1 (broken)" in caplog.text


def test_descriptor_wire_strips_internal_fields_and_carries_them(raw_nodes):
    jp = build_descriptors(raw_nodes)[1]

    assert "_gpt" not in jp.wire
    assert jp.wire["port"] == 443
    assert dict(jp.carried) == {"_gpt": False}

    payload = jp.to_wire()
    assert payload["_gpt"] is False
    assert payload["_proxies_index"] == 2
    assert payload["server"] == "2.2.2.2"


def test_descriptor_is_read_only(raw_nodes):
    hk = build_descriptors(raw_nodes)[0]

    with pytest.raises(TypeError):
        hk.wire["server"] = "9.9.9.9"


@pytest.mark.parametrize(
    "node",
    [
        {"type": "ss", "server": "1.1.1.1"},
        {"type": "ss", "server": "1.1.1.1", "port": 0},
        {"type": "ss", "server": "1.1.1.1", "port": 70000},
        {"type": "ss", "server": "1.1.1.1", "port": "abc"},
        {"type": "", "server": "1.1.1.1", "port": 443},
        "not-a-node",
    ],
)
def test_to_fleet_wire_rejects_invalid_nodes(node):
    with pytest.raises(ValueError):
        to_fleet_wire(node)


def test_custom_converter_returning_none_drops_node():
    nodes = [{"name": "a"}, {"name": "b"}]

    descriptors = build_descriptors(nodes, converter=lambda raw: None if raw["name"] == "a" else dict(raw))

    assert [d.index for d in descriptors] == [1]


def test_fingerprint_ignores_identity_and_carried_fields():
    base = {"name": "hk-01", "type": "ss", "server": "1.1.1.1", "port": 8388, "cipher": "aes-128-gcm"}
    renamed = dict(base, name="HK renamed", subName="sub", collectionName="col", id="x1", _gpt=True)

    first, second = build_descriptors([base, renamed])

    url = "https://svc.example/"
    assert first.fingerprint(url) == second.fingerprint(url)
    assert first.fingerprint(url).startswith(FINGERPRINT_PREFIX)


def test_fingerprint_changes_with_config_or_url():
    base = {"name": "hk-01", "type": "ss", "server": "1.1.1.1", "port": 8388}
    other = dict(base, port=8389)

    first, second = build_descriptors([base, other])

    assert first.fingerprint("https://a.example/") != second.fingerprint("https://a.example/")
    assert first.fingerprint("https://a.example/") != first.fingerprint("https://b.example/")
