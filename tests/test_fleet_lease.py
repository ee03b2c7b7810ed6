import json
import logging
from unittest.mock import MagicMock

import pytest
import requests

from egress_probe.config import FleetSettings
from egress_probe.errors import LeaseAcquisitionError
from egress_probe.fleet import FleetLease, FleetLeaseManager, lease_duration_seconds
from egress_probe.nodes import build_descriptors


@pytest.fixture
def mock_session():
    return MagicMock()


@pytest.fixture
def settings():
    return FleetSettings(host="10.0.0.5", port=9876, authorization="secret-token")


@pytest.fixture
def descriptors(raw_nodes):
    return build_descriptors(raw_nodes)


def _response(text):
    response = MagicMock()
    response.text = text
    response.raise_for_status.return_value = None
    return response


def test_lease_duration_grows_with_node_count():
    assert lease_duration_seconds(3.0, 10.0, 0) == 3.0
    assert lease_duration_seconds(3.0, 10.0, 5) == 53.0


def test_lease_posts_nodes_and_returns_endpoints(mock_session, settings, descriptors):
    mock_session.post.return_value = _response(json.dumps({"pid": 4242, "ports": [40001, "40002"]}))

    manager = FleetLeaseManager(settings, session=mock_session)
    lease = manager.lease(descriptors, 23.0)

    assert lease == FleetLease(
        process_id=4242,
        endpoints=("http://10.0.0.5:40001", "http://10.0.0.5:40002"),
        expires_after_seconds=23.0,
    )
    args, kwargs = mock_session.post.call_args
    assert args[0] == "http://10.0.0.5:9876/start"
    assert kwargs["headers"]["Authorization"] == "secret-token"
    assert kwargs["timeout"] == settings.start_timeout_seconds
    assert kwargs["json"]["timeout"] == 23000
    assert [p["_proxies_index"] for p in kwargs["json"]["proxies"]] == [0, 2]


def test_lease_accepts_json_embedded_in_a_string(mock_session, settings, descriptors):
    inner = json.dumps({"pid": 7, "ports": [1, 2]})
    mock_session.post.return_value = _response(json.dumps(inner))

    lease = FleetLeaseManager(settings, session=mock_session).lease(descriptors, 10.0)

    assert lease.process_id == 7
    assert lease.endpoint_for(1) == "http://10.0.0.5:2"


def test_lease_omits_authorization_when_not_configured(mock_session, descriptors):
    mock_session.post.return_value = _response(json.dumps({"pid": 1, "ports": [1, 2]}))

    FleetLeaseManager(FleetSettings(), session=mock_session).lease(descriptors, 10.0)

    _, kwargs = mock_session.post.call_args
    assert "Authorization" not in kwargs["headers"]


@pytest.mark.parametrize(
    "body",
    [
        json.dumps({"ports": [1, 2]}),
        json.dumps({"pid": 1}),
        json.dumps({"pid": 1, "ports": [1]}),
        json.dumps({"pid": 1, "ports": [1, "x"]}),
        json.dumps([1, 2]),
        "<html>bad gateway</html>",
    ],
)
def test_lease_rejects_unusable_responses(mock_session, settings, descriptors, body):
    mock_session.post.return_value = _response(body)

    with pytest.raises(LeaseAcquisitionError):
        FleetLeaseManager(settings, session=mock_session).lease(descriptors, 10.0)


@pytest.mark.parametrize(
    "ports",
    [[40001], None, "40001,40002", [40001, "x"]],
)
def test_lease_stops_started_process_when_ports_are_unusable(mock_session, settings, descriptors, ports):
    mock_session.post.side_effect = [
        _response(json.dumps({"pid": 77, "ports": ports})),
        _response("ok"),
    ]

    with pytest.raises(LeaseAcquisitionError):
        FleetLeaseManager(settings, session=mock_session).lease(descriptors, 10.0)

    urls = [call.args[0] for call in mock_session.post.call_args_list]
    assert urls == ["http://10.0.0.5:9876/start", "http://10.0.0.5:9876/stop"]
    assert mock_session.post.call_args.kwargs["json"] == {"pid": [77]}


def test_lease_keeps_acquisition_error_when_stop_also_fails(mock_session, settings, descriptors, caplog):
    mock_session.post.side_effect = [
        _response(json.dumps({"pid": 77, "ports": [40001]})),
        requests.ConnectionError("refused"),
    ]

    with caplog.at_level(logging.WARNING, logger="egress_probe.fleet.lease"):
        with pytest.raises(LeaseAcquisitionError, match="1 ports for 2 nodes"):
            FleetLeaseManager(settings, session=mock_session).lease(descriptors, 10.0)

    assert "fleet stop failed for pid=77" in caplog.text


def test_lease_without_pid_posts_no_stop(mock_session, settings, descriptors):
    mock_session.post.return_value = _response(json.dumps({"ports": [1, 2]}))

    with pytest.raises(LeaseAcquisitionError):
        FleetLeaseManager(settings, session=mock_session).lease(descriptors, 10.0)

    assert mock_session.post.call_count == 1


def test_lease_wraps_transport_errors(mock_session, settings, descriptors):
    mock_session.post.side_effect = requests.ConnectionError("refused")

    with pytest.raises(LeaseAcquisitionError):
        FleetLeaseManager(settings, session=mock_session).lease(descriptors, 10.0)


def test_lease_wraps_http_errors(mock_session, settings, descriptors):
    response = _response("denied")
    response.raise_for_status.side_effect = requests.HTTPError("401 Unauthorized")
    mock_session.post.return_value = response

    with pytest.raises(LeaseAcquisitionError):
        FleetLeaseManager(settings, session=mock_session).lease(descriptors, 10.0)


def test_lease_requires_nodes(mock_session, settings):
    with pytest.raises(ValueError):
        FleetLeaseManager(settings, session=mock_session).lease([], 10.0)

    mock_session.post.assert_not_called()


def test_release_posts_stop(mock_session, settings):
    mock_session.post.return_value = _response("ok")
    lease = FleetLease(process_id=99, endpoints=("http://10.0.0.5:1",), expires_after_seconds=5.0)

    assert FleetLeaseManager(settings, session=mock_session).release(lease) is True

    args, kwargs = mock_session.post.call_args
    assert args[0] == "http://10.0.0.5:9876/stop"
    assert kwargs["json"] == {"pid": [99]}
    assert kwargs["timeout"] == settings.stop_timeout_seconds


def test_release_failure_is_logged_not_raised(mock_session, settings, caplog):
    mock_session.post.side_effect = requests.Timeout("slow")
    lease = FleetLease(process_id=99, endpoints=(), expires_after_seconds=5.0)

    with caplog.at_level(logging.WARNING, logger="egress_probe.fleet.lease"):
        assert FleetLeaseManager(settings, session=mock_session).release(lease) is False

    assert "fleet stop failed for pid=99" in caplog.text


def test_manager_context_closes_session(mock_session, settings):
    with FleetLeaseManager(settings, session=mock_session):
        pass

    mock_session.close.assert_called_once()
