"""
Tests for the HTTP bridge client with the requests session mocked out.
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import requests

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from bridge.client import MPCBridgeClient
from data.formats.data_format import Telemetry


def _client_with_session():
    client = MPCBridgeClient("http://localhost:4567/")
    client.session = MagicMock()
    return client


def _response(payload):
    response = MagicMock()
    response.json.return_value = payload
    return response


def _telemetry():
    return Telemetry(
        ptsx=[10.0, 20.0, 30.0, 40.0],
        ptsy=[0.0, 0.0, 0.0, 0.0],
        x=0.0,
        y=0.0,
        psi=0.0,
        speed=10.0,
    )


def test_base_url_trailing_slash_is_stripped():
    client = MPCBridgeClient("http://localhost:4567/")
    assert client.base_url == "http://localhost:4567"


def test_send_telemetry_posts_sample_and_returns_reply():
    client = _client_with_session()
    reply = {"status": "steer", "steering_angle": 0.05, "throttle": 1.0}
    client.session.post.return_value = _response(reply)

    assert client.send_telemetry(_telemetry()) == reply

    args, kwargs = client.session.post.call_args
    assert args[0] == "http://localhost:4567/api/telemetry"
    assert list(kwargs["json"]["ptsx"]) == [10.0, 20.0, 30.0, 40.0]
    assert kwargs["json"]["speed"] == 10.0
    assert kwargs["timeout"] == client.timeout


def test_send_telemetry_returns_none_on_request_error():
    client = _client_with_session()
    client.session.post.side_effect = requests.ConnectionError("refused")

    assert client.send_telemetry(_telemetry()) is None


def test_send_telemetry_returns_none_on_http_error():
    client = _client_with_session()
    response = _response({})
    response.raise_for_status.side_effect = requests.HTTPError("500 Server Error")
    client.session.post.return_value = response

    assert client.send_telemetry(_telemetry()) is None


def test_get_control_command():
    client = _client_with_session()
    command = {"steering_angle": -0.2, "throttle": 0.4, "converged": True, "timestamp": 1.0}
    client.session.get.return_value = _response(command)

    assert client.get_control_command() == command
    args, _ = client.session.get.call_args
    assert args[0] == "http://localhost:4567/api/vehicle/control"


def test_get_control_command_returns_none_on_request_error():
    client = _client_with_session()
    client.session.get.side_effect = requests.Timeout("timed out")

    assert client.get_control_command() is None


def test_health_check_true_when_server_answers():
    client = _client_with_session()
    client.session.get.return_value = _response({"status": "healthy"})

    assert client.health_check() is True
    args, _ = client.session.get.call_args
    assert args[0] == "http://localhost:4567/api/health"


def test_health_check_false_on_request_error():
    client = _client_with_session()
    client.session.get.side_effect = requests.ConnectionError("refused")

    assert client.health_check() is False


def test_health_check_false_on_http_error():
    client = _client_with_session()
    response = _response({})
    response.raise_for_status.side_effect = requests.HTTPError("503 Service Unavailable")
    client.session.get.return_value = response

    assert client.health_check() is False
