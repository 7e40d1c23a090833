"""
Tests for core/services.py - ServiceClient abstraction.

Tests cover:
- Success path (JSON response)
- Timeout/connection errors -> ServiceUnavailable
- HTTP 5xx with retries -> ServiceUnavailable
- HTTP 4xx -> ServiceHttpError (no retry)
- Invalid JSON -> ServiceDecodeError
- Auth errors (401/403) -> ServiceAuthError
- JSON-RPC envelope handling
"""

import unittest
from unittest.mock import patch, Mock, MagicMock

import requests as real_requests

from core.services import (
    ServiceClient,
    ServiceConfig,
    ServiceUnavailable,
    ServiceHttpError,
    ServiceDecodeError,
    ServiceAuthError,
    ServiceRpcError,
    get_service_config,
    get_service_client,
)


def _response(status_code=200, payload=None, text=""):
    response = Mock()
    response.status_code = status_code
    response.text = text
    if isinstance(payload, Exception):
        response.json.side_effect = payload
    else:
        response.json.return_value = payload
    return response


class TestServiceConfig(unittest.TestCase):
    """Test ServiceConfig dataclass."""

    def test_basic_config(self):
        config = ServiceConfig(name="node", base_url="http://localhost:9650")
        self.assertEqual(config.name, "node")
        self.assertEqual(config.base_url, "http://localhost:9650")
        self.assertEqual(config.timeout_s, 10.0)  # default
        self.assertEqual(config.max_retries, 3)  # default
        self.assertIsNone(config.api_key)

    def test_defaults_per_service(self):
        node = get_service_config("node", "http://127.0.0.1:9650")
        rpc = get_service_config("rpc", "https://api.example.org")
        self.assertEqual(node.max_retries, 1)
        self.assertEqual(rpc.timeout_s, 30.0)

    @patch.dict("os.environ", {"RPC_TIMEOUT_S": "7", "RPC_MAX_RETRIES": "5", "RPC_API_KEY": "k"})
    def test_env_overrides(self):
        config = get_service_config("rpc", "https://api.example.org")
        self.assertEqual(config.timeout_s, 7.0)
        self.assertEqual(config.max_retries, 5)
        self.assertEqual(config.api_key, "k")


class TestServiceClient(unittest.TestCase):
    """Test ServiceClient HTTP methods."""

    def setUp(self):
        self.config = ServiceConfig(
            name="test",
            base_url="http://test.local:9650",
            timeout_s=5.0,
            max_retries=2,
            backoff_factor=0.01,  # Fast backoff for tests
        )

    def _client(self, mock_session_class):
        mock_session = MagicMock()
        mock_session_class.return_value = mock_session
        return ServiceClient(self.config), mock_session

    def test_full_url_construction(self):
        client = ServiceClient(self.config)
        self.assertEqual(client._full_url("/ext/health"), "http://test.local:9650/ext/health")
        self.assertEqual(client._full_url("ext/health"), "http://test.local:9650/ext/health")

    @patch('core.services.requests.Session')
    def test_get_json_success(self, mock_session_class):
        client, session = self._client(mock_session_class)
        session.request.return_value = _response(200, {"healthy": True})

        self.assertEqual(client.get_json("/ext/health"), {"healthy": True})
        session.request.assert_called_once()

    @patch('core.services.requests.Session')
    def test_connection_error_retries(self, mock_session_class):
        client, session = self._client(mock_session_class)
        session.request.side_effect = real_requests.ConnectionError("Connection refused")

        with self.assertRaises(ServiceUnavailable) as ctx:
            client.get_json("/ext/health")

        self.assertEqual(ctx.exception.service, "test")
        self.assertEqual(session.request.call_count, self.config.max_retries)

    @patch('core.services.requests.Session')
    def test_timeout_retries(self, mock_session_class):
        client, session = self._client(mock_session_class)
        session.request.side_effect = real_requests.Timeout("Request timed out")

        with self.assertRaises(ServiceUnavailable):
            client.get_json("/ext/health")
        self.assertEqual(session.request.call_count, self.config.max_retries)

    @patch('core.services.requests.Session')
    def test_5xx_retries(self, mock_session_class):
        client, session = self._client(mock_session_class)
        session.request.return_value = _response(503, text="not bootstrapped")

        with self.assertRaises(ServiceUnavailable) as ctx:
            client.get_json("/ext/health")

        self.assertIsInstance(ctx.exception.cause, ServiceHttpError)
        self.assertEqual(session.request.call_count, self.config.max_retries)

    @patch('core.services.requests.Session')
    def test_4xx_no_retry(self, mock_session_class):
        client, session = self._client(mock_session_class)
        session.request.return_value = _response(404, text="Not found")

        with self.assertRaises(ServiceHttpError) as ctx:
            client.get_json("/missing")

        self.assertEqual(ctx.exception.status, 404)
        session.request.assert_called_once()

    @patch('core.services.requests.Session')
    def test_auth_errors(self, mock_session_class):
        client, session = self._client(mock_session_class)
        for status in (401, 403):
            session.request.return_value = _response(status, text="denied")
            with self.assertRaises(ServiceAuthError):
                client.get_json("/ext/admin")

    @patch('core.services.requests.Session')
    def test_invalid_json(self, mock_session_class):
        client, session = self._client(mock_session_class)
        session.request.return_value = _response(200, ValueError("Expecting value"))

        with self.assertRaises(ServiceDecodeError):
            client.get_json("/ext/health")

    @patch('core.services.requests.Session')
    def test_api_key_header(self, mock_session_class):
        self.config.api_key = "secret"
        client, session = self._client(mock_session_class)
        session.request.return_value = _response(200, {})

        client.get_json("/ext/health")

        _, kwargs = session.request.call_args
        self.assertEqual(kwargs["headers"], {"X-API-Key": "secret"})


class TestCallRpc(unittest.TestCase):
    """Test JSON-RPC 2.0 calls."""

    def setUp(self):
        self.config = ServiceConfig(name="node", base_url="http://127.0.0.1:9650", max_retries=1)

    @patch('core.services.requests.Session')
    def test_result_returned(self, mock_session_class):
        session = MagicMock()
        mock_session_class.return_value = session
        session.request.return_value = _response(200, {"jsonrpc": "2.0", "id": 1, "result": {"nodeID": "NodeID-x"}})

        client = ServiceClient(self.config)
        result = client.call_rpc("/ext/info", "info.getNodeID")

        self.assertEqual(result, {"nodeID": "NodeID-x"})
        _, kwargs = session.request.call_args
        self.assertEqual(kwargs["json"]["method"], "info.getNodeID")
        self.assertEqual(kwargs["json"]["params"], {})
        self.assertEqual(kwargs["json"]["jsonrpc"], "2.0")

    @patch('core.services.requests.Session')
    def test_ids_increase(self, mock_session_class):
        session = MagicMock()
        mock_session_class.return_value = session
        session.request.return_value = _response(200, {"result": "0x0"})

        client = ServiceClient(self.config)
        client.call_rpc("/ext/bc/C/rpc", "eth_getBalance", ["0xabc", "latest"])
        client.call_rpc("/ext/bc/C/rpc", "eth_getBalance", ["0xdef", "latest"])

        ids = [c.kwargs["json"]["id"] for c in session.request.call_args_list]
        self.assertEqual(ids, [1, 2])

    @patch('core.services.requests.Session')
    def test_error_object(self, mock_session_class):
        session = MagicMock()
        mock_session_class.return_value = session
        session.request.return_value = _response(
            200, {"error": {"code": -32601, "message": "method not found"}}
        )

        client = ServiceClient(self.config)
        with self.assertRaises(ServiceRpcError) as ctx:
            client.call_rpc("/ext/info", "info.nope")
        self.assertEqual(ctx.exception.code, -32601)

    @patch('core.services.requests.Session')
    def test_missing_result(self, mock_session_class):
        session = MagicMock()
        mock_session_class.return_value = session
        session.request.return_value = _response(200, {"jsonrpc": "2.0", "id": 1})

        client = ServiceClient(self.config)
        with self.assertRaises(ServiceDecodeError):
            client.call_rpc("/ext/info", "info.getNodeID")


class TestFactory(unittest.TestCase):
    def test_get_service_client(self):
        client = get_service_client("node", "http://127.0.0.1:9650")
        self.assertEqual(client.service_name, "node")
        self.assertEqual(client.base_url, "http://127.0.0.1:9650")
        client.close()


if __name__ == "__main__":
    unittest.main()
