"""
Tests for the RouterOS API client
"""
import socket

from django.test import SimpleTestCase
from routeros_api import exceptions as routeros_exceptions

from hotspot.conf import RouterClientSettings
from hotspot.exceptions import (
    RouterUnreachable,
    RouterAuthFailed,
    RouterTimeout,
    RouterProtocolError,
)
from hotspot.routeros import (
    RouterDeviceClient,
    RouterTarget,
    classify_error,
    is_not_found,
    HOTSPOT_USER_PATH,
)


class FakeResponse(list):
    def __init__(self, rows=(), done_message=None):
        super().__init__(rows)
        self.done_message = done_message or {}


class FakeResource:
    def __init__(self, api, path):
        self.api = api
        self.path = path

    def get(self, **filters):
        self.api.calls.append(("get", self.path, filters))
        if self.api.error:
            raise self.api.error
        return self.api.rows.get(self.path, [])

    def call(self, command, params):
        self.api.calls.append((command, self.path, params))
        if self.api.error:
            raise self.api.error
        return FakeResponse(done_message={"ret": b"*1A"} if command == "add" else {})


class FakeApi:
    def __init__(self, rows=None, error=None):
        self.rows = rows or {"/system/identity": [{"name": "Kampala-1"}]}
        self.error = error
        self.calls = []

    def get_resource(self, path):
        return FakeResource(self, path)


class FakePool:
    socket_timeout = 15.0

    def __init__(self, outcome):
        self.outcome = outcome
        self.disconnected = False
        self.connect_timeout = None

    def get_api(self):
        self.connect_timeout = self.socket_timeout
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome

    def disconnect(self):
        self.disconnected = True


class PoolFactory:
    """Hands out pools whose get_api() follows the scripted outcomes in order."""

    def __init__(self, *outcomes, reject_keepalive=False):
        self.outcomes = list(outcomes)
        self.reject_keepalive = reject_keepalive
        self.pools = []
        self.calls = []

    def __call__(self, host, **kwargs):
        if self.reject_keepalive and "use_keepalive" in kwargs:
            raise TypeError("unexpected keyword argument 'use_keepalive'")
        self.calls.append((host, kwargs))
        pool = FakePool(self.outcomes.pop(0))
        self.pools.append(pool)
        return pool


TARGET = RouterTarget(name="Kampala-1", host="10.0.0.1", port=8728, username="admin", password="secret123")


def make_client(factory, attempts=3):
    sleeps = []
    client = RouterDeviceClient(
        client_settings=RouterClientSettings(timeout=2, attempts=attempts, retry_delay=0.5),
        pool_factory=factory,
        sleep=sleeps.append,
    )
    return client, sleeps


class ClassifyErrorTest(SimpleTestCase):
    """Test raw failures are mapped onto the router error taxonomy"""

    def test_timeout(self):
        self.assertIsInstance(classify_error(socket.timeout("timed out")), RouterTimeout)

    def test_auth_failure(self):
        error = classify_error(routeros_exceptions.RouterOsApiError("invalid user name or password (6)"))
        self.assertIsInstance(error, RouterAuthFailed)
        self.assertFalse(error.retryable)

    def test_unreachable(self):
        self.assertIsInstance(classify_error(ConnectionRefusedError(111, "Connection refused")), RouterUnreachable)
        self.assertIsInstance(
            classify_error(routeros_exceptions.RouterOsApiConnectionError("connection closed")),
            RouterUnreachable,
        )

    def test_protocol(self):
        error = classify_error(routeros_exceptions.RouterOsApiError("no such command"), host="10.0.0.1:8728")
        self.assertIsInstance(error, RouterProtocolError)
        self.assertIn("10.0.0.1:8728", str(error))

    def test_not_found_detection(self):
        self.assertTrue(is_not_found(RouterProtocolError("failure: no such item")))
        self.assertFalse(is_not_found(RouterProtocolError("failure: already have user")))


class RouterDeviceClientTest(SimpleTestCase):
    """Test connection retries and command execution"""

    def test_connect_retries_then_succeeds(self):
        """Test two refused connections are retried with the configured delay"""
        api = FakeApi()
        factory = PoolFactory(OSError("Connection refused"), OSError("Connection refused"), api)
        client, sleeps = make_client(factory)

        connection = client.connect(TARGET)

        self.assertIs(connection.api, api)
        self.assertEqual(len(factory.pools), 3)
        self.assertEqual(sleeps, [0.5, 0.5])
        self.assertTrue(factory.pools[0].disconnected)
        self.assertTrue(factory.calls[0][1]["plaintext_login"])

    def test_connect_gives_up_after_attempts(self):
        factory = PoolFactory(*[OSError("No route to host")] * 3)
        client, sleeps = make_client(factory)

        with self.assertRaises(RouterUnreachable):
            client.connect(TARGET)
        self.assertEqual(len(factory.pools), 3)
        self.assertEqual(len(sleeps), 2)

    def test_auth_failure_not_retried(self):
        """Test bad credentials fail on the first attempt"""
        factory = PoolFactory(routeros_exceptions.RouterOsApiError("invalid user name or password (6)"))
        client, sleeps = make_client(factory)

        with self.assertRaises(RouterAuthFailed):
            client.connect(TARGET)
        self.assertEqual(len(factory.pools), 1)
        self.assertEqual(sleeps, [])

    def test_connect_timeout_is_per_pool(self):
        """Test the connect timeout goes on the pool, not the process-wide socket default"""
        factory = PoolFactory(FakeApi())
        client, _ = make_client(factory)
        default = socket.getdefaulttimeout()

        client.connect(TARGET)

        self.assertEqual(factory.pools[0].connect_timeout, 2)
        self.assertEqual(socket.getdefaulttimeout(), default)

    def test_library_without_keepalive(self):
        factory = PoolFactory(FakeApi(), reject_keepalive=True)
        client, _ = make_client(factory)
        client.connect(TARGET)
        self.assertNotIn("use_keepalive", factory.calls[0][1])

    def test_query_and_execute(self):
        """Test reads return plain dicts and 'add' exposes the new .id"""
        api = FakeApi(rows={"/system/identity": [{"name": "Kampala-1"}]})
        client, _ = make_client(PoolFactory(api))
        connection = client.connect(TARGET)

        self.assertEqual(client.ping(connection), "Kampala-1")

        result = client.execute(
            connection,
            HOTSPOT_USER_PATH,
            "add",
            {"name": "BIL-AB12-CD34", "limit-bytes-total": 1024, "disabled": False, "comment": None},
        )
        self.assertEqual(result.ret, "*1A")
        command, path, params = api.calls[-1]
        self.assertEqual((command, path), ("add", HOTSPOT_USER_PATH))
        self.assertEqual(params, {"name": "BIL-AB12-CD34", "limit-bytes-total": "1024", "disabled": "no"})

    def test_query_errors_are_classified(self):
        api = FakeApi()
        client, _ = make_client(PoolFactory(api))
        connection = client.connect(TARGET)
        api.error = routeros_exceptions.RouterOsApiError("no such command")

        with self.assertRaises(RouterProtocolError):
            client.query(connection, HOTSPOT_USER_PATH, filters={"name": "x"})

    def test_connectivity_reports_failure_kind(self):
        client, _ = make_client(PoolFactory(*[OSError("No route to host")] * 3))
        result = client.test_connectivity(TARGET)
        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, "unreachable")

    def test_connectivity_success_closes_session(self):
        factory = PoolFactory(FakeApi())
        client, _ = make_client(factory)
        result = client.test_connectivity(TARGET)
        self.assertTrue(result.success)
        self.assertEqual(result.identity, "Kampala-1")
        self.assertTrue(factory.pools[0].disconnected)
