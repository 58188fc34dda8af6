"""
RouterOS API client for MikroTik hotspot routers

Every transport or protocol failure leaving this module is one of
RouterUnreachable, RouterAuthFailed, RouterTimeout or RouterProtocolError.
"""

import logging
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any

import routeros_api
from routeros_api import exceptions as routeros_exceptions

from .conf import RouterClientSettings
from .exceptions import (
    RouterError,
    RouterUnreachable,
    RouterAuthFailed,
    RouterTimeout,
    RouterProtocolError,
)

logger = logging.getLogger(__name__)

HOTSPOT_USER_PATH = "/ip/hotspot/user"
HOTSPOT_ACTIVE_PATH = "/ip/hotspot/active"
HOTSPOT_PROFILE_PATH = "/ip/hotspot/user/profile"
IDENTITY_PATH = "/system/identity"
RESOURCE_PATH = "/system/resource"
INTERFACE_PATH = "/interface"

AUTH_FAILURE_MARKERS = (
    "invalid user name or password",
    "cannot log in",
    "not logged in",
    "login failure",
)
NOT_FOUND_MARKERS = ("no such item", "not found", "no such user")

@dataclass(frozen=True)
class RouterTarget:
    """Decrypted connection details for a single router."""

    name: str
    host: str
    port: int
    username: str
    password: str = field(repr=False)

    @property
    def address(self):
        return f"{self.host}:{self.port}"


@dataclass
class ExecuteResult:
    ret: Optional[str] = None
    rows: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ConnectivityResult:
    success: bool
    identity: str = ""
    response_time_ms: Optional[int] = None
    error: str = ""
    error_kind: str = ""

    def as_dict(self):
        return {
            "success": self.success,
            "identity": self.identity,
            "response_time_ms": self.response_time_ms,
            "error": self.error,
            "error_kind": self.error_kind,
        }


class RouterConnection:
    """
    An authenticated API session. The lock serializes every command on it,
    so a pooled connection is never driven by two threads at once.
    """

    def __init__(self, target: RouterTarget, pool, api):
        self.target = target
        self.pool = pool
        self.api = api
        self.lock = threading.RLock()
        self.opened_at = time.monotonic()
        self.closed = False

    def __repr__(self):
        return f"<RouterConnection {self.target.name} {self.target.address}>"

    def close(self):
        with self.lock:
            if self.closed:
                return
            self.closed = True
            _disconnect_pool(self.pool, self.target)


def _disconnect_pool(pool, target):
    if pool is None:
        return
    try:
        pool.disconnect()
    except (OSError, routeros_exceptions.RouterOsApiError) as e:
        # Peer already gone; nothing left to release
        logger.debug(f"Ignoring error while closing {target.address}: {e}")


def classify_error(exc, host=None) -> RouterError:
    """Map a raw exception from the transport or library onto the router error taxonomy."""
    if isinstance(exc, RouterError):
        return exc

    message = str(exc) or exc.__class__.__name__
    lowered = message.lower()

    if isinstance(exc, socket.timeout) or "timed out" in lowered:
        return RouterTimeout(f"Timed out: {message}", host=host, cause=exc)
    if any(marker in lowered for marker in AUTH_FAILURE_MARKERS):
        return RouterAuthFailed(f"Authentication failed: {message}", host=host, cause=exc)
    if isinstance(exc, (OSError, routeros_exceptions.RouterOsApiConnectionError)):
        return RouterUnreachable(f"Unreachable: {message}", host=host, cause=exc)
    return RouterProtocolError(f"Protocol error: {message}", host=host, cause=exc)


def is_not_found(error) -> bool:
    lowered = str(error).lower()
    return any(marker in lowered for marker in NOT_FOUND_MARKERS)


def _stringify(params):
    """The string-mode API only accepts text values."""
    prepared = {}
    for key, value in (params or {}).items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "yes" if value else "no"
        prepared[key] = str(value)
    return prepared


class RouterDeviceClient:
    """
    Speaks the RouterOS API to one device at a time.

    Connections are opened with a bounded socket timeout and retried a fixed
    number of times; authentication failures are not retried.
    """

    def __init__(self, client_settings=None, pool_factory=None, sleep=time.sleep):
        self.settings = client_settings or RouterClientSettings.from_settings()
        self._pool_factory = pool_factory or routeros_api.RouterOsApiPool
        self._sleep = sleep

    def _make_pool(self, target: RouterTarget):
        try:
            return self._pool_factory(
                target.host,
                username=target.username,
                password=target.password,
                port=target.port,
                use_ssl=self.settings.use_ssl,
                plaintext_login=self.settings.plaintext_login,
                use_keepalive=True,
                ssl_verify=self.settings.ssl_verify,
            )
        except TypeError:
            # Fallback for older versions that don't support use_keepalive
            return self._pool_factory(
                target.host,
                username=target.username,
                password=target.password,
                port=target.port,
                use_ssl=self.settings.use_ssl,
                plaintext_login=self.settings.plaintext_login,
                ssl_verify=self.settings.ssl_verify,
            )

    def connect(self, target: RouterTarget) -> RouterConnection:
        attempts = self.settings.attempts
        last_error = None

        for attempt in range(1, attempts + 1):
            pool = None
            try:
                pool = self._make_pool(target)
                # Per-pool; get_api() passes it to socket.create_connection
                pool.socket_timeout = self.settings.timeout
                api = pool.get_api()
                logger.debug(
                    f"RouterOS API connected to {target.name} ({target.address}) on attempt {attempt}"
                )
                return RouterConnection(target, pool, api)
            except Exception as e:
                _disconnect_pool(pool, target)
                last_error = classify_error(e, host=target.address)
                logger.warning(
                    f"RouterOS connection attempt {attempt}/{attempts} to "
                    f"{target.name} ({target.address}) failed: {last_error}"
                )
                if not last_error.retryable:
                    break
                if attempt < attempts:
                    self._sleep(self.settings.retry_delay)

        logger.error(
            f"Failed to connect to router {target.name} ({target.address}): {last_error}"
        )
        raise last_error

    def query(self, connection: RouterConnection, path, filters=None, fields=None):
        """Read rows from a menu path. Never mutates router state."""
        with connection.lock:
            try:
                rows = connection.api.get_resource(path).get(**_stringify(filters))
            except Exception as e:
                raise classify_error(e, host=connection.target.address) from e

        rows = [dict(row) for row in rows]
        if fields:
            rows = [{k: row.get(k) for k in fields} for row in rows]
        return rows

    def execute(self, connection: RouterConnection, path, command, params=None):
        """
        Run a write/action command (add, set, remove, ...) on a menu path.
        For 'add' the result carries the router-assigned '.id' in `ret`.
        """
        with connection.lock:
            try:
                response = connection.api.get_resource(path).call(
                    command, _stringify(params)
                )
            except Exception as e:
                raise classify_error(e, host=connection.target.address) from e

        done = getattr(response, "done_message", None) or {}
        ret = done.get("ret")
        if isinstance(ret, bytes):
            ret = ret.decode()
        return ExecuteResult(ret=ret, rows=[dict(row) for row in (response or [])])

    def ping(self, connection: RouterConnection):
        rows = self.query(connection, IDENTITY_PATH)
        return rows[0].get("name", "") if rows else ""

    def test_connectivity(self, target: RouterTarget) -> ConnectivityResult:
        """Open a throw-away session, read the identity and close it again."""
        started = time.monotonic()
        connection = None
        try:
            connection = self.connect(target)
            identity = self.ping(connection)
        except RouterError as e:
            return ConnectivityResult(success=False, error=str(e), error_kind=e.kind)
        finally:
            if connection is not None:
                connection.close()

        elapsed = int((time.monotonic() - started) * 1000)
        return ConnectivityResult(success=True, identity=identity, response_time_ms=elapsed)
