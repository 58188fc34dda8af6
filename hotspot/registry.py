"""
Router device registry: pooled connections, cached reads and health state
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from django.core.cache import cache as default_cache
from django.utils import timezone

from .conf import CacheTTLs
from .exceptions import RouterError, RouterConnectionError, RouterAuthFailed
from .models import RouterDevice
from .repository import RouterDeviceRepository
from .routeros import (
    RouterDeviceClient,
    HOTSPOT_ACTIVE_PATH,
    HOTSPOT_USER_PATH,
    HOTSPOT_PROFILE_PATH,
    INTERFACE_PATH,
    RESOURCE_PATH,
)
from .utils import parse_uptime

logger = logging.getLogger(__name__)

CACHE_PREFIX = "hotspot:router"
_MISS = object()

# Keys that do not embed a username; dropped together by invalidate_device
DEVICE_KEYS = (
    "active_users",
    "system_resources",
    "interfaces",
    "total_users",
    "hotspot_profiles",
)


@dataclass
class DeviceHealth:
    device_id: str
    status: str
    identity: str = ""
    uptime_seconds: int = 0
    version: str = ""
    cpu_load: Optional[int] = None
    error: str = ""

    def as_dict(self):
        return {
            "device_id": self.device_id,
            "status": self.status,
            "identity": self.identity,
            "uptime_seconds": self.uptime_seconds,
            "version": self.version,
            "cpu_load": self.cpu_load,
            "error": self.error,
        }


class RouterDeviceRegistry:
    """
    Process-wide registry of router sessions and read caches.

    Cached reads are for display and monitoring only. Anything that decides
    what to write to a router goes through `run` and reads fresh.
    """

    def __init__(self, client=None, devices=None, ttls=None, cache=None):
        self.client = client or RouterDeviceClient()
        self.devices = devices or RouterDeviceRepository()
        self.ttls = ttls or CacheTTLs.from_settings()
        self.cache = cache or default_cache
        self._connections = {}
        self._connect_locks = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def _connect_lock(self, key):
        with self._lock:
            return self._connect_locks.setdefault(key, threading.Lock())

    def get_or_connect(self, device):
        key = str(device.pk)
        # One connect per device at a time; callers queue for the live session
        with self._connect_lock(key):
            with self._lock:
                connection = self._connections.get(key)

            if connection is not None and not connection.closed:
                try:
                    self.client.ping(connection)
                    return connection
                except RouterError as e:
                    logger.info(f"Dropping stale connection to {device.name}: {e}")
                    self.discard(device)

            try:
                connection = self.client.connect(self.devices.target_for(device))
            except RouterError as e:
                self._record_failure(device, e)
                raise

            with self._lock:
                self._connections[key] = connection

        self.mark_online(device)
        return connection

    def discard(self, device):
        with self._lock:
            connection = self._connections.pop(str(device.pk), None)
        if connection is not None:
            connection.close()

    def close_all(self):
        with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
        for connection in connections:
            connection.close()

    def run(self, device, operation):
        """
        Call operation(client, connection) on a live session for device.
        Connection-class failures drop the session and mark the device offline
        before propagating.
        """
        connection = self.get_or_connect(device)
        try:
            return operation(self.client, connection)
        except RouterConnectionError as e:
            self.discard(device)
            self._record_failure(device, e)
            raise

    def _record_failure(self, device, error):
        if isinstance(error, RouterAuthFailed) or not isinstance(error, RouterConnectionError):
            self.mark_error(device, str(error))
        else:
            self.mark_offline(device, str(error))

    # ------------------------------------------------------------------
    # Persisted status
    # ------------------------------------------------------------------

    def mark_online(self, device):
        now = timezone.now()
        RouterDevice.objects.filter(pk=device.pk).update(
            status="online", last_seen=now, last_error=""
        )
        if device.status != "online":
            logger.info(f"Router {device.name} is online")
        device.status, device.last_seen, device.last_error = "online", now, ""

    def mark_offline(self, device, reason=""):
        RouterDevice.objects.filter(pk=device.pk).update(
            status="offline", last_error=reason[:2000]
        )
        if device.status != "offline":
            logger.warning(f"Router {device.name} marked offline: {reason}")
        device.status, device.last_error = "offline", reason[:2000]

    def mark_error(self, device, reason=""):
        RouterDevice.objects.filter(pk=device.pk).update(
            status="error", last_error=reason[:2000]
        )
        logger.error(f"Router {device.name} marked error: {reason}")
        device.status, device.last_error = "error", reason[:2000]

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def cache_key(self, device, key):
        return f"{CACHE_PREFIX}:{device.pk}:{key}"

    def _cached(self, device, key, ttl, loader):
        cache_key = self.cache_key(device, key)
        value = self.cache.get(cache_key, _MISS)
        if value is not _MISS:
            return value
        value = self.run(device, loader)
        self.cache.set(cache_key, value, ttl)
        return value

    def invalidate(self, device, key):
        self.cache.delete(self.cache_key(device, key))

    def invalidate_user(self, device, username):
        """Drop every cached read a hotspot user write can affect."""
        self.cache.delete_many(
            [
                self.cache_key(device, "active_users"),
                self.cache_key(device, "total_users"),
                self.cache_key(device, f"user:{username}"),
                self.cache_key(device, f"connections:{username}"),
            ]
        )

    def invalidate_device(self, device):
        self.cache.delete_many([self.cache_key(device, key) for key in DEVICE_KEYS])

    # ------------------------------------------------------------------
    # Cached readers
    # ------------------------------------------------------------------

    def active_users(self, device):
        return self._cached(
            device,
            "active_users",
            self.ttls.volatile,
            lambda client, conn: client.query(conn, HOTSPOT_ACTIVE_PATH),
        )

    def system_resources(self, device):
        def load(client, conn):
            rows = client.query(conn, RESOURCE_PATH)
            return rows[0] if rows else {}

        return self._cached(device, "system_resources", self.ttls.volatile, load)

    def interface_stats(self, device):
        return self._cached(
            device,
            "interfaces",
            self.ttls.connections,
            lambda client, conn: client.query(
                conn,
                INTERFACE_PATH,
                fields=["name", "type", "running", "disabled", "rx-byte", "tx-byte"],
            ),
        )

    def user_connections(self, device, username):
        return self._cached(
            device,
            f"connections:{username}",
            self.ttls.connections,
            lambda client, conn: client.query(
                conn, HOTSPOT_ACTIVE_PATH, filters={"user": username}
            ),
        )

    def user_by_name(self, device, username):
        def load(client, conn):
            rows = client.query(conn, HOTSPOT_USER_PATH, filters={"name": username})
            return rows[0] if rows else None

        return self._cached(device, f"user:{username}", self.ttls.static, load)

    def total_users(self, device):
        return self._cached(
            device,
            "total_users",
            self.ttls.static,
            lambda client, conn: len(client.query(conn, HOTSPOT_USER_PATH)),
        )

    def hotspot_profiles(self, device):
        return self._cached(
            device,
            "hotspot_profiles",
            self.ttls.static,
            lambda client, conn: client.query(
                conn,
                HOTSPOT_PROFILE_PATH,
                fields=["name", "rate-limit", "shared-users", "session-timeout"],
            ),
        )

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def health_check(self, device) -> DeviceHealth:
        """Fresh identity + resource read; persists uptime, version and status."""

        def probe(client, conn):
            identity = client.ping(conn)
            rows = client.query(conn, RESOURCE_PATH)
            return identity, (rows[0] if rows else {})

        try:
            identity, resource = self.run(device, probe)
        except RouterError as e:
            self.discard(device)
            if not isinstance(e, RouterConnectionError):
                self.mark_error(device, str(e))
            return DeviceHealth(
                device_id=str(device.pk), status=device.status, error=str(e)
            )

        uptime = parse_uptime(resource.get("uptime"))
        version = resource.get("version") or ""
        RouterDevice.objects.filter(pk=device.pk).update(
            uptime_seconds=uptime, router_version=version, router_identity=identity
        )
        device.uptime_seconds = uptime
        device.router_version = version
        device.router_identity = identity
        self.cache.set(
            self.cache_key(device, "system_resources"), resource, self.ttls.volatile
        )

        cpu_load = resource.get("cpu-load")
        return DeviceHealth(
            device_id=str(device.pk),
            status=device.status,
            identity=identity,
            uptime_seconds=uptime,
            version=version,
            cpu_load=int(cpu_load) if cpu_load not in (None, "") else None,
        )
