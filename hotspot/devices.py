"""
Router management: register, test, update, delete and monitor MikroTik devices
"""

import logging

from django.db import IntegrityError, transaction
from django.utils import timezone
from rest_framework import serializers

from .exceptions import DeviceInUse
from .registry import RouterDeviceRegistry
from .repository import RouterDeviceRepository
from .routeros import RouterTarget
from .serializers import (
    CONNECTION_FIELDS,
    ConnectivityTestSerializer,
    RouterDeviceConfigSerializer,
)

logger = logging.getLogger(__name__)


class RouterDeviceService:
    def __init__(self, registry=None, devices=None):
        self.registry = registry or RouterDeviceRegistry()
        self.devices = devices or RouterDeviceRepository()
        self.client = self.registry.client

    def test_connectivity(self, config):
        serializer = ConnectivityTestSerializer(data=config)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        target = RouterTarget(
            name=config.get("name") or data["ip_address"],
            host=data["ip_address"],
            port=data["api_port"],
            username=data["username"],
            password=data["password"],
        )
        return self.client.test_connectivity(target)

    def add_device(self, config):
        """
        Validate, test the connection and persist. Nothing is written unless
        the router answered with the given credentials.
        """
        serializer = RouterDeviceConfigSerializer(data=config)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = self.client.test_connectivity(
            RouterTarget(
                name=data["name"],
                host=data["ip_address"],
                port=data["api_port"],
                username=data["username"],
                password=data["password"],
            )
        )
        if not result.success:
            logger.warning(
                f"Refusing to add router {data['name']} ({data['ip_address']}): {result.error}"
            )
            raise serializers.ValidationError(
                {"connection": [f"Connection test failed: {result.error}"]}
            )

        try:
            with transaction.atomic():
                device = self.devices.create(
                    name=data["name"],
                    ip_address=data["ip_address"],
                    api_port=data["api_port"],
                    username=data["username"],
                    password=data["password"],
                    location=data.get("location"),
                    router_identity=result.identity,
                    status="online",
                    last_seen=timezone.now(),
                )
        except IntegrityError:
            raise serializers.ValidationError(
                {"name": ["A router with this name or IP address already exists"]}
            )

        logger.info(f"Router {device.name} ({device.ip_address}:{device.api_port}) added")
        return device

    def update_device(self, device_id, patch):
        device = self.devices.get(device_id)
        serializer = RouterDeviceConfigSerializer(instance=device, data=patch, partial=True)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        connection_changed = self._connection_changed(device, data)
        if connection_changed:
            target = RouterTarget(
                name=data.get("name", device.name),
                host=data.get("ip_address", device.ip_address),
                port=data.get("api_port", device.api_port),
                username=data.get("username", device.username),
                password=data.get("password") or self.devices.get_password(device),
            )
            result = self.client.test_connectivity(target)
            if not result.success:
                raise serializers.ValidationError(
                    {"connection": [f"Connection test failed: {result.error}"]}
                )

        for field in ("name", "ip_address", "api_port", "username", "location"):
            if field in data:
                setattr(device, field, data[field])
        if "password" in data:
            self.devices.set_password(device, data["password"])

        try:
            with transaction.atomic():
                device.save()
        except IntegrityError:
            raise serializers.ValidationError(
                {"name": ["A router with this name or IP address already exists"]}
            )

        if connection_changed:
            # Pooled session and cached reads belong to the old endpoint
            self.registry.discard(device)
            self.registry.invalidate_device(device)
            logger.info(f"Router {device.name} connection settings updated")
        return device

    def _connection_changed(self, device, data):
        for field in CONNECTION_FIELDS:
            if field not in data:
                continue
            if field == "password":
                current = self.devices.get_password(device)
            else:
                current = getattr(device, field)
            if str(data[field]) != str(current):
                return True
        return False

    def delete_device(self, device_id):
        device = self.devices.get(device_id)
        vouchers, attempts = self.devices.dependency_counts(device)
        if vouchers or attempts:
            raise DeviceInUse(device, vouchers, attempts)

        self.registry.discard(device)
        self.registry.invalidate_device(device)
        name = device.name
        device.delete()
        logger.info(f"Router {name} deleted")

    def monitor_devices(self, device_id=None):
        if device_id:
            devices = [self.devices.get(device_id)]
        else:
            devices = list(self.devices.all())

        results = []
        for device in devices:
            health = self.registry.health_check(device)
            if health.error:
                logger.warning(f"Router {device.name} health check failed: {health.error}")
            results.append(health)
        return results
