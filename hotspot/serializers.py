"""
Serializers for API requests and responses
"""

from rest_framework import serializers

from .models import Customer, RouterDevice, Voucher, ProvisioningAttempt
from .utils import normalize_phone_number

CONNECTION_FIELDS = ("ip_address", "api_port", "username", "password")


class RouterDeviceSerializer(serializers.ModelSerializer):
    """
    External representation of a router. Credentials are never listed here;
    the encrypted column is left out explicitly.
    """

    class Meta:
        model = RouterDevice
        fields = [
            "id",
            "name",
            "ip_address",
            "api_port",
            "username",
            "status",
            "last_seen",
            "uptime_seconds",
            "last_error",
            "router_identity",
            "router_version",
            "location",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class RouterDeviceConfigSerializer(serializers.Serializer):
    """Validated router configuration for create and update"""

    name = serializers.CharField(max_length=255)
    ip_address = serializers.IPAddressField()
    api_port = serializers.IntegerField(default=8728, min_value=1, max_value=65535)
    username = serializers.CharField(max_length=100)
    password = serializers.CharField(min_length=6, max_length=255, write_only=True)
    location = serializers.JSONField(required=False, allow_null=True)

    def _check_unique(self, field, value):
        queryset = RouterDevice.objects.filter(**{field: value})
        if self.instance is not None:
            queryset = queryset.exclude(pk=self.instance.pk)
        if queryset.exists():
            raise serializers.ValidationError(
                f"A router with this {field.replace('_', ' ')} already exists"
            )
        return value

    def validate_name(self, value):
        value = value.strip()
        if not value:
            raise serializers.ValidationError("Name cannot be blank")
        return self._check_unique("name", value)

    def validate_ip_address(self, value):
        return self._check_unique("ip_address", value)


class ConnectivityTestSerializer(serializers.Serializer):
    ip_address = serializers.IPAddressField()
    api_port = serializers.IntegerField(default=8728, min_value=1, max_value=65535)
    username = serializers.CharField(max_length=100)
    password = serializers.CharField(min_length=6, max_length=255, write_only=True)


class CustomerSerializer(serializers.ModelSerializer):
    class Meta:
        model = Customer
        fields = ["id", "name", "phone_number", "email", "created_at"]
        read_only_fields = ["id", "created_at"]

    def validate_phone_number(self, value):
        try:
            return normalize_phone_number(value)
        except ValueError as e:
            raise serializers.ValidationError(str(e))


class VoucherSerializer(serializers.ModelSerializer):
    customer_name = serializers.CharField(source="customer.name", read_only=True)
    device_name = serializers.CharField(source="device.name", read_only=True, default=None)
    display_status = serializers.SerializerMethodField()

    class Meta:
        model = Voucher
        fields = [
            "id",
            "code",
            "profile",
            "validity_hours",
            "data_limit_mb",
            "price",
            "currency",
            "status",
            "display_status",
            "created_at",
            "activated_at",
            "expires_at",
            "used_at",
            "sms_sent_at",
            "customer",
            "customer_name",
            "payment",
            "device",
            "device_name",
            "provision_attempts",
            "last_error",
            "needs_attention",
        ]
        read_only_fields = fields

    def get_display_status(self, obj):
        # Customers see a paid-but-not-yet-provisioned voucher as processing
        if obj.status == "pending":
            return "processing"
        return obj.status


class ProvisioningAttemptSerializer(serializers.ModelSerializer):
    class Meta:
        model = ProvisioningAttempt
        fields = [
            "id",
            "voucher",
            "device",
            "action",
            "outcome",
            "error_kind",
            "error_detail",
            "retry_count",
            "remote_id",
            "already_present",
            "attempted_at",
        ]
        read_only_fields = fields


class PurchaseCompletedSerializer(serializers.Serializer):
    payment_id = serializers.UUIDField()


class ReasonSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=500, required=False, allow_blank=True, default="")


class TransferSerializer(serializers.Serializer):
    new_customer_id = serializers.UUIDField()
    reason = serializers.CharField(max_length=500, required=False, allow_blank=True, default="")


class IssueVouchersSerializer(serializers.Serializer):
    customer_id = serializers.UUIDField()
    package = serializers.CharField(max_length=64)
    count = serializers.IntegerField(min_value=1, max_value=50, default=1)
    device_id = serializers.UUIDField(required=False, allow_null=True, default=None)
    reason = serializers.CharField(max_length=500, required=False, allow_blank=True, default="")


class RenewSerializer(serializers.Serializer):
    additional_hours = serializers.IntegerField(min_value=1, max_value=720)
    reason = serializers.CharField(max_length=500, required=False, allow_blank=True, default="")
