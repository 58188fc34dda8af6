"""
Database models for hotspot vouchers and MikroTik router provisioning
"""

import logging
import uuid
from datetime import timedelta

from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q
from django.utils import timezone

from .utils import normalize_phone_number

logger = logging.getLogger(__name__)


class Customer(models.Model):
    """Owner of vouchers; reached by SMS on the normalized phone number"""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    phone_number = models.CharField(max_length=16, db_index=True)
    email = models.EmailField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return f"{self.name} ({self.phone_number})"

    def save(self, *args, **kwargs):
        if self.phone_number:
            self.phone_number = normalize_phone_number(self.phone_number)
        super().save(*args, **kwargs)


class RouterDevice(models.Model):
    """
    MikroTik router reachable over the RouterOS API.
    The password is stored only as a Fernet token; see RouterDeviceRepository
    for the encrypt/decrypt accessors.
    """

    STATUS_CHOICES = [
        ("online", "Online"),
        ("offline", "Offline"),
        ("error", "Error"),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255, unique=True)
    ip_address = models.GenericIPAddressField(unique=True)
    api_port = models.PositiveIntegerField(default=8728)
    username = models.CharField(max_length=100)
    password_encrypted = models.TextField()

    # Populated by health checks
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="offline")
    last_seen = models.DateTimeField(null=True, blank=True)
    uptime_seconds = models.BigIntegerField(default=0)
    last_error = models.TextField(blank=True)
    router_identity = models.CharField(max_length=100, blank=True)
    router_version = models.CharField(max_length=50, blank=True)
    location = models.JSONField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return f"{self.name} ({self.ip_address}:{self.api_port})"

    @property
    def is_online(self):
        return self.status == "online"


class Payment(models.Model):
    """Payment that funds a single voucher"""

    STATUS_CHOICES = [
        ("pending", "Pending"),
        ("completed", "Completed"),
        ("failed", "Failed"),
        ("refund_pending", "Refund Pending"),
        ("refunded", "Refunded"),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    customer = models.ForeignKey(
        Customer, on_delete=models.PROTECT, related_name="payments"
    )
    amount = models.DecimalField(max_digits=10, decimal_places=2)
    currency = models.CharField(max_length=3, default="UGX")
    transaction_id = models.CharField(max_length=100, unique=True)
    reference = models.CharField(max_length=100, blank=True)
    gateway = models.CharField(max_length=50, default="manual")
    package = models.CharField(max_length=50)
    router_device = models.ForeignKey(
        RouterDevice,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payments",
    )
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending")
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.transaction_id} - {self.currency} {self.amount} - {self.status}"

    @property
    def is_completed(self):
        return self.status == "completed"

    def mark_completed(self, reference=None):
        """Idempotent: a repeated gateway callback leaves completed_at untouched."""
        if self.status == "completed" and self.completed_at:
            logger.info(
                f"Payment {self.transaction_id} already marked completed, skipping duplicate processing"
            )
            return
        self.status = "completed"
        if reference:
            self.reference = reference
        self.completed_at = timezone.now()
        self.save(update_fields=["status", "reference", "completed_at"])

    def mark_refunded(self, detail=None):
        self.status = "refunded"
        if detail:
            self.metadata = {**(self.metadata or {}), "refund": detail}
        self.save(update_fields=["status", "metadata"])

    def mark_refund_pending(self, detail=None):
        self.status = "refund_pending"
        if detail:
            self.metadata = {**(self.metadata or {}), "refund": detail}
        self.save(update_fields=["status", "metadata"])


class Voucher(models.Model):
    """
    Time/data-limited hotspot access.

    status, activated_at and expires_at are owned by VoucherStateMachine and
    only change through its conditional updates; version is bumped on each.
    """

    STATUS_CHOICES = [
        ("pending", "Pending"),
        ("active", "Active"),
        ("used", "Used"),
        ("expired", "Expired"),
        ("disabled", "Disabled"),
        ("refunded", "Refunded"),
        ("transferred", "Transferred"),
    ]
    TERMINAL_STATUSES = ("used", "expired", "disabled", "refunded", "transferred")

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(max_length=32, unique=True)
    password = models.CharField(max_length=64)
    profile = models.CharField(max_length=64)
    validity_hours = models.PositiveIntegerField()
    data_limit_mb = models.PositiveIntegerField(null=True, blank=True)
    price = models.DecimalField(max_digits=10, decimal_places=2)
    currency = models.CharField(max_length=3, default="UGX")

    status = models.CharField(
        max_length=20, choices=STATUS_CHOICES, default="pending", db_index=True
    )
    version = models.PositiveIntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)
    activated_at = models.DateTimeField(null=True, blank=True)
    expires_at = models.DateTimeField(null=True, blank=True, db_index=True)
    used_at = models.DateTimeField(null=True, blank=True)
    sms_sent_at = models.DateTimeField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    customer = models.ForeignKey(
        Customer, on_delete=models.PROTECT, related_name="vouchers"
    )
    payment = models.OneToOneField(
        Payment,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="voucher",
    )
    device = models.ForeignKey(
        RouterDevice,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="vouchers",
    )

    # Provisioning bookkeeping
    provision_attempts = models.PositiveIntegerField(default=0)
    last_error = models.TextField(blank=True)
    next_retry_at = models.DateTimeField(null=True, blank=True)
    provision_lease_until = models.DateTimeField(null=True, blank=True)
    needs_attention = models.BooleanField(default=False)
    deprovision_pending = models.BooleanField(default=False)

    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "expires_at"], name="voucher_status_expiry_idx"),
            models.Index(fields=["status", "next_retry_at"], name="voucher_status_retry_idx"),
        ]

    def __str__(self):
        return f"{self.code} - {self.profile} - {self.status}"

    @classmethod
    def from_db(cls, db, field_names, values):
        instance = super().from_db(db, field_names, values)
        instance._loaded_pricing = (
            instance.__dict__.get("price"),
            instance.__dict__.get("currency"),
        )
        return instance

    def save(self, *args, **kwargs):
        loaded = getattr(self, "_loaded_pricing", None)
        if loaded and loaded[0] is not None:
            if (self.price, self.currency) != loaded:
                raise ValidationError(
                    f"Price and currency of voucher {self.code} cannot change once set"
                )
        if (self.activated_at is None) != (self.expires_at is None):
            raise ValidationError(
                "activated_at and expires_at must be set together"
            )
        super().save(*args, **kwargs)
        self._loaded_pricing = (self.price, self.currency)

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES

    def is_expired(self, now=None):
        now = now or timezone.now()
        return self.expires_at is not None and self.expires_at <= now

    def remaining_time(self, now=None):
        if not self.expires_at:
            return timedelta(hours=self.validity_hours)
        now = now or timezone.now()
        return max(self.expires_at - now, timedelta(0))


class ProvisioningAttempt(models.Model):
    """
    One router write for a voucher. At most one success may exist per
    voucher, device and action; that row is what makes provisioning idempotent.
    """

    ACTION_CHOICES = [
        ("provision", "Provision"),
        ("deprovision", "Deprovision"),
    ]
    OUTCOME_CHOICES = [
        ("success", "Success"),
        ("failure", "Failure"),
    ]

    voucher = models.ForeignKey(
        Voucher, on_delete=models.CASCADE, related_name="provisioning_attempts"
    )
    device = models.ForeignKey(
        RouterDevice,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="provisioning_attempts",
    )
    action = models.CharField(max_length=20, choices=ACTION_CHOICES, default="provision")
    outcome = models.CharField(max_length=20, choices=OUTCOME_CHOICES)
    error_kind = models.CharField(max_length=30, blank=True)
    error_detail = models.TextField(blank=True)
    retry_count = models.PositiveIntegerField(default=0)
    remote_id = models.CharField(max_length=64, blank=True)
    already_present = models.BooleanField(default=False)
    attempted_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["-attempted_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["voucher", "device", "action"],
                condition=Q(outcome="success"),
                name="unique_successful_provisioning",
            )
        ]

    def __str__(self):
        return f"{self.voucher_id} {self.action} {self.outcome} @ {self.attempted_at}"


class VoucherTransition(models.Model):
    """Audit trail of applied state machine events"""

    voucher = models.ForeignKey(
        Voucher, on_delete=models.CASCADE, related_name="transitions"
    )
    event = models.CharField(max_length=30)
    from_status = models.CharField(max_length=20)
    to_status = models.CharField(max_length=20)
    detail = models.TextField(blank=True)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["created_at", "id"]

    def __str__(self):
        return f"{self.voucher_id}: {self.from_status} -> {self.to_status} ({self.event})"


class NotificationRecord(models.Model):
    """Durable send record, one per voucher and transition type"""

    TRANSITION_CHOICES = [
        ("activation", "Activation"),
        ("transfer", "Transfer"),
    ]
    STATUS_CHOICES = [
        ("pending", "Pending"),
        ("sending", "Sending"),
        ("sent", "Sent"),
        ("failed", "Failed"),
    ]

    voucher = models.ForeignKey(
        Voucher, on_delete=models.CASCADE, related_name="notifications"
    )
    transition = models.CharField(max_length=20, choices=TRANSITION_CHOICES)
    recipient = models.CharField(max_length=16)
    message = models.TextField()
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending")
    attempts = models.PositiveIntegerField(default=0)
    last_error = models.TextField(blank=True)
    sent_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        unique_together = ["voucher", "transition"]

    def __str__(self):
        return f"{self.voucher_id} {self.transition} -> {self.recipient} ({self.status})"


class VoucherTransfer(models.Model):
    """Audit record of a voucher moved to another customer"""

    from_voucher = models.OneToOneField(
        Voucher, on_delete=models.PROTECT, related_name="transfer_out"
    )
    to_voucher = models.OneToOneField(
        Voucher, on_delete=models.PROTECT, related_name="transfer_in"
    )
    from_customer = models.ForeignKey(
        Customer, on_delete=models.PROTECT, related_name="transfers_out"
    )
    to_customer = models.ForeignKey(
        Customer, on_delete=models.PROTECT, related_name="transfers_in"
    )
    reason = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.from_voucher_id} -> {self.to_voucher_id}"
