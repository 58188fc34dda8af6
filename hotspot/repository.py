"""
Persistence boundary for vouchers and router devices
"""

import logging
from datetime import timedelta

from django.db import IntegrityError, transaction
from django.db.models import Q
from django.utils import timezone

from .crypto import encrypt_value, decrypt_value
from .exceptions import VoucherNotFound, DeviceNotFound
from .models import Voucher, RouterDevice, ProvisioningAttempt
from .routeros import RouterTarget
from .utils import generate_voucher_code, generate_password

logger = logging.getLogger(__name__)

CODE_GENERATION_ATTEMPTS = 10


class VoucherRepository:
    """Queries and bookkeeping writes for vouchers (never status changes)."""

    def get(self, voucher_id):
        try:
            return Voucher.objects.select_related("customer", "payment", "device").get(
                pk=voucher_id
            )
        except (Voucher.DoesNotExist, ValueError):
            raise VoucherNotFound(f"Voucher {voucher_id} not found")

    def find_by_code(self, code):
        try:
            return Voucher.objects.select_related("customer", "payment", "device").get(
                code=code.strip().upper()
            )
        except Voucher.DoesNotExist:
            raise VoucherNotFound(f"Voucher {code} not found")

    def find_by_status(self, status):
        return Voucher.objects.filter(status=status)

    def find_expired(self, now=None):
        now = now or timezone.now()
        return Voucher.objects.filter(status="active", expires_at__lte=now).order_by(
            "expires_at"
        )

    def find_retryable_pending(self, max_attempts, now=None):
        now = now or timezone.now()
        return (
            Voucher.objects.filter(
                status="pending",
                needs_attention=False,
                provision_attempts__lt=max_attempts,
            )
            .filter(Q(next_retry_at__isnull=True) | Q(next_retry_at__lte=now))
            .filter(Q(provision_lease_until__isnull=True) | Q(provision_lease_until__lte=now))
            .order_by("created_at")
        )

    def find_pending_deprovision(self):
        return Voucher.objects.filter(deprovision_pending=True, device__isnull=False)

    def find_for_payment(self, payment):
        return Voucher.objects.filter(payment=payment).first()

    def create_voucher(self, customer, package, price, currency, payment=None, device=None,
                       metadata=None):
        """Create a pending voucher with a fresh unique code."""
        for _ in range(CODE_GENERATION_ATTEMPTS):
            code = generate_voucher_code()
            if Voucher.objects.filter(code=code).exists():
                continue
            try:
                with transaction.atomic():
                    return Voucher.objects.create(
                        code=code,
                        password=generate_password(),
                        profile=package.profile,
                        validity_hours=package.validity_hours,
                        data_limit_mb=package.data_limit_mb,
                        price=price,
                        currency=currency,
                        customer=customer,
                        payment=payment,
                        device=device,
                        metadata=metadata or {},
                    )
            except IntegrityError:
                if payment is not None and Voucher.objects.filter(payment=payment).exists():
                    raise
                # Code collided with a concurrent insert
                continue
        raise RuntimeError("Could not generate a unique voucher code")

    def create_for_payment(self, payment, package):
        """
        Idempotent per payment: a second call (duplicate webhook) returns the
        voucher created by the first.
        """
        existing = self.find_for_payment(payment)
        if existing:
            return existing, False
        try:
            voucher = self.create_voucher(
                customer=payment.customer,
                package=package,
                price=payment.amount,
                currency=payment.currency,
                payment=payment,
                device=payment.router_device,
                metadata={"package": package.key},
            )
        except IntegrityError:
            # Lost the race on the payment one-to-one
            return self.find_for_payment(payment), False
        logger.info(f"Created voucher {voucher.code} for payment {payment.transaction_id}")
        return voucher, True

    def claim_for_retry(self, voucher, lease_seconds, now=None):
        """
        Take the per-voucher advisory lease. Only one sweeper wins the
        conditional update; everyone else gets False.
        """
        now = now or timezone.now()
        claimed = (
            Voucher.objects.filter(pk=voucher.pk, status="pending")
            .filter(Q(provision_lease_until__isnull=True) | Q(provision_lease_until__lte=now))
            .update(provision_lease_until=now + timedelta(seconds=lease_seconds))
        )
        return claimed == 1

    def release_lease(self, voucher):
        Voucher.objects.filter(pk=voucher.pk).update(provision_lease_until=None)

    def assign_device(self, voucher, device):
        Voucher.objects.filter(pk=voucher.pk, device__isnull=True).update(device=device)
        voucher.device = device

    def mark_deprovisioned(self, voucher):
        Voucher.objects.filter(pk=voucher.pk).update(deprovision_pending=False)
        voucher.deprovision_pending = False

    def record_deprovision_error(self, voucher, error):
        Voucher.objects.filter(pk=voucher.pk).update(last_error=str(error)[:2000])
        voucher.last_error = str(error)[:2000]

    def mark_sms_sent(self, voucher, sent_at):
        Voucher.objects.filter(pk=voucher.pk).update(sms_sent_at=sent_at)
        voucher.sms_sent_at = sent_at

    def has_successful_attempt(self, voucher, device, action="provision"):
        return ProvisioningAttempt.objects.filter(
            voucher=voucher, device=device, action=action, outcome="success"
        ).first()


class RouterDeviceRepository:
    """
    Encrypt-on-write / decrypt-on-read for router credentials.
    Nothing outside this class sees password_encrypted in clear text.
    """

    def get(self, device_id):
        try:
            return RouterDevice.objects.get(pk=device_id)
        except (RouterDevice.DoesNotExist, ValueError):
            raise DeviceNotFound(f"Router device {device_id} not found")

    def all(self):
        return RouterDevice.objects.all()

    def create(self, name, ip_address, api_port, username, password, **extra):
        device = RouterDevice(
            name=name,
            ip_address=ip_address,
            api_port=api_port,
            username=username,
            **extra,
        )
        self.set_password(device, password)
        device.save()
        return device

    def set_password(self, device, plain):
        device.password_encrypted = encrypt_value(plain)

    def get_password(self, device):
        return decrypt_value(device.password_encrypted)

    def target_for(self, device) -> RouterTarget:
        return RouterTarget(
            name=device.name,
            host=device.ip_address,
            port=int(device.api_port),
            username=device.username,
            password=self.get_password(device),
        )

    def dependency_counts(self, device):
        return (
            Voucher.objects.filter(device=device).count(),
            ProvisioningAttempt.objects.filter(device=device).count(),
        )
