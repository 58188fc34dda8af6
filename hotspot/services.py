"""
Voucher service: the operations exposed to views, commands and the sweeper
"""

import logging
import math
from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone
from django.utils.module_loading import import_string

from .conf import SweeperSettings, VoucherPackage, load_packages
from .exceptions import (
    InvalidTransition,
    RouterError,
    CustomerNotFound,
    PaymentNotFound,
    PaymentNotCompleted,
    UnknownPackage,
)
from .models import Customer, Payment, RouterDevice, Voucher, VoucherTransfer
from .notifications import NotificationDispatcher
from .payments import PaymentResult
from .provisioning import ProvisioningCoordinator
from .registry import RouterDeviceRegistry
from .repository import RouterDeviceRepository, VoucherRepository
from .routeros import HOTSPOT_USER_PATH
from .state_machine import Event, VoucherStateMachine
from .utils import megabytes_to_bytes, parse_uptime, to_int

logger = logging.getLogger(__name__)

MAX_ISSUE_COUNT = 50


@dataclass
class UsageSnapshot:
    active_connections: int
    total_data_used_bytes: int
    is_expired: bool
    is_active: bool
    data_usage_percentage: Optional[float] = None
    router_reachable: bool = True

    def as_dict(self):
        return {
            "active_connections": self.active_connections,
            "total_data_used_bytes": self.total_data_used_bytes,
            "is_expired": self.is_expired,
            "is_active": self.is_active,
            "data_usage_percentage": self.data_usage_percentage,
            "router_reachable": self.router_reachable,
        }


@dataclass
class SyncResult:
    code: str
    status: str
    router_user_present: Optional[bool]
    actions: list = field(default_factory=list)
    error: str = ""

    def as_dict(self):
        return {
            "code": self.code,
            "status": self.status,
            "router_user_present": self.router_user_present,
            "actions": self.actions,
            "error": self.error,
        }


class VoucherService:
    def __init__(
        self,
        registry,
        notifier,
        gateway,
        coordinator=None,
        state_machine=None,
        vouchers=None,
        packages=None,
        sweeper_settings=None,
    ):
        self.registry = registry
        self.notifier = notifier
        self.gateway = gateway
        self.vouchers = vouchers or VoucherRepository()
        self.coordinator = coordinator or ProvisioningCoordinator(registry, self.vouchers)
        self.sweeper_settings = sweeper_settings or SweeperSettings.from_settings()
        self.state_machine = state_machine or VoucherStateMachine(self.sweeper_settings)
        self.packages = packages if packages is not None else load_packages()

    # ------------------------------------------------------------------
    # Purchase and activation
    # ------------------------------------------------------------------

    def purchase_completed(self, payment_id):
        """
        Payment callback entry point. Idempotent per payment: duplicate
        callbacks get the voucher created by the first one.

        A provisioning failure does not fail the purchase; the voucher comes
        back 'pending' and the sweeper keeps retrying it.
        """
        try:
            payment = Payment.objects.select_related("customer", "router_device").get(
                pk=payment_id
            )
        except (Payment.DoesNotExist, ValidationError, ValueError):
            raise PaymentNotFound(f"Payment {payment_id} not found")

        if not payment.is_completed:
            verification = self.gateway.verify_payment(payment.transaction_id)
            if not verification.success:
                raise PaymentNotCompleted(
                    f"Payment {payment.transaction_id} is {verification.status or payment.status}"
                )
            payment.mark_completed(verification.reference or None)

        package = self.packages.get(payment.package)
        if package is None:
            raise UnknownPackage(f"Unknown voucher package '{payment.package}'")

        voucher, created = self.vouchers.create_for_payment(payment, package)
        if not created:
            logger.info(
                f"Duplicate completion for payment {payment.transaction_id}; "
                f"voucher {voucher.code} is {voucher.status}"
            )

        if voucher.status == "pending" and not voucher.needs_attention:
            return self.activate(voucher)
        if voucher.status == "active":
            self.notifier.notify_activation(voucher, voucher.customer)
        return voucher

    def activate(self, voucher, claimed=False, notify=True):
        """
        Provision the hotspot user and move the voucher to active.
        Callers that already hold the retry lease pass claimed=True.
        """
        if not claimed and not self.vouchers.claim_for_retry(
            voucher, self.sweeper_settings.lease_seconds
        ):
            logger.info(f"Voucher {voucher.code} is being provisioned elsewhere")
            voucher.refresh_from_db()
            return voucher

        try:
            device = self._select_device(voucher)
            if device is not None and voucher.device_id is None:
                self.vouchers.assign_device(voucher, device)

            result = self.coordinator.provision(voucher, device)
            if not result.success:
                return self._record_provision_failure(voucher, result)

            try:
                voucher = self.state_machine.apply(
                    voucher, Event.PROVISION_SUCCEEDED, device=device
                )
            except InvalidTransition as e:
                # Disabled or refunded while the router write was in flight
                logger.warning(f"Voucher {voucher.code} changed during provisioning: {e}")
                voucher.refresh_from_db()
                self.deprovision_voucher(voucher)
                return voucher
        finally:
            self.vouchers.release_lease(voucher)

        if notify:
            self.notifier.notify_activation(voucher, voucher.customer)
        return voucher

    def _record_provision_failure(self, voucher, result):
        if result.error_kind == "conflict":
            return self.state_machine.apply(
                voucher, Event.PROVISION_REJECTED, error=str(result.error)
            )
        return self.state_machine.apply(
            voucher,
            Event.PROVISION_FAILED,
            error=str(result.error),
            # Non-retryable (e.g. bad router credentials) waits for an operator
            needs_attention=not result.retryable,
        )

    def _select_device(self, voucher):
        if voucher.device_id:
            return voucher.device
        if voucher.payment_id and voucher.payment.router_device_id:
            return voucher.payment.router_device
        devices = list(RouterDevice.objects.all()[:2])
        return devices[0] if len(devices) == 1 else None

    def retry_provisioning(self, voucher_id):
        """Operator action: clear the attention flag and try again now."""
        voucher = self.vouchers.get(voucher_id)
        if voucher.status != "pending":
            raise InvalidTransition(voucher.pk, voucher.status, "retry_provisioning")
        Voucher.objects.filter(pk=voucher.pk).update(
            needs_attention=False, next_retry_at=None, provision_attempts=0
        )
        voucher.refresh_from_db()
        return self.activate(voucher)

    def manual_activate(self, voucher_id, reason=""):
        """Activate without a router write (voucher issued by hand)."""
        voucher = self.vouchers.get(voucher_id)
        voucher = self.state_machine.apply(voucher, Event.MANUAL_ACTIVATE, reason=reason)
        self.notifier.notify_activation(voucher, voucher.customer)
        return voucher

    def issue_vouchers(self, customer_id, package_key, count=1, device_id=None, reason=""):
        """
        Issue vouchers without a payment (operator batch, giveaways).
        Each one is provisioned like a purchase; failures stay 'pending'
        for the sweeper.
        """
        if not 1 <= int(count) <= MAX_ISSUE_COUNT:
            raise ValidationError(f"count must be between 1 and {MAX_ISSUE_COUNT}")
        try:
            customer = Customer.objects.get(pk=customer_id)
        except (Customer.DoesNotExist, ValidationError, ValueError):
            raise CustomerNotFound(f"Customer {customer_id} not found")
        package = self.packages.get(package_key)
        if package is None:
            raise UnknownPackage(f"Unknown voucher package '{package_key}'")
        device = RouterDeviceRepository().get(device_id) if device_id else None

        issued = []
        for _ in range(int(count)):
            voucher = self.vouchers.create_voucher(
                customer=customer,
                package=package,
                price=Decimal("0.00"),
                currency=getattr(settings, "VOUCHER_CURRENCY", "UGX"),
                device=device,
                metadata={"package": package.key, "issued_manually": True, "reason": reason},
            )
            logger.info(f"Issued voucher {voucher.code} ({package.key}) to {customer.phone_number}")
            issued.append(self.activate(voucher))
        return issued
    # ------------------------------------------------------------------

    def admin_disable(self, voucher_id, reason=""):
        voucher = self.vouchers.get(voucher_id)
        event = Event.DEACTIVATE if voucher.status == "active" else Event.ADMIN_OVERRIDE
        voucher = self.state_machine.apply(voucher, event, reason=reason)
        logger.info(f"Voucher {voucher.code} disabled by admin: {reason}")
        self.deprovision_voucher(voucher)
        return voucher

    def refund(self, voucher_id, reason=""):
        voucher = self.vouchers.get(voucher_id)
        # Only one concurrent refund passes this line
        voucher = self.state_machine.apply(voucher, Event.REFUND, reason=reason)

        payment = voucher.payment
        if payment is not None:
            result = self._reverse_payment(payment, reason)
            detail = {
                "status": result.status,
                "message": result.message,
                "reason": reason,
                "at": timezone.now().isoformat(),
            }
            if result.success:
                payment.mark_refunded(detail)
                logger.info(f"Payment {payment.transaction_id} refunded for voucher {voucher.code}")
            else:
                payment.mark_refund_pending(detail)
                Voucher.objects.filter(pk=voucher.pk).update(
                    needs_attention=True,
                    last_error=f"Refund pending: {result.message or result.status}"[:2000],
                )
                voucher.refresh_from_db()
                logger.warning(
                    f"Refund for payment {payment.transaction_id} needs follow-up: "
                    f"{result.message or result.status}"
                )

        self.deprovision_voucher(voucher)
        return voucher

    def _reverse_payment(self, payment, reason):
        try:
            return self.gateway.refund_payment(payment.transaction_id, payment.amount, reason)
        except Exception as e:
            # Gateway down: the voucher is already refunded locally, money moves later
            logger.exception(f"Gateway refund for {payment.transaction_id} failed: {e}")
            return PaymentResult(success=False, status="error", message=str(e))

    def transfer(self, voucher_code, new_customer_id, reason=""):
        """
        Move the remaining validity to another customer. The original voucher
        becomes 'transferred' and a new voucher (new code and password) is
        minted for the recipient and activated. Returns the new voucher.
        """
        voucher = self.vouchers.find_by_code(voucher_code)
        try:
            new_customer = Customer.objects.get(pk=new_customer_id)
        except (Customer.DoesNotExist, ValidationError, ValueError):
            raise CustomerNotFound(f"Customer {new_customer_id} not found")
        if new_customer.pk == voucher.customer_id:
            raise ValidationError("Voucher already belongs to this customer")

        now = timezone.now()
        remaining_hours = max(1, math.ceil(voucher.remaining_time(now).total_seconds() / 3600))
        from_customer = voucher.customer

        with transaction.atomic():
            voucher = self.state_machine.apply(voucher, Event.TRANSFER, now=now, reason=reason)
            package = VoucherPackage(
                key=voucher.metadata.get("package", "transfer"),
                profile=voucher.profile,
                validity_hours=remaining_hours,
                data_limit_mb=voucher.data_limit_mb,
            )
            new_voucher = self.vouchers.create_voucher(
                customer=new_customer,
                package=package,
                price=voucher.price,
                currency=voucher.currency,
                device=voucher.device,
                metadata={"package": package.key, "transferred_from": voucher.code},
            )
            VoucherTransfer.objects.create(
                from_voucher=voucher,
                to_voucher=new_voucher,
                from_customer=from_customer,
                to_customer=new_customer,
                reason=reason,
            )

        logger.info(
            f"Voucher {voucher.code} transferred to {new_customer.phone_number} as "
            f"{new_voucher.code} ({remaining_hours}h remaining)"
        )
        self.deprovision_voucher(voucher)

        new_voucher = self.activate(new_voucher, notify=False)
        if new_voucher.status == "active":
            self.notifier.notify_transfer(new_voucher, new_customer, from_customer.name)
        return new_voucher

    def renew(self, voucher_code, additional_hours, reason=""):
        """
        Extend an active, unexpired voucher. The router's limit-uptime is
        raised to the new total; if the router cannot be reached the voucher
        keeps its new expiry and is flagged for a sync.
        """
        additional_hours = int(additional_hours)
        if additional_hours < 1:
            raise ValidationError("additional_hours must be positive")
        voucher = self.vouchers.find_by_code(voucher_code)
        voucher = self.state_machine.apply(
            voucher, Event.RENEW, hours=additional_hours, reason=reason
        )
        logger.info(
            f"Voucher {voucher.code} renewed by {additional_hours}h; expires {voucher.expires_at}"
        )

        if voucher.device_id is None:
            return voucher
        result = self.coordinator.update_limits(voucher, voucher.device)
        if not result.success:
            Voucher.objects.filter(pk=voucher.pk).update(
                needs_attention=True,
                last_error=f"Router limit update pending: {result.error}"[:2000],
            )
            voucher.refresh_from_db()
        return voucher

    def deprovision_voucher(self, voucher):
        if not voucher.deprovision_pending or voucher.device_id is None:
            return None
        result = self.coordinator.deprovision(voucher, voucher.device)
        if result.success:
            self.vouchers.mark_deprovisioned(voucher)
        else:
            self.vouchers.record_deprovision_error(
                voucher, f"Router cleanup pending: {result.error}"
            )
        return result

    # ------------------------------------------------------------------
    # Notifications and read models
    # ------------------------------------------------------------------

    def resend_notification(self, voucher_code):
        voucher = self.vouchers.find_by_code(voucher_code)
        if voucher.status != "active":
            logger.info(f"Not resending credentials for {voucher.code} in status {voucher.status}")
            return False
        return self.notifier.resend(voucher)

    def get_usage(self, voucher_code) -> UsageSnapshot:
        voucher = self.vouchers.find_by_code(voucher_code)
        now = timezone.now()
        connections = []
        reachable = True

        if voucher.status == "active" and voucher.device_id:
            try:
                connections = self.registry.user_connections(voucher.device, voucher.code)
            except RouterError as e:
                reachable = False
                logger.warning(f"Usage for {voucher.code} unavailable from router: {e}")

        total = sum(
            to_int(c.get("bytes-in")) + to_int(c.get("bytes-out")) for c in connections
        )
        percentage = None
        if voucher.data_limit_mb:
            percentage = min(
                100.0, round(total / megabytes_to_bytes(voucher.data_limit_mb) * 100, 2)
            )

        expired = voucher.status == "expired" or voucher.is_expired(now)
        return UsageSnapshot(
            active_connections=len(connections),
            total_data_used_bytes=total,
            is_expired=expired,
            is_active=voucher.status == "active" and not expired,
            data_usage_percentage=percentage,
            router_reachable=reachable,
        )

    def sync_with_router(self, voucher_code) -> SyncResult:
        """Reconcile the router's hotspot user with the voucher's status."""
        voucher = self.vouchers.find_by_code(voucher_code)
        device = voucher.device
        if device is None:
            return SyncResult(voucher.code, voucher.status, None, error="No router device")

        try:
            rows = self.registry.run(
                device,
                lambda client, conn: client.query(
                    conn, HOTSPOT_USER_PATH, filters={"name": voucher.code}
                ),
            )
        except RouterError as e:
            return SyncResult(voucher.code, voucher.status, None, error=str(e))

        present = bool(rows)
        enabled = present and rows[0].get("disabled") not in ("true", "yes")
        sync = SyncResult(voucher.code, voucher.status, present)

        if voucher.status == "active" and not enabled:
            result = self.coordinator.provision(voucher, device, force=True)
            sync.actions.append("reprovisioned" if result.success else "reprovision_failed")
            if not result.success:
                sync.error = str(result.error)
        elif voucher.status == "active" and (
            parse_uptime(rows[0].get("limit-uptime")) != voucher.validity_hours * 3600
        ):
            # Renewal that never reached the router
            result = self.coordinator.update_limits(voucher, device)
            sync.actions.append("limits_updated" if result.success else "limits_update_failed")
            if result.success:
                Voucher.objects.filter(pk=voucher.pk).update(needs_attention=False, last_error="")
            else:
                sync.error = str(result.error)
        elif voucher.status == "pending" and present:
            voucher = self.activate(voucher)
            sync.actions.append("activated" if voucher.status == "active" else "activation_failed")
        elif voucher.is_terminal and enabled:
            Voucher.objects.filter(pk=voucher.pk).update(deprovision_pending=True)
            voucher.deprovision_pending = True
            result = self.deprovision_voucher(voucher)
            sync.actions.append("deprovisioned" if result and result.success else "deprovision_failed")

        sync.status = voucher.status
        self.registry.invalidate_user(device, voucher.code)
        logger.info(f"Synced voucher {voucher.code} with {device.name}: {sync.actions or 'in sync'}")
        return sync


@lru_cache(maxsize=None)
def default_service():
    """Process-wide service wired from settings."""
    registry = RouterDeviceRegistry()
    sender = import_string(settings.NOTIFICATION_SENDER_CLASS)()
    gateway = import_string(settings.PAYMENT_GATEWAY_CLASS)()
    return VoucherService(
        registry=registry,
        notifier=NotificationDispatcher(sender),
        gateway=gateway,
    )
