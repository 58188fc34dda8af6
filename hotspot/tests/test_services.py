"""
Tests for the voucher service: purchase, activation, refund, transfer and reads
"""
import uuid
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from django.core.cache import cache
from django.core.exceptions import ValidationError
from django.test import TestCase
from django.utils import timezone

from hotspot.exceptions import (
    CustomerNotFound,
    InvalidTransition,
    PaymentNotCompleted,
    UnknownPackage,
    PaymentNotFound,
)
from hotspot.models import (
    NotificationRecord,
    Payment,
    ProvisioningAttempt,
    Voucher,
    VoucherTransfer,
)

from .fakes import (
    FakeGateway,
    FakeRouterClient,
    FakeSender,
    build_service,
    make_customer,
    make_device,
    make_payment,
)

MB = 1024 * 1024


def expire(voucher):
    now = timezone.now()
    Voucher.objects.filter(pk=voucher.pk).update(
        activated_at=now - timedelta(hours=25), expires_at=now - timedelta(hours=1)
    )


class VoucherServiceTestCase(TestCase):
    def setUp(self):
        cache.clear()
        self.client = FakeRouterClient()
        self.router = self.client.add_router("10.0.0.1")
        self.sender = FakeSender()
        self.gateway = FakeGateway()
        self.service = build_service(self.client, self.sender, self.gateway)
        self.customer = make_customer()
        self.device = make_device()
        self.payment = make_payment(self.customer, self.device)

    def purchase(self, payment=None):
        return self.service.purchase_completed((payment or self.payment).pk)


class PurchaseTest(VoucherServiceTestCase):
    """Test payment completion through to an active voucher"""

    @patch("hotspot.repository.generate_voucher_code", return_value="BIL-AB12-CD34")
    def test_daily_voucher_end_to_end(self, _code):
        """Test a paid 24h voucher is provisioned, activated and sent by SMS"""
        voucher = self.purchase()

        self.assertEqual(voucher.code, "BIL-AB12-CD34")
        self.assertEqual(voucher.status, "active")
        self.assertEqual(voucher.expires_at - voucher.activated_at, timedelta(hours=24))
        self.assertEqual(voucher.device_id, self.device.pk)

        user = self.router.users["BIL-AB12-CD34"]
        self.assertEqual(user["password"], voucher.password)
        self.assertEqual(user["profile"], "1GB-DAILY")

        self.assertEqual(len(self.sender.sent), 1)
        recipient, message = self.sender.sent[0]
        self.assertEqual(recipient, "+256712345678")
        self.assertIn("Code: BIL-AB12-CD34", message)
        self.assertIn(f"Password: {voucher.password}", message)
        self.assertIn("Valid for: 24 hours", message)
        self.assertIsNotNone(Voucher.objects.get(pk=voucher.pk).sms_sent_at)

    def test_duplicate_callback_is_idempotent(self):
        """Test a repeated payment callback creates nothing new"""
        first = self.purchase()
        second = self.purchase()

        self.assertEqual(first.pk, second.pk)
        self.assertEqual(Voucher.objects.count(), 1)
        self.assertEqual(len(self.router.users), 1)
        self.assertEqual(
            ProvisioningAttempt.objects.filter(action="provision", outcome="success").count(), 1
        )
        self.assertEqual(len(self.sender.sent), 1)
        second.refresh_from_db()
        self.assertEqual(second.expires_at, first.expires_at)

    def test_unreachable_router_leaves_voucher_pending(self):
        """Test a failed provision does not fail the purchase"""
        self.router.reachable = False
        voucher = self.purchase()

        self.assertEqual(voucher.status, "pending")
        self.assertEqual(voucher.provision_attempts, 1)
        self.assertIsNotNone(voucher.next_retry_at)
        self.assertIn("No route to host", voucher.last_error)
        self.assertFalse(voucher.needs_attention)
        self.assertIsNone(voucher.provision_lease_until)
        self.assertEqual(self.sender.sent, [])

    def test_bad_router_credentials_flag_voucher(self):
        self.router.password = "rotated-password"
        voucher = self.purchase()
        self.assertEqual(voucher.status, "pending")
        self.assertTrue(voucher.needs_attention)

    def test_retry_provisioning_after_fix(self):
        """Test an operator retry clears the flag and activates"""
        self.router.password = "rotated-password"
        voucher = self.purchase()
        self.router.password = "secret123"

        voucher = self.service.retry_provisioning(voucher.pk)

        self.assertEqual(voucher.status, "active")
        self.assertFalse(voucher.needs_attention)
        self.assertEqual(len(self.sender.sent), 1)

    @patch("hotspot.repository.generate_voucher_code", return_value="BIL-AB12-CD34")
    def test_conflicting_router_user_disables_voucher(self, _code):
        """Test a same-named user with other credentials is never overwritten"""
        self.router.users["BIL-AB12-CD34"] = {
            ".id": "*1",
            "name": "BIL-AB12-CD34",
            "password": "not-ours",
            "disabled": "false",
        }
        voucher = self.purchase()

        self.assertEqual(voucher.status, "disabled")
        self.assertTrue(voucher.needs_attention)
        self.assertEqual(self.router.users["BIL-AB12-CD34"]["password"], "not-ours")
        self.assertEqual(self.router.users["BIL-AB12-CD34"]["disabled"], "false")

    def test_payment_not_completed(self):
        payment = make_payment(self.customer, self.device, status="pending", transaction_id="TX-2")
        with self.assertRaises(PaymentNotCompleted):
            self.purchase(payment)
        self.assertFalse(Voucher.objects.filter(payment=payment).exists())

    def test_unknown_package(self):
        payment = make_payment(self.customer, self.device, package="nope", transaction_id="TX-3")
        with self.assertRaises(UnknownPackage):
            self.purchase(payment)

    def test_unknown_payment(self):
        with self.assertRaises(PaymentNotFound):
            self.service.purchase_completed("not-a-uuid")

    def test_manual_activate(self):
        """Test an operator can activate a pending voucher by hand"""
        self.router.reachable = False
        voucher = self.purchase()

        voucher = self.service.manual_activate(voucher.pk, reason="cash at desk")

        self.assertEqual(voucher.status, "active")
        self.assertEqual(len(self.sender.sent), 1)


class NotificationTest(VoucherServiceTestCase):
    """Test activation SMS are delivered at most once"""

    def test_repeat_notify_does_not_resend(self):
        voucher = self.purchase()
        self.assertTrue(self.service.notifier.notify_activation(voucher))
        self.assertEqual(len(self.sender.sent), 1)

    def test_sms_failure_keeps_voucher_active(self):
        """Test a failed SMS is recorded but never rolls back activation"""
        self.sender.succeed = False
        voucher = self.purchase()

        self.assertEqual(voucher.status, "active")
        record = NotificationRecord.objects.get(voucher=voucher)
        self.assertEqual(record.status, "failed")
        self.assertEqual(record.attempts, 1)
        self.assertIsNone(Voucher.objects.get(pk=voucher.pk).sms_sent_at)

    def test_explicit_resend(self):
        """Test resend delivers again after a failure and after a success"""
        self.sender.succeed = False
        voucher = self.purchase()
        self.sender.succeed = True

        self.assertTrue(self.service.resend_notification(voucher.code))
        self.assertTrue(self.service.resend_notification(voucher.code.lower()))
        self.assertEqual(len(self.sender.sent), 3)
        self.assertEqual(NotificationRecord.objects.get(voucher=voucher).status, "sent")

    def test_resend_recovers_abandoned_send(self):
        """Test a record left 'sending' by a crashed worker can still be resent"""
        voucher = self.purchase()
        NotificationRecord.objects.filter(voucher=voucher).update(status="sending")

        self.assertTrue(self.service.resend_notification(voucher.code))
        self.assertEqual(len(self.sender.sent), 2)
        self.assertEqual(NotificationRecord.objects.get(voucher=voucher).status, "sent")

    def test_stale_claim_is_taken_over(self):
        """Test an old 'sending' claim is retaken while a fresh one is left alone"""
        self.sender.succeed = False
        voucher = self.purchase()
        self.sender.succeed = True
        NotificationRecord.objects.filter(voucher=voucher).update(
            status="sending", updated_at=timezone.now()
        )

        self.assertFalse(self.service.notifier.notify_activation(voucher))
        self.assertEqual(len(self.sender.sent), 1)

        NotificationRecord.objects.filter(voucher=voucher).update(
            updated_at=timezone.now() - timedelta(minutes=10)
        )
        self.assertTrue(self.service.notifier.notify_activation(voucher))
        self.assertEqual(len(self.sender.sent), 2)
        self.assertEqual(NotificationRecord.objects.get(voucher=voucher).status, "sent")

    def test_no_resend_for_inactive_voucher(self):
        self.router.reachable = False
        voucher = self.purchase()
        self.assertFalse(self.service.resend_notification(voucher.code))
        self.assertEqual(self.sender.sent, [])


class RefundTest(VoucherServiceTestCase):
    """Test refunds are terminal and happen once"""

    def test_refund_disables_router_user(self):
        voucher = self.purchase()
        voucher = self.service.refund(voucher.pk, reason="customer request")

        self.assertEqual(voucher.status, "refunded")
        self.assertFalse(voucher.deprovision_pending)
        self.assertEqual(self.router.users[voucher.code]["disabled"], "true")
        self.assertEqual(Payment.objects.get(pk=self.payment.pk).status, "refunded")
        self.assertEqual(len(self.gateway.refunds), 1)

    def test_second_refund_rejected(self):
        """Test the money is returned only once"""
        voucher = self.purchase()
        self.service.refund(voucher.pk)
        with self.assertRaises(InvalidTransition):
            self.service.refund(voucher.pk)
        self.assertEqual(len(self.gateway.refunds), 1)

    def test_refunded_voucher_cannot_come_back(self):
        voucher = self.purchase()
        self.service.refund(voucher.pk)
        with self.assertRaises(InvalidTransition):
            self.service.manual_activate(voucher.pk)
        with self.assertRaises(InvalidTransition):
            self.service.admin_disable(voucher.pk)
        self.assertEqual(Voucher.objects.get(pk=voucher.pk).status, "refunded")

    def test_declined_gateway_refund_needs_attention(self):
        self.service.gateway = FakeGateway(refund_succeeds=False)
        voucher = self.purchase()
        voucher = self.service.refund(voucher.pk)

        self.assertEqual(voucher.status, "refunded")
        self.assertTrue(voucher.needs_attention)
        self.assertEqual(Payment.objects.get(pk=self.payment.pk).status, "refund_pending")

    def test_admin_disable_active(self):
        voucher = self.purchase()
        voucher = self.service.admin_disable(voucher.pk, reason="abuse")
        self.assertEqual(voucher.status, "disabled")
        self.assertEqual(self.router.users[voucher.code]["disabled"], "true")


class TransferTest(VoucherServiceTestCase):
    """Test moving remaining validity to another customer"""

    def setUp(self):
        super().setUp()
        self.recipient = make_customer(name="John Okello", phone="0772000111")

    def test_transfer(self):
        voucher = self.purchase()
        new_voucher = self.service.transfer(voucher.code, self.recipient.pk, reason="gift")

        voucher.refresh_from_db()
        self.assertEqual(voucher.status, "transferred")
        self.assertEqual(self.router.users[voucher.code]["disabled"], "true")

        self.assertNotEqual(new_voucher.code, voucher.code)
        self.assertEqual(new_voucher.status, "active")
        self.assertEqual(new_voucher.customer_id, self.recipient.pk)
        self.assertEqual(new_voucher.validity_hours, 24)
        self.assertEqual(new_voucher.price, voucher.price)
        self.assertIn(new_voucher.code, self.router.users)

        transfer = VoucherTransfer.objects.get(from_voucher=voucher)
        self.assertEqual(transfer.to_voucher_id, new_voucher.pk)
        self.assertEqual(transfer.reason, "gift")

        recipient, message = self.sender.sent[-1]
        self.assertEqual(recipient, "+256772000111")
        self.assertIn("Jane Doe transferred", message)
        self.assertIn(new_voucher.code, message)

    def test_transfer_to_owner_rejected(self):
        voucher = self.purchase()
        with self.assertRaises(ValidationError):
            self.service.transfer(voucher.code, self.customer.pk)

    def test_transfer_pending_rejected(self):
        self.router.reachable = False
        voucher = self.purchase()
        with self.assertRaises(InvalidTransition):
            self.service.transfer(voucher.code, self.recipient.pk)
        self.assertFalse(VoucherTransfer.objects.exists())
        self.assertEqual(Voucher.objects.count(), 1)

    def test_expired_voucher_not_transferred(self):
        """Test a voucher past its expiry cannot be transferred before the sweeper runs"""
        voucher = self.purchase()
        expire(voucher)

        with self.assertRaises(InvalidTransition):
            self.service.transfer(voucher.code, self.recipient.pk)

        self.assertEqual(Voucher.objects.get(pk=voucher.pk).status, "active")
        self.assertEqual(Voucher.objects.count(), 1)
        self.assertFalse(VoucherTransfer.objects.exists())
        self.assertEqual(self.router.users[voucher.code]["disabled"], "false")


class IssueVouchersTest(VoucherServiceTestCase):
    """Test vouchers issued by an operator without a payment"""

    def test_issue_batch(self):
        vouchers = self.service.issue_vouchers(
            self.customer.pk, "weekly_5gb", count=3, device_id=self.device.pk, reason="promo"
        )

        self.assertEqual(len(vouchers), 3)
        self.assertEqual(len({v.code for v in vouchers}), 3)
        for voucher in vouchers:
            self.assertEqual(voucher.status, "active")
            self.assertIsNone(voucher.payment_id)
            self.assertEqual(voucher.validity_hours, 168)
            self.assertEqual(voucher.price, Decimal("0.00"))
            self.assertTrue(voucher.metadata["issued_manually"])
            self.assertEqual(self.router.users[voucher.code]["profile"], "5GB-WEEKLY")
        self.assertEqual(len(self.sender.sent), 3)

    def test_router_down_then_manual_activation(self):
        """Test an issued voucher left pending can be activated by hand"""
        self.router.reachable = False
        [voucher] = self.service.issue_vouchers(self.customer.pk, "daily_1gb")
        self.assertEqual(voucher.status, "pending")

        voucher = self.service.manual_activate(voucher.pk, reason="router offline")

        self.assertEqual(voucher.status, "active")
        self.assertIsNotNone(voucher.expires_at)
        self.assertEqual(len(self.sender.sent), 1)

    def test_issue_validation(self):
        with self.assertRaises(UnknownPackage):
            self.service.issue_vouchers(self.customer.pk, "no_such_package")
        with self.assertRaises(ValidationError):
            self.service.issue_vouchers(self.customer.pk, "daily_1gb", count=0)
        with self.assertRaises(CustomerNotFound):
            self.service.issue_vouchers(uuid.uuid4(), "daily_1gb")
        self.assertFalse(Voucher.objects.exists())


class RenewTest(VoucherServiceTestCase):
    """Test extending an active voucher"""

    def test_renew_extends_expiry_and_router_limit(self):
        voucher = self.purchase()
        expires_at = voucher.expires_at

        renewed = self.service.renew(voucher.code, 12, reason="loyalty")

        self.assertEqual(renewed.status, "active")
        self.assertEqual(renewed.validity_hours, 36)
        self.assertEqual(renewed.expires_at, expires_at + timedelta(hours=12))
        self.assertEqual(self.router.users[voucher.code]["limit-uptime"], "36:00:00")
        self.assertTrue(renewed.transitions.filter(event="renew").exists())

    def test_expired_voucher_not_renewed(self):
        voucher = self.purchase()
        expire(voucher)

        with self.assertRaises(InvalidTransition):
            self.service.renew(voucher.code, 12)
        self.assertEqual(Voucher.objects.get(pk=voucher.pk).validity_hours, 24)

    def test_router_down_flags_voucher(self):
        """Test the new expiry stands and the voucher is flagged for a router sync"""
        voucher = self.purchase()
        self.router.reachable = False

        renewed = self.service.renew(voucher.code, 6)

        self.assertEqual(renewed.validity_hours, 30)
        self.assertTrue(renewed.needs_attention)
        self.assertIn("Router limit update pending", renewed.last_error)

        self.router.reachable = True
        result = self.service.sync_with_router(voucher.code)

        self.assertEqual(result.actions, ["limits_updated"])
        self.assertEqual(self.router.users[voucher.code]["limit-uptime"], "30:00:00")
        self.assertFalse(Voucher.objects.get(pk=voucher.pk).needs_attention)


class UsageAndSyncTest(VoucherServiceTestCase):
    """Test router-backed reads and reconciliation"""

    def test_usage_sums_sessions(self):
        voucher = self.purchase()
        self.router.add_session(voucher.code, bytes_in=200 * MB, bytes_out=312 * MB)
        self.router.add_session("BIL-OTHER-USER", bytes_in=999 * MB)

        usage = self.service.get_usage(voucher.code)

        self.assertEqual(usage.active_connections, 1)
        self.assertEqual(usage.total_data_used_bytes, 512 * MB)
        self.assertEqual(usage.data_usage_percentage, 50.0)
        self.assertTrue(usage.is_active)
        self.assertFalse(usage.is_expired)

    def test_usage_when_router_down(self):
        voucher = self.purchase()
        self.router.reachable = False
        usage = self.service.get_usage(voucher.code)
        self.assertFalse(usage.router_reachable)
        self.assertEqual(usage.total_data_used_bytes, 0)

    def test_sync_reprovisions_missing_user(self):
        """Test an active voucher whose router user vanished is restored"""
        voucher = self.purchase()
        del self.router.users[voucher.code]

        result = self.service.sync_with_router(voucher.code)

        self.assertEqual(result.actions, ["reprovisioned"])
        self.assertFalse(result.router_user_present)
        self.assertIn(voucher.code, self.router.users)

    def test_sync_disables_user_of_terminal_voucher(self):
        voucher = self.purchase()
        self.service.refund(voucher.pk)
        self.router.users[voucher.code]["disabled"] = "false"

        result = self.service.sync_with_router(voucher.code)

        self.assertEqual(result.actions, ["deprovisioned"])
        self.assertEqual(self.router.users[voucher.code]["disabled"], "true")

    def test_sync_in_step(self):
        voucher = self.purchase()
        result = self.service.sync_with_router(voucher.code)
        self.assertEqual(result.actions, [])
        self.assertTrue(result.router_user_present)
