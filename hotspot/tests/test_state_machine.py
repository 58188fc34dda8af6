"""
Tests for voucher status transitions
"""
from datetime import timedelta
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.test import TestCase
from django.utils import timezone

from hotspot.conf import SweeperSettings, VoucherPackage
from hotspot.exceptions import InvalidTransition
from hotspot.models import Voucher, VoucherTransition
from hotspot.repository import VoucherRepository
from hotspot.state_machine import Event, VoucherStateMachine

from .fakes import make_customer, make_device

DAILY = VoucherPackage(key="daily_1gb", profile="1GB-DAILY", validity_hours=24, data_limit_mb=1024)


class VoucherStateMachineTest(TestCase):
    """Test the transition table and its compare-and-swap writes"""

    def setUp(self):
        self.customer = make_customer()
        self.machine = VoucherStateMachine(
            SweeperSettings(max_provision_attempts=3, retry_backoff_seconds=60)
        )
        self.voucher = VoucherRepository().create_voucher(
            self.customer, DAILY, Decimal("5000.00"), "UGX"
        )

    def test_provision_succeeded_sets_expiry(self):
        """Test activation sets activated_at and expires_at = activated_at + validity"""
        now = timezone.now()
        voucher = self.machine.apply(self.voucher, Event.PROVISION_SUCCEEDED, now=now)

        self.assertEqual(voucher.status, "active")
        self.assertEqual(voucher.activated_at, now)
        self.assertEqual(voucher.expires_at, now + timedelta(hours=24))
        self.assertEqual(voucher.version, 1)
        transition = VoucherTransition.objects.get(voucher=voucher)
        self.assertEqual((transition.from_status, transition.to_status), ("pending", "active"))

    def test_duplicate_activation_is_noop(self):
        """Test re-applying an idempotent event does not move expires_at"""
        first = timezone.now()
        self.machine.apply(self.voucher, Event.PROVISION_SUCCEEDED, now=first)
        result = self.machine.apply_event(
            self.voucher, Event.PROVISION_SUCCEEDED, now=first + timedelta(hours=1)
        )

        self.assertFalse(result.changed)
        self.voucher.refresh_from_db()
        self.assertEqual(self.voucher.expires_at, first + timedelta(hours=24))
        self.assertEqual(VoucherTransition.objects.filter(voucher=self.voucher).count(), 1)

    def test_invalid_transition(self):
        """Test pending vouchers cannot be refunded or expired"""
        with self.assertRaises(InvalidTransition) as ctx:
            self.machine.apply(self.voucher, Event.REFUND)
        self.assertEqual(ctx.exception.current_status, "pending")
        with self.assertRaises(InvalidTransition):
            self.machine.apply(self.voucher, Event.EXPIRE)

    def test_terminal_states_are_final(self):
        """Test nothing leaves refunded"""
        self.machine.apply(self.voucher, Event.PROVISION_SUCCEEDED)
        self.machine.apply(self.voucher, Event.REFUND)
        for event in Event:
            if event in (Event.REFUND,):
                continue
            with self.assertRaises(InvalidTransition):
                self.machine.apply(self.voucher, event)

    def test_second_refund_rejected(self):
        """Test a refund is never applied twice"""
        self.machine.apply(self.voucher, Event.PROVISION_SUCCEEDED)
        self.machine.apply(self.voucher, Event.REFUND)
        with self.assertRaises(InvalidTransition):
            self.machine.apply(self.voucher, Event.REFUND)

    def test_stale_copy_loses_race(self):
        """Test a writer holding an outdated row re-reads instead of overwriting"""
        self.machine.apply(self.voucher, Event.PROVISION_SUCCEEDED)
        stale = Voucher.objects.get(pk=self.voucher.pk)
        other = Voucher.objects.get(pk=self.voucher.pk)

        self.machine.apply(other, Event.REFUND)
        with self.assertRaises(InvalidTransition) as ctx:
            self.machine.apply(stale, Event.DEACTIVATE)

        self.assertEqual(ctx.exception.current_status, "refunded")
        self.voucher.refresh_from_db()
        self.assertEqual(self.voucher.status, "refunded")

    def test_expire_requires_past_expiry(self):
        """Test active vouchers are not expired early"""
        now = timezone.now()
        self.machine.apply(self.voucher, Event.PROVISION_SUCCEEDED, now=now)
        with self.assertRaises(InvalidTransition):
            self.machine.apply(self.voucher, Event.EXPIRE, now=now + timedelta(hours=23))
        voucher = self.machine.apply(self.voucher, Event.EXPIRE, now=now + timedelta(hours=24))
        self.assertEqual(voucher.status, "expired")

    def test_transfer_and_renew_refused_after_expiry(self):
        """Test an active voucher past expires_at cannot be transferred or renewed"""
        now = timezone.now()
        self.machine.apply(self.voucher, Event.PROVISION_SUCCEEDED, now=now)
        later = now + timedelta(hours=24)

        with self.assertRaises(InvalidTransition):
            self.machine.apply(self.voucher, Event.TRANSFER, now=later)
        with self.assertRaises(InvalidTransition):
            self.machine.apply(self.voucher, Event.RENEW, now=later, hours=6)

        voucher = Voucher.objects.get(pk=self.voucher.pk)
        self.assertEqual(voucher.status, "active")
        self.assertEqual(voucher.validity_hours, 24)

        voucher = self.machine.apply(voucher, Event.RENEW, now=later - timedelta(minutes=1), hours=6)
        self.assertEqual(voucher.validity_hours, 30)
        self.assertEqual(voucher.expires_at, now + timedelta(hours=30))

    def test_provision_failed_backs_off_and_flags(self):
        """Test failures schedule a retry and flag at the attempt ceiling"""
        now = timezone.now()
        voucher = self.machine.apply(self.voucher, Event.PROVISION_FAILED, now=now, error="boom")
        self.assertEqual(voucher.status, "pending")
        self.assertEqual(voucher.provision_attempts, 1)
        self.assertEqual(voucher.next_retry_at, now + timedelta(seconds=60))
        self.assertFalse(voucher.needs_attention)

        self.machine.apply(voucher, Event.PROVISION_FAILED, now=now, error="boom")
        voucher = self.machine.apply(voucher, Event.PROVISION_FAILED, now=now, error="boom")
        self.assertEqual(voucher.provision_attempts, 3)
        self.assertTrue(voucher.needs_attention)
        self.assertEqual(voucher.last_error, "boom")

    def test_leaving_active_with_device_owes_cleanup(self):
        """Test deactivating a provisioned voucher marks router cleanup pending"""
        device = make_device()
        voucher = self.machine.apply(self.voucher, Event.PROVISION_SUCCEEDED, device=device)
        voucher = self.machine.apply(voucher, Event.DEACTIVATE, reason="abuse")
        self.assertEqual(voucher.status, "disabled")
        self.assertTrue(voucher.deprovision_pending)

    def test_price_is_immutable(self):
        """Test price cannot change once a voucher is saved"""
        voucher = Voucher.objects.get(pk=self.voucher.pk)
        voucher.price = Decimal("1.00")
        with self.assertRaises(ValidationError):
            voucher.save()
