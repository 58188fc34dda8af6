"""
Tests for the expiry sweeper, cron tasks and sweeper command
"""
from datetime import timedelta
from io import StringIO
from unittest.mock import patch

from django.core.cache import cache
from django.core.management import call_command
from django.test import TestCase
from django.utils import timezone

from hotspot import tasks
from hotspot.conf import SweeperSettings
from hotspot.models import Voucher
from hotspot.sweeper import ExpirySweeper

from .fakes import (
    FakeRouterClient,
    FakeSender,
    build_service,
    make_customer,
    make_device,
    make_payment,
)


class SweeperTestCase(TestCase):
    def setUp(self):
        cache.clear()
        self.client = FakeRouterClient()
        self.router = self.client.add_router("10.0.0.1")
        self.sender = FakeSender()
        self.service = build_service(
            self.client,
            self.sender,
            sweeper_settings=SweeperSettings(max_provision_attempts=3, retry_backoff_seconds=60),
        )
        self.sweeper = ExpirySweeper(self.service)
        self.customer = make_customer()
        self.device = make_device()

    def purchase(self, transaction_id="TX-1001"):
        payment = make_payment(self.customer, self.device, transaction_id=transaction_id)
        return self.service.purchase_completed(payment.pk)


class ExpiryTest(SweeperTestCase):
    """Test vouchers expire exactly when expires_at has passed"""

    def test_expires_only_past_due(self):
        voucher = self.purchase()

        report = self.sweeper.sweep(now=voucher.expires_at - timedelta(seconds=1))
        self.assertEqual(report.expired, 0)
        self.assertEqual(Voucher.objects.get(pk=voucher.pk).status, "active")

        report = self.sweeper.sweep(now=voucher.expires_at)
        self.assertEqual(report.expired, 1)
        self.assertEqual(report.deprovisioned, 1)
        voucher.refresh_from_db()
        self.assertEqual(voucher.status, "expired")
        self.assertFalse(voucher.deprovision_pending)
        self.assertEqual(self.router.users[voucher.code]["disabled"], "true")

    def test_overlapping_sweeps_expire_once(self):
        """Test a second sweeper over the same rows changes nothing"""
        voucher = self.purchase()
        later = voucher.expires_at + timedelta(minutes=1)

        first = self.sweeper.sweep(now=later)
        second = ExpirySweeper(self.service).sweep(now=later)

        self.assertEqual(first.expired, 1)
        self.assertEqual(second.expired, 0)
        self.assertEqual(
            Voucher.objects.get(pk=voucher.pk).transitions.filter(event="expire").count(), 1
        )

    def test_refunded_voucher_is_not_expired(self):
        voucher = self.purchase()
        self.service.refund(voucher.pk)
        report = self.sweeper.sweep(now=voucher.expires_at + timedelta(hours=1))
        self.assertEqual(report.expired, 0)
        self.assertEqual(Voucher.objects.get(pk=voucher.pk).status, "refunded")


class RetryTest(SweeperTestCase):
    """Test pending vouchers are retried with backoff"""

    def test_unreachable_then_recovered(self):
        """Test a voucher left pending by a dead router activates on a later sweep"""
        self.router.reachable = False
        voucher = self.purchase()
        self.assertEqual(voucher.status, "pending")

        self.router.reachable = True
        report = self.sweeper.sweep(now=voucher.next_retry_at - timedelta(seconds=1))
        self.assertEqual(report.retried, 0)

        report = self.sweeper.sweep(now=voucher.next_retry_at)
        self.assertEqual(report.retried, 1)
        self.assertEqual(report.activated, 1)
        voucher.refresh_from_db()
        self.assertEqual(voucher.status, "active")
        self.assertIn(voucher.code, self.router.users)
        self.assertEqual(len(self.sender.sent), 1)

    def test_flagged_after_max_attempts(self):
        """Test the sweeper stops retrying once the attempt ceiling is hit"""
        self.router.reachable = False
        voucher = self.purchase()
        now = timezone.now()

        for _ in range(2):
            now += timedelta(hours=1)
            report = self.sweeper.sweep(now=now)
        self.assertEqual(report.flagged, 1)

        voucher.refresh_from_db()
        self.assertEqual(voucher.provision_attempts, 3)
        self.assertTrue(voucher.needs_attention)

        report = self.sweeper.sweep(now=now + timedelta(hours=1))
        self.assertEqual(report.retried, 0)

    def test_leased_voucher_is_skipped(self):
        """Test a voucher claimed by another sweeper is left alone"""
        self.router.reachable = False
        voucher = self.purchase()
        now = voucher.next_retry_at
        self.assertTrue(self.service.vouchers.claim_for_retry(voucher, 120, now=now))

        report = self.sweeper.sweep(now=now)

        self.assertEqual(report.retried, 0)
        self.assertEqual(Voucher.objects.get(pk=voucher.pk).provision_attempts, 1)

    def test_lease_claimed_once(self):
        self.router.reachable = False
        voucher = self.purchase()
        now = timezone.now()
        vouchers = self.service.vouchers
        self.assertTrue(vouchers.claim_for_retry(voucher, 120, now=now))
        self.assertFalse(vouchers.claim_for_retry(voucher, 120, now=now))
        self.assertTrue(vouchers.claim_for_retry(voucher, 120, now=now + timedelta(seconds=121)))


class DeprovisionRetryTest(SweeperTestCase):
    def test_cleanup_retried_after_router_returns(self):
        """Test router cleanup owed by a disabled voucher is finished later"""
        voucher = self.purchase()
        self.router.reachable = False

        voucher = self.service.admin_disable(voucher.pk, reason="abuse")
        self.assertEqual(voucher.status, "disabled")
        self.assertTrue(Voucher.objects.get(pk=voucher.pk).deprovision_pending)
        self.assertEqual(self.router.users[voucher.code]["disabled"], "false")

        self.router.reachable = True
        report = self.sweeper.sweep()

        self.assertEqual(report.deprovisioned, 1)
        self.assertFalse(Voucher.objects.get(pk=voucher.pk).deprovision_pending)
        self.assertEqual(self.router.users[voucher.code]["disabled"], "true")


class SweeperEntryPointsTest(SweeperTestCase):
    """Test the cron task and management command wire to the sweeper"""

    def test_cron_task(self):
        voucher = self.purchase()
        Voucher.objects.filter(pk=voucher.pk).update(
            activated_at=timezone.now() - timedelta(hours=25),
            expires_at=timezone.now() - timedelta(hours=1),
        )
        with patch("hotspot.tasks.default_service", return_value=self.service):
            result = tasks.sweep_vouchers()
        self.assertEqual(result["expired"], 1)

    def test_command_once(self):
        voucher = self.purchase()
        Voucher.objects.filter(pk=voucher.pk).update(
            activated_at=timezone.now() - timedelta(hours=25),
            expires_at=timezone.now() - timedelta(hours=1),
        )
        out = StringIO()
        with patch(
            "hotspot.management.commands.run_voucher_sweeper.default_service",
            return_value=self.service,
        ):
            call_command("run_voucher_sweeper", "--once", stdout=out)

        self.assertIn("expired=1", out.getvalue())
        self.assertEqual(Voucher.objects.get(pk=voucher.pk).status, "expired")

    def test_monitor_command(self):
        out = StringIO()
        with patch(
            "hotspot.management.commands.monitor_routers.default_service",
            return_value=self.service,
        ):
            call_command("monitor_routers", stdout=out)
        self.assertIn("MikroTik: online", out.getvalue())
