"""
Expiry sweeper: expires vouchers, retries stuck provisioning and router cleanups

Safe to run as overlapping invocations. Expiry relies on the state machine's
conditional update; retries take a per-voucher lease first.
"""

import logging
from dataclasses import dataclass, field

from django.utils import timezone

from .exceptions import InvalidTransition
from .state_machine import Event

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    expired: int = 0
    skipped: int = 0
    retried: int = 0
    activated: int = 0
    still_pending: int = 0
    flagged: int = 0
    deprovisioned: int = 0
    errors: list = field(default_factory=list)

    def as_dict(self):
        return {
            "expired": self.expired,
            "skipped": self.skipped,
            "retried": self.retried,
            "activated": self.activated,
            "still_pending": self.still_pending,
            "flagged": self.flagged,
            "deprovisioned": self.deprovisioned,
            "errors": list(self.errors),
        }


class ExpirySweeper:
    def __init__(self, service):
        self.service = service
        self.vouchers = service.vouchers
        self.state_machine = service.state_machine
        self.settings = service.sweeper_settings

    def sweep(self, now=None) -> SweepReport:
        now = now or timezone.now()
        report = SweepReport()
        self._expire(now, report)
        self._retry_pending(now, report)
        self._retry_deprovision(report)
        logger.info(f"Voucher sweep finished: {report.as_dict()}")
        return report

    def _expire(self, now, report):
        for voucher in list(self.vouchers.find_expired(now)):
            try:
                result = self.state_machine.apply_event(voucher, Event.EXPIRE, now=now)
            except InvalidTransition as e:
                # Refunded/disabled by someone else between query and update
                logger.info(f"Skipping expiry of {voucher.code}: {e}")
                report.skipped += 1
                continue
            if result.changed:
                report.expired += 1
            else:
                report.skipped += 1

    def _retry_pending(self, now, report):
        candidates = self.vouchers.find_retryable_pending(
            self.settings.max_provision_attempts, now
        ).select_related("customer", "payment", "device")

        for voucher in list(candidates):
            if not self.vouchers.claim_for_retry(voucher, self.settings.lease_seconds, now):
                report.skipped += 1
                continue
            report.retried += 1
            try:
                voucher = self.service.activate(voucher, claimed=True)
            except InvalidTransition as e:
                report.skipped += 1
                logger.info(f"Voucher {voucher.code} left pending during retry: {e}")
                continue

            if voucher.status == "active":
                report.activated += 1
            elif voucher.needs_attention:
                report.flagged += 1
                report.errors.append(f"{voucher.code}: {voucher.last_error}")
            else:
                report.still_pending += 1

    def _retry_deprovision(self, report):
        for voucher in list(self.vouchers.find_pending_deprovision().select_related("device")):
            result = self.service.deprovision_voucher(voucher)
            if result is not None and result.success:
                report.deprovisioned += 1
            elif result is not None:
                report.errors.append(f"{voucher.code}: {result.error}")
