"""
Notification dispatcher: voucher credential SMS, sent at most once per transition
"""

import logging
from datetime import timedelta

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F, Q
from django.utils import timezone

from .models import NotificationRecord
from .repository import VoucherRepository

logger = logging.getLogger(__name__)

ACTIVATION = "activation"
TRANSFER = "transfer"


def activation_message(voucher):
    expires = timezone.localtime(voucher.expires_at).strftime("%Y-%m-%d %H:%M") if voucher.expires_at else "-"
    return (
        "Your internet voucher:\n"
        f"Code: {voucher.code}\n"
        f"Password: {voucher.password}\n"
        f"Valid for: {voucher.validity_hours} hours\n"
        f"Profile: {voucher.profile}\n"
        f"Expires: {expires}\n"
        "Thank you for your payment!"
    )


def transfer_message(voucher, from_name):
    expires = timezone.localtime(voucher.expires_at).strftime("%Y-%m-%d %H:%M") if voucher.expires_at else "-"
    return (
        f"{from_name} transferred an internet voucher to you:\n"
        f"Code: {voucher.code}\n"
        f"Password: {voucher.password}\n"
        f"Valid for: {voucher.validity_hours} hours\n"
        f"Profile: {voucher.profile}\n"
        f"Expires: {expires}"
    )


class NotificationDispatcher:
    """
    Sends voucher notifications through a NotificationSender.

    A NotificationRecord per (voucher, transition) is the durable dedup key;
    the row is claimed with a conditional update before sending so two
    concurrent dispatchers cannot both deliver. A claim older than
    claim_timeout seconds is treated as abandoned and may be taken again.
    Failures are recorded and returned as False, never raised.
    """

    def __init__(self, sender, vouchers=None, claim_timeout=None):
        self.sender = sender
        self.vouchers = vouchers or VoucherRepository()
        if claim_timeout is None:
            claim_timeout = getattr(settings, "NOTIFICATION_CLAIM_TIMEOUT", 120)
        self.claim_timeout = int(claim_timeout)

    def notify_activation(self, voucher, customer=None):
        customer = customer or voucher.customer
        return self._dispatch(voucher, ACTIVATION, customer.phone_number, activation_message(voucher))

    def notify_transfer(self, voucher, customer, from_name):
        return self._dispatch(
            voucher, TRANSFER, customer.phone_number, transfer_message(voucher, from_name)
        )

    def resend(self, voucher):
        """Explicit resend of the latest credentials, even if already delivered."""
        record = (
            NotificationRecord.objects.filter(voucher=voucher)
            .order_by("-created_at")
            .first()
        )
        if record is None:
            return self.notify_activation(voucher)
        # Operator asked for another delivery; this overrides any earlier claim
        NotificationRecord.objects.filter(pk=record.pk).update(
            status="failed", updated_at=timezone.now()
        )
        return self._dispatch(voucher, record.transition, record.recipient, record.message)

    def _dispatch(self, voucher, transition, recipient, message):
        record = self._get_or_create_record(voucher, transition, recipient, message)

        if record.status == "sent":
            logger.info(
                f"{transition.capitalize()} SMS for voucher {voucher.code} already sent; skipping"
            )
            return True

        now = timezone.now()
        stale = now - timedelta(seconds=self.claim_timeout)
        claimed = (
            NotificationRecord.objects.filter(pk=record.pk)
            .filter(
                Q(status="pending")
                | Q(status="failed")
                | Q(status="sending", updated_at__lte=stale)
            )
            .update(status="sending", attempts=F("attempts") + 1, updated_at=now)
        )
        if not claimed:
            logger.info(
                f"{transition.capitalize()} SMS for voucher {voucher.code} is being sent elsewhere"
            )
            return False

        try:
            delivered = bool(self.sender.send(recipient, message))
            error = "" if delivered else "Gateway did not confirm delivery"
        except Exception as e:
            # Sender implementations are pluggable; any failure is recorded
            delivered, error = False, str(e)

        now = timezone.now()
        if delivered:
            NotificationRecord.objects.filter(pk=record.pk).update(
                status="sent", sent_at=now, last_error="", updated_at=now
            )
            self.vouchers.mark_sms_sent(voucher, now)
            logger.info(f"{transition.capitalize()} SMS for voucher {voucher.code} sent to {recipient}")
            return True

        NotificationRecord.objects.filter(pk=record.pk).update(
            status="failed", last_error=error[:2000], updated_at=now
        )
        logger.warning(
            f"{transition.capitalize()} SMS for voucher {voucher.code} to {recipient} failed: {error}"
        )
        return False

    def _get_or_create_record(self, voucher, transition, recipient, message):
        try:
            with transaction.atomic():
                record, _ = NotificationRecord.objects.get_or_create(
                    voucher=voucher,
                    transition=transition,
                    defaults={"recipient": recipient, "message": message},
                )
        except IntegrityError:
            record = NotificationRecord.objects.get(voucher=voucher, transition=transition)
        return record
