"""
Voucher state machine

All status changes go through VoucherStateMachine.apply. A transition is a
conditional UPDATE on (id, status, version) so two writers racing on the
same voucher cannot both win; the loser re-reads and either finds the target
already reached (idempotent no-op) or gets InvalidTransition.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from .conf import SweeperSettings
from .exceptions import InvalidTransition
from .models import Voucher, VoucherTransition

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 3


class Event(str, Enum):
    PROVISION_SUCCEEDED = "provision_succeeded"
    PROVISION_FAILED = "provision_failed"
    PROVISION_REJECTED = "provision_rejected"
    MANUAL_ACTIVATE = "manual_activate"
    EXPIRE = "expire"
    DEACTIVATE = "deactivate"
    REFUND = "refund"
    TRANSFER = "transfer"
    MARK_USED = "mark_used"
    ADMIN_OVERRIDE = "admin_override"
    RENEW = "renew"


@dataclass(frozen=True)
class Rule:
    sources: tuple
    target: str
    # Re-applying to a voucher already in `target` is a no-op success
    idempotent: bool = True


RULES = {
    Event.PROVISION_SUCCEEDED: Rule(("pending",), "active"),
    Event.PROVISION_FAILED: Rule(("pending",), "pending", idempotent=False),
    Event.PROVISION_REJECTED: Rule(("pending",), "disabled"),
    Event.MANUAL_ACTIVATE: Rule(("pending",), "active"),
    Event.EXPIRE: Rule(("active",), "expired"),
    Event.DEACTIVATE: Rule(("active",), "disabled"),
    # Money moves exactly once: a second refund or transfer is an error
    Event.REFUND: Rule(("active",), "refunded", idempotent=False),
    Event.TRANSFER: Rule(("active",), "transferred", idempotent=False),
    Event.MARK_USED: Rule(("active",), "used"),
    Event.ADMIN_OVERRIDE: Rule(("pending", "active"), "disabled"),
    Event.RENEW: Rule(("active",), "active", idempotent=False),
}

# Refused once expires_at has passed, even before the sweeper marks the voucher expired
UNEXPIRED_EVENTS = {Event.TRANSFER, Event.RENEW}

# Leaving one of these states means a hotspot user may still exist on the router
DEPROVISION_EVENTS = {
    Event.EXPIRE,
    Event.DEACTIVATE,
    Event.REFUND,
    Event.TRANSFER,
    Event.MARK_USED,
    Event.ADMIN_OVERRIDE,
}


@dataclass
class TransitionResult:
    voucher: Voucher
    changed: bool
    previous_status: str


class VoucherStateMachine:
    """Validates and persists voucher transitions. Performs no router or SMS I/O."""

    def __init__(self, sweeper_settings=None):
        self.sweeper_settings = sweeper_settings or SweeperSettings.from_settings()

    def can_apply(self, voucher, event):
        rule = RULES[Event(event)]
        return voucher.status in rule.sources

    def apply(self, voucher, event, now=None, **payload):
        return self.apply_event(voucher, event, now=now, **payload).voucher

    def apply_event(self, voucher, event, now=None, **payload) -> TransitionResult:
        event = Event(event)
        rule = RULES[event]
        now = now or timezone.now()
        current = voucher

        for _ in range(MAX_CAS_ATTEMPTS):
            status = current.status
            if status not in rule.sources:
                if rule.idempotent and status == rule.target:
                    logger.debug(
                        f"Voucher {current.code} already {status}; '{event.value}' is a no-op"
                    )
                    return TransitionResult(current, False, status)
                raise InvalidTransition(current.pk, status, event.value)

            if event == Event.EXPIRE and not current.is_expired(now):
                raise InvalidTransition(
                    current.pk,
                    status,
                    event.value,
                    message=f"Voucher {current.code} does not expire until {current.expires_at}",
                )
            if event in UNEXPIRED_EVENTS and current.is_expired(now):
                raise InvalidTransition(
                    current.pk,
                    status,
                    event.value,
                    message=f"Voucher {current.code} expired at {current.expires_at}",
                )

            changes = self._changes(current, event, now, payload)
            with transaction.atomic():
                updated = Voucher.objects.filter(
                    pk=current.pk, status=status, version=current.version
                ).update(version=F("version") + 1, updated_at=now, **changes)
                if updated:
                    VoucherTransition.objects.create(
                        voucher_id=current.pk,
                        event=event.value,
                        from_status=status,
                        to_status=rule.target,
                        detail=str(payload.get("reason") or payload.get("error") or "")[:2000],
                        created_at=now,
                    )

            if updated:
                voucher.refresh_from_db()
                if status != rule.target:
                    logger.info(
                        f"Voucher {voucher.code}: {status} -> {rule.target} ({event.value})"
                    )
                return TransitionResult(voucher, True, status)

            # Lost the compare-and-swap; look at what the winner left behind
            current = Voucher.objects.get(pk=voucher.pk)

        raise InvalidTransition(
            voucher.pk,
            current.status,
            event.value,
            message=f"Voucher {voucher.code} kept changing under '{event.value}'; retry later",
        )

    def _changes(self, voucher, event, now, payload):
        rule = RULES[event]
        changes = {"status": rule.target}

        if event in (Event.PROVISION_SUCCEEDED, Event.MANUAL_ACTIVATE):
            changes.update(
                activated_at=now,
                expires_at=now + timedelta(hours=voucher.validity_hours),
                last_error="",
                next_retry_at=None,
                provision_lease_until=None,
                needs_attention=False,
            )
            if payload.get("device") is not None:
                changes["device"] = payload["device"]

        elif event == Event.PROVISION_FAILED:
            attempts = voucher.provision_attempts + 1
            ceiling = self.sweeper_settings.max_provision_attempts
            changes.update(
                provision_attempts=F("provision_attempts") + 1,
                last_error=str(payload.get("error", ""))[:2000],
                next_retry_at=now + timedelta(seconds=self.sweeper_settings.backoff_for(attempts)),
                provision_lease_until=None,
                needs_attention=attempts >= ceiling or bool(payload.get("needs_attention")),
            )
            if attempts >= ceiling:
                logger.error(
                    f"Voucher {voucher.code} reached {attempts} provisioning attempts; "
                    f"flagged for manual attention"
                )

        elif event == Event.PROVISION_REJECTED:
            changes.update(
                provision_attempts=F("provision_attempts") + 1,
                last_error=str(payload.get("error", ""))[:2000],
                next_retry_at=None,
                provision_lease_until=None,
                needs_attention=True,
            )

        elif event == Event.MARK_USED:
            changes["used_at"] = now

        elif event == Event.RENEW:
            hours = int(payload["hours"])
            changes.update(
                validity_hours=F("validity_hours") + hours,
                expires_at=voucher.expires_at + timedelta(hours=hours),
            )

        if event in DEPROVISION_EVENTS and voucher.device_id:
            changes["deprovision_pending"] = True

        return changes
