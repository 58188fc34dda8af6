"""
Provisioning coordinator: turns voucher transitions into hotspot user writes

The coordinator never sleeps or loops. A failed write is recorded and
reported back; retrying is the sweeper's job.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from django.db import IntegrityError, transaction

from .conf import deprovision_mode
from .exceptions import (
    RouterError,
    RouterProtocolError,
    ProvisionFailure,
    RetryableProvisionFailure,
    PermanentProvisionFailure,
)
from .models import ProvisioningAttempt
from .repository import VoucherRepository
from .routeros import HOTSPOT_USER_PATH, HOTSPOT_ACTIVE_PATH, is_not_found
from .utils import format_limit_uptime, megabytes_to_bytes

logger = logging.getLogger(__name__)


@dataclass
class ProvisionResult:
    success: bool
    remote_id: str = ""
    already_present: bool = False
    short_circuited: bool = False
    error: Optional[ProvisionFailure] = None

    @property
    def retryable(self):
        return bool(self.error and self.error.retryable)

    @property
    def error_kind(self):
        return self.error.kind if self.error else ""


@dataclass
class DeprovisionResult:
    success: bool
    already_absent: bool = False
    sessions_closed: int = 0
    error: Optional[ProvisionFailure] = None


def _failure_from(error: RouterError) -> ProvisionFailure:
    failure_class = RetryableProvisionFailure if error.retryable else PermanentProvisionFailure
    return failure_class(str(error), kind=error.kind)


class ProvisioningCoordinator:
    def __init__(self, registry, vouchers=None, mode=None):
        self.registry = registry
        self.vouchers = vouchers or VoucherRepository()
        self.mode = mode or deprovision_mode()

    # ------------------------------------------------------------------
    # Provision
    # ------------------------------------------------------------------

    def provision(self, voucher, device, force=False) -> ProvisionResult:
        """
        Make sure the voucher's hotspot user exists on device.
        force=True skips the recorded-success shortcut (router lost the user).
        """
        if device is None:
            return self._record_failure(
                voucher,
                None,
                "provision",
                RetryableProvisionFailure(
                    f"No router device available for voucher {voucher.code}", kind="no_device"
                ),
            )

        existing = None if force else self.vouchers.has_successful_attempt(voucher, device)
        if existing:
            logger.debug(
                f"Voucher {voucher.code} already provisioned on {device.name}; skipping"
            )
            return ProvisionResult(
                success=True,
                remote_id=existing.remote_id,
                already_present=existing.already_present,
                short_circuited=True,
            )

        try:
            remote_id, already_present = self.registry.run(
                device, lambda client, conn: self._ensure_user(client, conn, voucher, device)
            )
        except PermanentProvisionFailure as failure:
            return self._record_failure(voucher, device, "provision", failure)
        except RouterError as e:
            return self._record_failure(voucher, device, "provision", _failure_from(e))

        self.registry.invalidate_user(device, voucher.code)
        return self._record_success(voucher, device, remote_id or "", already_present)

    def _ensure_user(self, client, conn, voucher, device):
        # Fresh read: a cached miss here would create a duplicate user
        rows = client.query(conn, HOTSPOT_USER_PATH, filters={"name": voucher.code})
        if rows:
            row = rows[0]
            remote_password = row.get("password")
            if remote_password and remote_password != voucher.password:
                raise PermanentProvisionFailure(
                    f"Hotspot user {voucher.code} already exists on {device.name} "
                    f"with different credentials",
                    kind="conflict",
                )
            logger.warning(
                f"Hotspot user {voucher.code} already present on {device.name}; "
                f"treating as provisioned"
            )
            remote_id = row.get(".id") or row.get("id") or ""
            if row.get("disabled") in ("true", "yes") and remote_id:
                client.execute(
                    conn, HOTSPOT_USER_PATH, "set", {"id": remote_id, "disabled": "no"}
                )
                logger.info(f"Re-enabled hotspot user {voucher.code} on {device.name}")
            return remote_id, True

        params = {
            "name": voucher.code,
            "password": voucher.password,
            "profile": voucher.profile,
            "limit-uptime": format_limit_uptime(voucher.validity_hours),
            "comment": f"Voucher {voucher.code} ({voucher.customer.phone_number})",
        }
        if voucher.data_limit_mb:
            params["limit-bytes-total"] = megabytes_to_bytes(voucher.data_limit_mb)

        result = client.execute(conn, HOTSPOT_USER_PATH, "add", params)
        logger.info(
            f"Created hotspot user {voucher.code} (profile {voucher.profile}) on {device.name}"
        )
        return result.ret, False

    def update_limits(self, voucher, device) -> ProvisionResult:
        """Push the voucher's current limit-uptime to its existing hotspot user."""
        if device is None:
            return ProvisionResult(
                success=False,
                error=RetryableProvisionFailure(
                    f"No router device for voucher {voucher.code}", kind="no_device"
                ),
            )
        try:
            remote_id = self.registry.run(
                device, lambda client, conn: self._set_limits(client, conn, voucher, device)
            )
        except PermanentProvisionFailure as failure:
            return ProvisionResult(success=False, error=failure)
        except RouterError as e:
            logger.warning(f"Could not update limits of {voucher.code} on {device.name}: {e}")
            return ProvisionResult(success=False, error=_failure_from(e))

        self.registry.invalidate_user(device, voucher.code)
        return ProvisionResult(success=True, remote_id=remote_id, already_present=True)

    def _set_limits(self, client, conn, voucher, device):
        rows = client.query(conn, HOTSPOT_USER_PATH, filters={"name": voucher.code})
        if not rows:
            raise PermanentProvisionFailure(
                f"Hotspot user {voucher.code} is missing on {device.name}", kind="missing"
            )
        remote_id = rows[0].get(".id") or rows[0].get("id")
        client.execute(
            conn,
            HOTSPOT_USER_PATH,
            "set",
            {"id": remote_id, "limit-uptime": format_limit_uptime(voucher.validity_hours)},
        )
        logger.info(
            f"Hotspot user {voucher.code} on {device.name} now limited to "
            f"{voucher.validity_hours}h uptime"
        )
        return remote_id

    # ------------------------------------------------------------------
    # Deprovision
    # ------------------------------------------------------------------

    def deprovision(self, voucher, device) -> DeprovisionResult:
        if device is None:
            return DeprovisionResult(success=True, already_absent=True)

        try:
            already_absent, sessions = self.registry.run(
                device, lambda client, conn: self._remove_user(client, conn, voucher)
            )
        except RouterError as e:
            failure = _failure_from(e)
            self._log_attempt(voucher, device, "deprovision", failure=failure)
            logger.warning(
                f"Could not deprovision {voucher.code} on {device.name}: {e}"
            )
            return DeprovisionResult(success=False, error=failure)

        self.registry.invalidate_user(device, voucher.code)
        self._log_attempt(voucher, device, "deprovision", already_present=not already_absent)
        if already_absent:
            logger.info(f"Hotspot user {voucher.code} already gone from {device.name}")
        else:
            logger.info(
                f"Hotspot user {voucher.code} {self.mode}d on {device.name} "
                f"({sessions} session(s) closed)"
            )
        return DeprovisionResult(
            success=True, already_absent=already_absent, sessions_closed=sessions
        )

    def _remove_user(self, client, conn, voucher):
        already_absent = False
        rows = client.query(conn, HOTSPOT_USER_PATH, filters={"name": voucher.code})
        if not rows:
            already_absent = True
        else:
            remote_id = rows[0].get(".id") or rows[0].get("id")
            try:
                if self.mode == "remove":
                    client.execute(conn, HOTSPOT_USER_PATH, "remove", {"id": remote_id})
                else:
                    client.execute(
                        conn, HOTSPOT_USER_PATH, "set", {"id": remote_id, "disabled": "yes"}
                    )
            except RouterProtocolError as e:
                if not is_not_found(e):
                    raise
                already_absent = True

        sessions = client.query(conn, HOTSPOT_ACTIVE_PATH, filters={"user": voucher.code})
        closed = 0
        for session in sessions:
            try:
                client.execute(
                    conn, HOTSPOT_ACTIVE_PATH, "remove", {"id": session.get(".id")}
                )
                closed += 1
            except RouterProtocolError as e:
                if not is_not_found(e):
                    raise
        return already_absent, closed

    # ------------------------------------------------------------------
    # Attempt log
    # ------------------------------------------------------------------

    def _record_success(self, voucher, device, remote_id, already_present):
        try:
            with transaction.atomic():
                ProvisioningAttempt.objects.create(
                    voucher=voucher,
                    device=device,
                    action="provision",
                    outcome="success",
                    remote_id=remote_id,
                    already_present=already_present,
                    retry_count=voucher.provision_attempts,
                )
        except IntegrityError:
            # A concurrent caller recorded the success first
            existing = self.vouchers.has_successful_attempt(voucher, device)
            return ProvisionResult(
                success=True,
                remote_id=existing.remote_id if existing else remote_id,
                already_present=True,
                short_circuited=True,
            )
        return ProvisionResult(success=True, remote_id=remote_id, already_present=already_present)

    def _record_failure(self, voucher, device, action, failure):
        self._log_attempt(voucher, device, action, failure=failure)
        log = logger.warning if failure.retryable else logger.error
        log(
            f"Provisioning voucher {voucher.code} on "
            f"{device.name if device else 'no device'} failed "
            f"({failure.kind}, {'retryable' if failure.retryable else 'permanent'}): {failure}"
        )
        return ProvisionResult(success=False, error=failure)

    def _log_attempt(self, voucher, device, action, failure=None, already_present=False):
        try:
            with transaction.atomic():
                ProvisioningAttempt.objects.create(
                    voucher=voucher,
                    device=device,
                    action=action,
                    outcome="failure" if failure else "success",
                    error_kind=failure.kind if failure else "",
                    error_detail=str(failure)[:2000] if failure else "",
                    retry_count=voucher.provision_attempts,
                    already_present=already_present,
                )
        except IntegrityError:
            # Success for this action already on record
            pass
