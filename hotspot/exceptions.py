"""
Error taxonomy for voucher lifecycle and router provisioning
"""


class HotspotError(Exception):
    """Base class for every error raised by the hotspot app."""


# =============================================================================
# ROUTER CONNECTIVITY
# =============================================================================


class RouterError(HotspotError):
    """
    Normalized RouterOS failure.

    No raw socket or routeros_api exception escapes the client; callers
    only ever see one of the subclasses below.
    """

    kind = "router"
    retryable = True

    def __init__(self, message, host=None, cause=None):
        super().__init__(message)
        self.message = str(message)
        self.host = host
        self.cause = cause

    def __str__(self):
        if self.host:
            return f"{self.message} ({self.host})"
        return self.message


class RouterConnectionError(RouterError):
    kind = "connection"


class RouterUnreachable(RouterConnectionError):
    kind = "unreachable"


class RouterAuthFailed(RouterConnectionError):
    # Bad credentials need an operator, retrying only locks the account out
    kind = "auth_failed"
    retryable = False


class RouterTimeout(RouterConnectionError):
    kind = "timeout"


class RouterProtocolError(RouterError):
    kind = "protocol"


# =============================================================================
# VOUCHER STATE
# =============================================================================


class InvalidTransition(HotspotError):
    """Event not permitted from the voucher's current status."""

    def __init__(self, voucher_id, current_status, event, message=None):
        self.voucher_id = voucher_id
        self.current_status = current_status
        self.event = event
        super().__init__(
            message
            or f"Cannot apply '{event}' to voucher {voucher_id} in status '{current_status}'"
        )


class VoucherNotFound(HotspotError):
    pass


class CustomerNotFound(HotspotError):
    pass


class PaymentNotFound(HotspotError):
    pass


class PaymentNotCompleted(HotspotError):
    pass


class UnknownPackage(HotspotError):
    pass


# =============================================================================
# PROVISIONING
# =============================================================================


class ProvisionFailure(HotspotError):
    retryable = True

    def __init__(self, message, kind="protocol"):
        super().__init__(message)
        self.kind = kind


class RetryableProvisionFailure(ProvisionFailure):
    retryable = True


class PermanentProvisionFailure(ProvisionFailure):
    retryable = False


# =============================================================================
# DEVICES
# =============================================================================


class DeviceNotFound(HotspotError):
    pass


class DeviceInUse(HotspotError):
    def __init__(self, device, voucher_count, attempt_count=0):
        self.device = device
        self.voucher_count = voucher_count
        self.attempt_count = attempt_count
        super().__init__(
            f"Router '{device.name}' is referenced by {voucher_count} voucher(s) "
            f"and {attempt_count} provisioning record(s) and cannot be deleted"
        )
