"""
Typed configuration for the hotspot app, built from Django settings
"""

from dataclasses import dataclass
from typing import Optional, Dict

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured


@dataclass(frozen=True)
class RouterClientSettings:
    timeout: int = 10
    attempts: int = 3
    retry_delay: float = 1.0
    use_ssl: bool = False
    ssl_verify: bool = False
    plaintext_login: bool = True

    def __post_init__(self):
        if self.timeout <= 0:
            raise ImproperlyConfigured("ROUTER_API_TIMEOUT must be positive")
        if self.attempts < 1:
            raise ImproperlyConfigured("ROUTER_API_ATTEMPTS must be at least 1")
        if self.retry_delay < 0:
            raise ImproperlyConfigured("ROUTER_API_RETRY_DELAY cannot be negative")

    @classmethod
    def from_settings(cls):
        return cls(
            timeout=int(getattr(settings, "ROUTER_API_TIMEOUT", 10)),
            attempts=int(getattr(settings, "ROUTER_API_ATTEMPTS", 3)),
            retry_delay=float(getattr(settings, "ROUTER_API_RETRY_DELAY", 1.0)),
            use_ssl=bool(getattr(settings, "ROUTER_API_USE_SSL", False)),
            ssl_verify=bool(getattr(settings, "ROUTER_API_SSL_VERIFY", False)),
        )


@dataclass(frozen=True)
class CacheTTLs:
    """Seconds each class of cached router read may be served stale."""

    volatile: int = 30
    connections: int = 60
    static: int = 300

    def __post_init__(self):
        for name in ("volatile", "connections", "static"):
            if getattr(self, name) < 0:
                raise ImproperlyConfigured(f"ROUTER_CACHE_TTLS['{name}'] cannot be negative")

    @classmethod
    def from_settings(cls):
        return cls(**getattr(settings, "ROUTER_CACHE_TTLS", {}))


@dataclass(frozen=True)
class SweeperSettings:
    max_provision_attempts: int = 5
    retry_backoff_seconds: int = 60
    retry_backoff_max_seconds: int = 3600
    lease_seconds: int = 120

    def __post_init__(self):
        if self.max_provision_attempts < 1:
            raise ImproperlyConfigured("max_provision_attempts must be at least 1")
        if self.lease_seconds < 1:
            raise ImproperlyConfigured("lease_seconds must be at least 1")

    @classmethod
    def from_settings(cls):
        return cls(**getattr(settings, "VOUCHER_SWEEPER", {}))

    def backoff_for(self, attempts: int) -> int:
        """Exponential backoff after the given number of failed attempts."""
        delay = self.retry_backoff_seconds * (2 ** max(attempts - 1, 0))
        return min(delay, self.retry_backoff_max_seconds)


@dataclass(frozen=True)
class VoucherPackage:
    key: str
    profile: str
    validity_hours: int
    data_limit_mb: Optional[int] = None

    def __post_init__(self):
        if not self.key:
            raise ImproperlyConfigured("Voucher package key is required")
        if not self.profile:
            raise ImproperlyConfigured(f"Voucher package '{self.key}' has no profile")
        if not isinstance(self.validity_hours, int) or self.validity_hours <= 0:
            raise ImproperlyConfigured(
                f"Voucher package '{self.key}' needs a positive validity_hours"
            )
        if self.data_limit_mb is not None and self.data_limit_mb <= 0:
            raise ImproperlyConfigured(
                f"Voucher package '{self.key}' data_limit_mb must be positive or None"
            )


def load_packages() -> Dict[str, VoucherPackage]:
    packages = {}
    for key, data in getattr(settings, "VOUCHER_PACKAGES", {}).items():
        try:
            packages[key] = VoucherPackage(key=key, **data)
        except TypeError as e:
            raise ImproperlyConfigured(f"Voucher package '{key}' is malformed: {e}")
    return packages


def deprovision_mode() -> str:
    mode = getattr(settings, "DEPROVISION_MODE", "disable")
    if mode not in ("disable", "remove"):
        raise ImproperlyConfigured("DEPROVISION_MODE must be 'disable' or 'remove'")
    return mode
