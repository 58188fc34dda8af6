"""
Background tasks for the hotspot voucher platform
Entry points for django-crontab (see CRONJOBS in settings)
"""

import logging

from .devices import RouterDeviceService
from .services import default_service
from .sweeper import ExpirySweeper

logger = logging.getLogger(__name__)


def sweep_vouchers():
    """
    Expire vouchers past expires_at, retry pending provisioning and finish
    owed router cleanups. Overlapping runs are safe.
    """
    report = ExpirySweeper(default_service()).sweep()
    logger.info(
        f"🧹 Sweep complete: {report.expired} expired, {report.activated}/{report.retried} "
        f"retries activated, {report.flagged} flagged, {report.deprovisioned} cleaned up"
    )
    for error in report.errors:
        logger.warning(f"⚠️  {error}")
    return report.as_dict()


def monitor_router_devices():
    """Health check every router and persist status, uptime and version."""
    service = RouterDeviceService(registry=default_service().registry)
    results = service.monitor_devices()
    online = sum(1 for health in results if health.status == "online")
    logger.info(f"📡 Router health: {online}/{len(results)} online")
    return [health.as_dict() for health in results]
