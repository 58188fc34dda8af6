"""
Management command to health-check MikroTik routers

Usage:
    python manage.py monitor_routers
    python manage.py monitor_routers --device-id <uuid>
"""

from django.core.management.base import BaseCommand, CommandError

from hotspot.devices import RouterDeviceService
from hotspot.exceptions import DeviceNotFound
from hotspot.services import default_service


class Command(BaseCommand):
    help = "Check router reachability and record status, uptime and version"

    def add_arguments(self, parser):
        parser.add_argument("--device-id", help="Only check this router")

    def handle(self, *args, **options):
        service = RouterDeviceService(registry=default_service().registry)
        try:
            results = service.monitor_devices(options.get("device_id"))
        except DeviceNotFound as e:
            raise CommandError(str(e))

        if not results:
            self.stdout.write(self.style.WARNING("No routers configured"))
            return

        for health in results:
            if health.error:
                self.stdout.write(
                    self.style.ERROR(f"❌ {health.device_id}: {health.status} ({health.error})")
                )
            else:
                self.stdout.write(
                    self.style.SUCCESS(
                        f"✅ {health.identity or health.device_id}: {health.status}, "
                        f"uptime {health.uptime_seconds}s, RouterOS {health.version or '?'}"
                    )
                )
