"""
Management command to run the voucher sweeper

Usage:
    python manage.py run_voucher_sweeper

    # For production (run as a service):
    python manage.py run_voucher_sweeper --interval 60

Options:
    --interval: Sweep interval in seconds (default: 60)
    --once: Run once and exit (for cron-like usage)
"""

import signal
import sys
import time

from django.core.management.base import BaseCommand

from hotspot.services import default_service
from hotspot.sweeper import ExpirySweeper


class Command(BaseCommand):
    help = "Expire vouchers, retry pending provisioning and pending router cleanups"

    def add_arguments(self, parser):
        parser.add_argument(
            "--interval",
            type=int,
            default=60,
            help="Sweep interval in seconds (default: 60)",
        )
        parser.add_argument(
            "--once",
            action="store_true",
            help="Run once and exit (useful for cron)",
        )

    def handle(self, *args, **options):
        interval = options["interval"]
        run_once = options["once"]
        service = default_service()
        sweeper = ExpirySweeper(service)

        self.stdout.write(
            self.style.SUCCESS(
                f"\n🔍 Voucher Sweeper\n"
                f"=================\n"
                f"Interval: {interval} seconds\n"
                f'Mode: {"Single run" if run_once else "Continuous"}\n'
            )
        )

        if run_once:
            self._sweep(sweeper)
            return

        def signal_handler(signum, frame):
            self.stdout.write(self.style.WARNING("\n⚠️  Shutdown signal received, stopping sweeper...\n"))
            service.registry.close_all()
            sys.exit(0)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        self.stdout.write(self.style.SUCCESS("🚀 Starting sweeper... Press Ctrl+C to stop\n"))
        try:
            while True:
                self._sweep(sweeper)
                time.sleep(interval)
        finally:
            service.registry.close_all()
            self.stdout.write(self.style.SUCCESS("✅ Sweeper stopped\n"))

    def _sweep(self, sweeper):
        report = sweeper.sweep()
        self.stdout.write(
            self.style.SUCCESS(
                f"✅ expired={report.expired} retried={report.retried} "
                f"activated={report.activated} still_pending={report.still_pending} "
                f"flagged={report.flagged} deprovisioned={report.deprovisioned} "
                f"skipped={report.skipped}"
            )
        )
        for error in report.errors:
            self.stdout.write(self.style.WARNING(f"  ⚠️  {error}"))
