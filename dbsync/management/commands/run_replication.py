"""
Management command to run replication in the foreground
"""

import time

from django.core.management.base import BaseCommand, CommandError

from dbsync.exceptions import ConfigurationError
from dbsync.replication.service import build_service


class Command(BaseCommand):
    help = 'Start polling replication between the leader and this follower (Ctrl+C to stop)'

    def add_arguments(self, parser):
        parser.add_argument(
            '--initialize',
            action='store_true',
            help='Bulk load existing leader data before replicating',
        )

    def handle(self, *args, **options):
        try:
            service = build_service()
        except ConfigurationError as e:
            raise CommandError(f"Invalid replication settings: {e}")

        success, message = service.start_replication(initialize_data=options['initialize'])
        if not success:
            service.close()
            raise CommandError(message)

        self.stdout.write(self.style.SUCCESS(f"✅ {message}"))
        self.stdout.write("Press Ctrl+C to stop")

        try:
            while service.is_running:
                time.sleep(1)
        except KeyboardInterrupt:
            self.stdout.write("\n⏹️ Stopping replication...")
        finally:
            service.close()

        self.stdout.write(self.style.SUCCESS("✅ Replication stopped"))
