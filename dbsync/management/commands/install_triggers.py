"""
Management command to install change capture triggers
"""

from django.core.management.base import BaseCommand, CommandError

from dbsync.exceptions import ConfigurationError
from dbsync.replication.service import build_service


class Command(BaseCommand):
    help = 'Create the replication state tables and capture triggers on both databases'

    def add_arguments(self, parser):
        parser.add_argument(
            '--force',
            action='store_true',
            help='Recreate triggers that already exist',
        )

    def handle(self, *args, **options):
        try:
            service = build_service()
        except ConfigurationError as e:
            raise CommandError(f"Invalid replication settings: {e}")

        try:
            service.ensure_state_tables()
            success, message = service.install_triggers(force=options['force'])
        finally:
            service.close()

        if not success:
            raise CommandError(message)
        self.stdout.write(self.style.SUCCESS(f"✅ {message}"))
