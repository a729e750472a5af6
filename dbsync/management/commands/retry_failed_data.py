"""
Management command to re-queue failed replication entries
"""

from django.core.management.base import BaseCommand, CommandError

from dbsync.exceptions import ConfigurationError
from dbsync.replication.service import build_service


class Command(BaseCommand):
    help = 'Rewind cursors and re-queue every failed replication entry'

    def add_arguments(self, parser):
        parser.add_argument(
            '--table',
            default=None,
            help='Only retry failures of this table',
        )

    def handle(self, *args, **options):
        try:
            service = build_service()
        except ConfigurationError as e:
            raise CommandError(f"Invalid replication settings: {e}")

        try:
            result = service.manual_retry_failed_data(options['table'])
        finally:
            service.close()

        if not result.success:
            raise CommandError(result.message)

        self.stdout.write(self.style.SUCCESS(f"✅ {result.message}"))
        for table_name in result.processed_tables:
            self.stdout.write(f"   - {table_name}")
