"""
Management command to show failed replication entry statistics
"""

from django.core.management.base import BaseCommand, CommandError

from dbsync.exceptions import ConfigurationError
from dbsync.replication.service import build_service


class Command(BaseCommand):
    help = 'Show failed replication entries per table'

    def handle(self, *args, **options):
        try:
            service = build_service()
        except ConfigurationError as e:
            raise CommandError(f"Invalid replication settings: {e}")

        try:
            stats = service.get_failed_data_statistics()
        finally:
            service.close()

        self.stdout.write(f"\n{'=' * 60}")
        self.stdout.write(f"FAILED DATA: {stats['total_failures']} entries")
        self.stdout.write(f"{'=' * 60}")

        if not stats['total_failures']:
            self.stdout.write(self.style.SUCCESS("✅ No failed data"))
            return

        for table_name, count in stats['by_table'].items():
            self.stdout.write(f"  {table_name}: {count}")
        for operation, count in stats['by_operation'].items():
            self.stdout.write(f"  {operation}: {count}")
        if stats.get('oldest_failure'):
            self.stdout.write(f"\nOldest failure: {stats['oldest_failure']}")
        if stats.get('newest_failure'):
            self.stdout.write(f"Newest failure: {stats['newest_failure']}")
