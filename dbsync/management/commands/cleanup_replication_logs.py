"""
Management command to delete expired replication log rows
"""

from django.core.management.base import BaseCommand, CommandError

from dbsync.exceptions import ConfigurationError
from dbsync.replication.service import build_service


class Command(BaseCommand):
    help = 'Delete replication log and status rows older than DATA_RETENTION_DAYS'

    def handle(self, *args, **options):
        try:
            service = build_service()
        except ConfigurationError as e:
            raise CommandError(f"Invalid replication settings: {e}")

        try:
            deleted = service.cleanup_old_logs()
        finally:
            service.close()

        for key, count in deleted.items():
            self.stdout.write(f"  {key}: {count}")
        self.stdout.write(self.style.SUCCESS(f"✅ Deleted {sum(deleted.values())} rows"))
