"""
Management command to fully resync one table from the leader
"""

from django.core.management.base import BaseCommand, CommandError

from dbsync.exceptions import ConfigurationError
from dbsync.replication.service import build_service


class Command(BaseCommand):
    help = 'Truncate the follower copy of a table and reload it from the leader'

    def add_arguments(self, parser):
        parser.add_argument('table', help='Table to resync')

    def handle(self, *args, **options):
        try:
            service = build_service()
        except ConfigurationError as e:
            raise CommandError(f"Invalid replication settings: {e}")

        try:
            service.ensure_state_tables()
            success, message = service.sync_table_from_leader_to_follower(options['table'])
        finally:
            service.close()

        if not success:
            raise CommandError(message)
        self.stdout.write(self.style.SUCCESS(f"✅ {message}"))
