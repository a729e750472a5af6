"""
Management command to bulk load existing leader data into the follower
"""

from django.core.management.base import BaseCommand, CommandError

from dbsync.exceptions import ConfigurationError
from dbsync.replication.service import build_service


class Command(BaseCommand):
    help = 'Truncate and reload every table flagged for initialization from the leader'

    def add_arguments(self, parser):
        parser.add_argument(
            '--sequential',
            action='store_true',
            help='Load one table at a time',
        )
        parser.add_argument(
            '--concurrency',
            type=int,
            default=None,
            help='Tables loaded at the same time (defaults to INITIAL_LOAD_TABLE_CONCURRENCY)',
        )

    def handle(self, *args, **options):
        try:
            service = build_service()
        except ConfigurationError as e:
            raise CommandError(f"Invalid replication settings: {e}")

        try:
            service.ensure_state_tables()
            success, message = service.initialize_existing_data(
                parallel=not options['sequential'],
                max_concurrency=options['concurrency'],
            )
        finally:
            service.close()

        if not success:
            raise CommandError(message)
        self.stdout.write(self.style.SUCCESS(f"✅ {message}"))
