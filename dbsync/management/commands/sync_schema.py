"""
Management command to synchronize table schemas
"""

from django.core.management.base import BaseCommand, CommandError

from dbsync.exceptions import ConfigurationError
from dbsync.replication.service import build_service


class Command(BaseCommand):
    help = 'Synchronize follower table schemas with the leader (or the reverse with --to-leader)'

    def add_arguments(self, parser):
        parser.add_argument('table', nargs='?', help='Table to synchronize')
        parser.add_argument(
            '--all',
            action='store_true',
            help='Synchronize every enabled table (honors each table\'s schema sync strategy)',
        )
        parser.add_argument(
            '--to-leader',
            action='store_true',
            help='Converge the leader to the follower instead',
        )

    def handle(self, *args, **options):
        if not options['table'] and not options['all']:
            raise CommandError("Give a table name or --all")

        try:
            service = build_service()
        except ConfigurationError as e:
            raise CommandError(f"Invalid replication settings: {e}")

        try:
            if options['all']:
                results = service.sync_all_table_schemas(to_leader=options['to_leader'])
            else:
                results = {
                    options['table']: service.manual_sync_table_schema(
                        options['table'], to_leader=options['to_leader']
                    )
                }
        finally:
            service.close()

        failed = 0
        for table_name, result in results.items():
            if result.success:
                self.stdout.write(self.style.SUCCESS(
                    f"✅ {table_name}: {len(result.executed_statements)} statements"
                ))
                for statement in result.executed_statements:
                    self.stdout.write(f"   {statement}")
                if result.applied_differences:
                    for warning in result.applied_differences.warnings:
                        self.stdout.write(self.style.WARNING(f"   ⚠️ {warning}"))
            else:
                failed += 1
                self.stdout.write(self.style.ERROR(f"❌ {table_name}: {result.error_message}"))

        if failed:
            raise CommandError(f"Schema sync failed for {failed} table(s)")
