"""
Management command to show replication cursors and gaps
"""

from django.core.management.base import BaseCommand, CommandError

from dbsync.exceptions import ConfigurationError
from dbsync.replication.service import build_service


class Command(BaseCommand):
    help = 'Show configured tables, stream cursors and synchronization gaps'

    def add_arguments(self, parser):
        parser.add_argument(
            '--recover',
            action='store_true',
            help='Process one batch for every stream with a gap',
        )

    def handle(self, *args, **options):
        try:
            service = build_service()
        except ConfigurationError as e:
            raise CommandError(f"Invalid replication settings: {e}")

        try:
            status = service.get_status()
            gaps = service.detect_synchronization_gaps()
            outcomes = service.recover_synchronization_gaps() if options['recover'] and gaps else {}
        finally:
            service.close()

        self.stdout.write(f"\n{'=' * 60}")
        self.stdout.write(f"FOLLOWER: {status['follower_server_id']}")
        self.stdout.write(f"{'=' * 60}")

        self.stdout.write("\nTables:")
        for table_name, table in status['tables'].items():
            state = 'enabled' if table['enabled'] else 'disabled'
            self.stdout.write(
                f"  {table_name}: {table['direction']} ({state}, {table['conflict_strategy']}, {table['sync_mode']})"
            )
        for table_name, error in status['excluded_tables'].items():
            self.stdout.write(self.style.ERROR(f"  {table_name}: excluded - {error}"))

        self.stdout.write("\nCursors:")
        for cursor in status['cursors']:
            self.stdout.write(
                f"  {cursor['table_name']} [{cursor['follower_server_id']}]: "
                f"{cursor['last_synced_id']} at {cursor['last_sync_time'] or 'never'}"
            )

        if not gaps:
            self.stdout.write(self.style.SUCCESS("\n✅ No synchronization gaps"))
            return

        self.stdout.write(self.style.WARNING(f"\n⚠️ {len(gaps)} synchronization gap(s):"))
        for gap in gaps:
            self.stdout.write(
                f"  {gap.table_name} {gap.direction.label}: {gap.pending_count} pending "
                f"(cursor {gap.cursor}, latest {gap.latest_log_id})"
            )
        for key, outcome in outcomes.items():
            self.stdout.write(f"  🔄 {key}: {outcome}")
