"""
Change capture trigger installation.

Leader tables replicated towards the follower get triggers logging
LEADER_TO_FOLLOWER rows; follower tables replicated towards the leader get
triggers logging FOLLOWER_TO_LEADER rows. Bidirectional tables get both.
"""

import logging
from typing import Dict, Iterable, Optional, Tuple

from sqlalchemy.engine import Engine

from dbsync.models.config import TableConfig
from dbsync.models.log import ReplicationDirection
from dbsync.utils.adapters import BaseDatabaseAdapter, get_adapter

logger = logging.getLogger(__name__)


class TriggerInstaller:
    """Idempotently installs and verifies capture triggers on one database."""

    def __init__(self, engine: Engine, server_name: str, direction: ReplicationDirection,
                 adapter: Optional[BaseDatabaseAdapter] = None, logger: Optional[logging.Logger] = None):
        """
        Args:
            engine: Database whose tables get the triggers
            server_name: Value written to replication_logs.source_server
            direction: Direction logged by these triggers
            adapter: Dialect adapter (derived from the engine if omitted)
            logger: Injected logger
        """
        if direction == ReplicationDirection.BIDIRECTIONAL:
            raise ValueError("Triggers log one concrete direction")
        self.engine = engine
        self.server_name = server_name
        self.direction = direction
        self.adapter = adapter or get_adapter(engine)
        self.logger = logger or logging.getLogger(__name__)

    def applies_to(self, table_config: TableConfig) -> bool:
        if self.direction == ReplicationDirection.LEADER_TO_FOLLOWER:
            return table_config.replicates_to_follower
        return table_config.replicates_to_leader

    def install(self, table_config: TableConfig, force: bool = False) -> Tuple[bool, str]:
        """
        Make sure the three capture triggers of a table exist.

        Args:
            table_config: Table to capture
            force: Recreate the triggers even if they all exist

        Returns:
            (success, message)
        """
        table_name = table_config.table_name
        names = self.adapter.trigger_names(table_name)
        try:
            with self.engine.begin() as conn:
                self.adapter.prepare_capture(conn)
                existing = [name for name in names if self.adapter.trigger_exists(conn, name)]

                if len(existing) == len(names) and not force:
                    self.logger.debug(f"[{table_name}] Capture triggers verified")
                    return True, f"Triggers verified on {table_name}"

                if existing:
                    for statement in self.adapter.generate_drop_trigger_statements(table_name):
                        conn.exec_driver_sql(statement)

                for statement in self.adapter.generate_trigger_statements(
                    table_name, table_config.primary_key, self.direction, self.server_name
                ):
                    conn.exec_driver_sql(statement)

            self.logger.info(
                f"[{table_name}] ✓ Capture triggers installed ({self.direction.label}, server {self.server_name})"
            )
            return True, f"Triggers installed on {table_name}"

        except Exception as e:
            error_msg = f"Failed to install triggers on {table_name}: {e}"
            self.logger.error(f"[{table_name}] {error_msg}")
            return False, error_msg

    def install_all(self, table_configs: Iterable[TableConfig], force: bool = False) -> Dict[str, Tuple[bool, str]]:
        results = {}
        for table_config in table_configs:
            if table_config.enabled and self.applies_to(table_config):
                results[table_config.table_name] = self.install(table_config, force=force)
        return results

    def remove(self, table_name: str) -> Tuple[bool, str]:
        try:
            with self.engine.begin() as conn:
                for statement in self.adapter.generate_drop_trigger_statements(table_name):
                    conn.exec_driver_sql(statement)
            self.logger.info(f"[{table_name}] Capture triggers removed")
            return True, f"Triggers removed from {table_name}"
        except Exception as e:
            error_msg = f"Failed to remove triggers from {table_name}: {e}"
            self.logger.error(f"[{table_name}] {error_msg}")
            return False, error_msg
