"""
Validation logic for replication operations.

Provides pre-flight checks to ensure replication can start successfully.
"""

import logging
import time
from typing import Dict, List, Optional, Tuple

from sqlalchemy import inspect
from sqlalchemy.engine import Engine

from dbsync.logging_utils import log_database_connection
from dbsync.models.config import ReplicationSettings
from dbsync.utils.database_utils import test_database_connection

logger = logging.getLogger(__name__)


class ReplicationValidator:
    """
    Validates prerequisites for replication operations.
    All validation methods return (bool, str) - (is_valid, error_message)
    """

    def __init__(self, replication_settings: ReplicationSettings, engines: Dict[str, Engine],
                 logger: Optional[logging.Logger] = None):
        """
        Args:
            replication_settings: Parsed REPLICATION settings
            engines: Engines by role ('leader', 'follower', optionally 'leader_read_replica')
            logger: Injected logger
        """
        self.settings = replication_settings
        self.engines = engines
        self.logger = logger or logging.getLogger(__name__)

    @property
    def _prefix(self) -> str:
        return f"[{self.settings.follower_server_id}]"

    def validate_all(self) -> Tuple[bool, List[str]]:
        """
        Run all validations and return consolidated result.

        Returns:
            (is_valid, [error_messages])
        """
        self.logger.info(f"{self._prefix} Running pre-flight validation...")

        validations = [self._validate_connection(role, engine) for role, engine in self.engines.items()]
        validations.append(self._validate_table_configs())

        errors = [error_msg for is_valid, error_msg in validations if not is_valid]
        if errors:
            self.logger.error(f"{self._prefix} Validation failed: {errors}")
            return False, errors

        self.logger.info(f"{self._prefix} ✓ All validations passed")
        return True, []

    def _validate_connection(self, role: str, engine: Engine) -> Tuple[bool, str]:
        """Validate one database answers queries."""
        started = time.time()
        success, error = test_database_connection(engine, role)
        log_database_connection(
            role, engine.dialect.name, 'success' if success else 'failed',
            duration=time.time() - started, error=error
        )
        if not success:
            return False, f"{role} database connection failed: {error}"
        return True, ""

    def _validate_table_configs(self) -> Tuple[bool, str]:
        """Validate at least one table is configured and enabled."""
        if not self.settings.enabled_tables:
            return False, "No tables enabled for replication"
        self.logger.debug(f"{self._prefix} ✓ {len(self.settings.enabled_tables)} tables enabled")
        return True, ""

    def missing_tables(self) -> Dict[str, List[str]]:
        """
        Enabled tables absent from the database they are read from.

        Returns:
            role -> [table names]
        """
        missing: Dict[str, List[str]] = {}
        existing = {
            role: set(inspect(engine).get_table_names())
            for role, engine in self.engines.items()
            if role in ('leader', 'follower')
        }
        for table_config in self.settings.enabled_tables:
            if table_config.replicates_to_follower and table_config.table_name not in existing.get('leader', ()):
                missing.setdefault('leader', []).append(table_config.table_name)
            if table_config.replicates_to_leader and table_config.table_name not in existing.get('follower', ()):
                missing.setdefault('follower', []).append(table_config.table_name)
        return missing
