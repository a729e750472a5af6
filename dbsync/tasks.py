"""
Celery tasks for database replication
"""
import logging
import time

from celery import shared_task

from dbsync.exceptions import ConfigurationError, TransientError, classify_error
from dbsync.logging_utils import log_celery_task_complete, log_celery_task_error, log_celery_task_start
from dbsync.replication.service import build_service
from dbsync.utils.notification_utils import send_error_notification

logger = logging.getLogger(__name__)

# How often the long-running replication task checks it is still running
SERVICE_POLL_SECONDS = 5.0


def _retry_or_fail(task, error, task_name, started, **context):
    """Retry transient errors with exponential backoff; report everything else."""
    duration = time.time() - started
    log_celery_task_error(task_name, task.request.id, error, duration, **context)

    if classify_error(error) is TransientError and task.request.retries < task.max_retries:
        raise task.retry(exc=error, countdown=60 * (2 ** task.request.retries))

    send_error_notification(
        error_title=f"Replication task failed: {task_name}",
        error_message=str(error),
        context={'task_id': task.request.id, **context}
    )
    return {'success': False, 'error': str(error)}


@shared_task(bind=True, max_retries=3)
def run_replication_service(self, initialize_data=False):
    """
    Task: Run replication for this follower until the task is revoked
    Blocks the worker it runs on; route it to a dedicated queue.
    """
    task_name = 'run_replication_service'
    started = time.time()
    log_celery_task_start(task_name, self.request.id, initialize_data=initialize_data)

    service = None
    try:
        service = build_service()
        success, message = service.start_replication(initialize_data=initialize_data)
        if not success:
            raise ConfigurationError(message)

        while service.is_running:
            time.sleep(SERVICE_POLL_SECONDS)

        log_celery_task_complete(task_name, self.request.id, time.time() - started)
        return {'success': True, 'message': message}

    except Exception as e:
        return _retry_or_fail(self, e, task_name, started)

    finally:
        if service is not None:
            service.close()


@shared_task(bind=True, max_retries=3)
def initialize_existing_data(self, parallel=True, max_concurrency=None):
    """
    Task: Bulk load every table flagged for initialization
    """
    task_name = 'initialize_existing_data'
    started = time.time()
    log_celery_task_start(task_name, self.request.id)

    service = None
    try:
        service = build_service()
        service.ensure_state_tables()
        success, message = service.initialize_existing_data(parallel=parallel, max_concurrency=max_concurrency)
        log_celery_task_complete(task_name, self.request.id, time.time() - started, status_message=message)
        return {'success': success, 'message': message}

    except Exception as e:
        return _retry_or_fail(self, e, task_name, started)

    finally:
        if service is not None:
            service.close()


@shared_task(bind=True, max_retries=3)
def resync_table(self, table_name):
    """
    Task: Full resync of one table from the leader
    """
    task_name = 'resync_table'
    started = time.time()
    log_celery_task_start(task_name, self.request.id, table_name=table_name)

    service = None
    try:
        service = build_service()
        service.ensure_state_tables()
        success, message = service.sync_table_from_leader_to_follower(table_name)
        log_celery_task_complete(task_name, self.request.id, time.time() - started, table_name=table_name)
        return {'success': success, 'message': message}

    except Exception as e:
        return _retry_or_fail(self, e, task_name, started, table_name=table_name)

    finally:
        if service is not None:
            service.close()


@shared_task(bind=True, max_retries=3)
def manual_retry_failed_data(self, table_name=None):
    """
    Task: Re-queue failed replication entries
    """
    task_name = 'manual_retry_failed_data'
    started = time.time()
    log_celery_task_start(task_name, self.request.id, table_name=table_name)

    service = None
    try:
        service = build_service()
        result = service.manual_retry_failed_data(table_name)
        log_celery_task_complete(task_name, self.request.id, time.time() - started, table_name=table_name)
        return {
            'success': result.success,
            'message': result.message,
            'processed_count': result.processed_count,
            'processed_tables': result.processed_tables,
        }

    except Exception as e:
        return _retry_or_fail(self, e, task_name, started, table_name=table_name)

    finally:
        if service is not None:
            service.close()


@shared_task(bind=True, max_retries=3)
def sync_table_schema(self, table_name, to_leader=False):
    """
    Task: Synchronize one table's schema (ignores the table's schema sync strategy)
    """
    task_name = 'sync_table_schema'
    started = time.time()
    log_celery_task_start(task_name, self.request.id, table_name=table_name)

    service = None
    try:
        service = build_service()
        result = service.manual_sync_table_schema(table_name, to_leader=to_leader)
        log_celery_task_complete(task_name, self.request.id, time.time() - started, table_name=table_name)
        return {
            'success': result.success,
            'statements': result.executed_statements,
            'error': result.error_message,
        }

    except Exception as e:
        return _retry_or_fail(self, e, task_name, started, table_name=table_name)

    finally:
        if service is not None:
            service.close()


@shared_task(bind=True, max_retries=3)
def sync_all_table_schemas(self, to_leader=False):
    """
    Task: Synchronize the schema of every enabled table
    """
    task_name = 'sync_all_table_schemas'
    started = time.time()
    log_celery_task_start(task_name, self.request.id)

    service = None
    try:
        service = build_service()
        results = service.sync_all_table_schemas(to_leader=to_leader)
        failed = [name for name, result in results.items() if not result.success]
        log_celery_task_complete(task_name, self.request.id, time.time() - started, tables_count=len(results))
        return {
            'success': not failed,
            'synced': len(results) - len(failed),
            'failed': failed,
        }

    except Exception as e:
        return _retry_or_fail(self, e, task_name, started)

    finally:
        if service is not None:
            service.close()


@shared_task(bind=True, max_retries=3)
def cleanup_replication_logs(self):
    """
    Periodic task: Delete expired replication log and status rows
    Runs daily via Celery Beat
    """
    task_name = 'cleanup_replication_logs'
    started = time.time()
    log_celery_task_start(task_name, self.request.id)

    service = None
    try:
        service = build_service()
        deleted = service.cleanup_old_logs()
        log_celery_task_complete(task_name, self.request.id, time.time() - started)
        return {'success': True, 'deleted': deleted}

    except Exception as e:
        return _retry_or_fail(self, e, task_name, started)

    finally:
        if service is not None:
            service.close()


@shared_task(bind=True, max_retries=3)
def detect_synchronization_gaps(self, recover=False):
    """
    Periodic task: Report streams with entries waiting behind their cursor
    Runs every 10 minutes via Celery Beat
    """
    task_name = 'detect_synchronization_gaps'
    started = time.time()
    log_celery_task_start(task_name, self.request.id)

    service = None
    try:
        service = build_service()
        gaps = service.detect_synchronization_gaps()
        outcomes = service.recover_synchronization_gaps() if recover and gaps else {}

        if gaps:
            logger.warning(f"⚠️ Found {len(gaps)} synchronization gaps")
        else:
            logger.info("✅ No synchronization gaps")

        log_celery_task_complete(task_name, self.request.id, time.time() - started, gaps_count=len(gaps))
        return {
            'success': True,
            'gaps': [gap.to_dict() for gap in gaps],
            'recovered': outcomes,
        }

    except Exception as e:
        return _retry_or_fail(self, e, task_name, started)

    finally:
        if service is not None:
            service.close()
