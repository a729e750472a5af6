"""
Logging utility functions for structured logging
"""
import logging
import time
from contextlib import contextmanager

# Get loggers for different parts of the application
replication_logger = logging.getLogger('dbsync.replication')
schema_logger = logging.getLogger('dbsync.schema')
db_logger = logging.getLogger('dbsync.database')
app_logger = logging.getLogger('dbsync')


def log_with_context(logger, level, message, **context):
    """
    Log a message with additional context fields

    Args:
        logger: The logger instance to use
        level: Log level (INFO, ERROR, WARNING, etc.)
        message: The log message
        **context: Additional context fields (table_name, direction, etc.)

    Example:
        log_with_context(
            replication_logger,
            'INFO',
            'Batch applied',
            table_name='orders',
            direction='LeaderToFollower',
            duration=0.4
        )
    """
    extra = {k: v for k, v in context.items() if v is not None}
    logger.log(getattr(logging, level.upper()), message, extra=extra)


@contextmanager
def log_operation(logger, operation_name, **context):
    """
    Context manager to log the start, end, and duration of an operation

    Example:
        with log_operation(replication_logger, 'initial_load', table_name='orders'):
            loader.load_table(table_config)
    """
    start_time = time.time()

    log_with_context(
        logger,
        'INFO',
        f'{operation_name} started',
        operation=operation_name,
        **context
    )

    try:
        yield

        duration = time.time() - start_time
        log_with_context(
            logger,
            'INFO',
            f'{operation_name} completed successfully',
            operation=operation_name,
            duration=duration,
            status='success',
            **context
        )

    except Exception as e:
        duration = time.time() - start_time
        log_with_context(
            logger,
            'ERROR',
            f'{operation_name} failed: {str(e)}',
            operation=operation_name,
            duration=duration,
            status='failed',
            error_type=type(e).__name__,
            error_message=str(e),
            **context
        )
        raise


# ====================================
# REPLICATION-SPECIFIC LOGGING FUNCTIONS
# ====================================

def log_batch_processed(result):
    """Log a processed polling batch (skipped when it was empty)"""
    if not result.fetched:
        return
    level = 'INFO' if result.success else 'ERROR'
    log_with_context(
        replication_logger,
        level,
        f'Batch processed: {result.applied} applied, {result.failed} failed',
        table_name=result.table_name,
        direction=result.direction.label,
        operation='process_batch',
        fetched=result.fetched,
        skipped=result.skipped,
        conflicts=result.conflicts,
        cursor=result.cursor,
        duration=result.duration,
        error_message=result.error
    )


def log_schema_sync(result):
    """Log a schema synchronization result"""
    level = 'INFO' if result.success else 'ERROR'
    log_with_context(
        schema_logger,
        level,
        f'Schema sync {"succeeded" if result.success else "failed"}',
        table_name=result.table_name,
        operation='schema_sync',
        statements_count=len(result.executed_statements),
        duration=result.duration,
        error_message=result.error_message
    )


def log_database_connection(database_name, database_type, status, duration=None, error=None):
    """Log database connection attempts"""
    level = 'INFO' if status == 'success' else 'ERROR'
    message = f'Database connection {status}'

    context = {
        'database_name': database_name,
        'database_type': database_type,
        'operation': 'db_connection_test',
        'status': status,
        'duration': duration
    }

    if error:
        context['error_message'] = str(error)

    log_with_context(db_logger, level, message, **context)


# ====================================
# CELERY TASK LOGGING
# ====================================

def log_celery_task_start(task_name, task_id, **kwargs):
    """Log Celery task start"""
    log_with_context(
        logging.getLogger('celery'),
        'INFO',
        f'Celery task started: {task_name}',
        task_name=task_name,
        task_id=task_id,
        operation='task_start',
        **kwargs
    )


def log_celery_task_complete(task_name, task_id, duration, **kwargs):
    """Log Celery task completion"""
    log_with_context(
        logging.getLogger('celery'),
        'INFO',
        f'Celery task completed: {task_name}',
        task_name=task_name,
        task_id=task_id,
        operation='task_complete',
        duration=duration,
        status='success',
        **kwargs
    )


def log_celery_task_error(task_name, task_id, error, duration, **kwargs):
    """Log Celery task error"""
    log_with_context(
        logging.getLogger('celery'),
        'ERROR',
        f'Celery task failed: {task_name}',
        task_name=task_name,
        task_id=task_id,
        operation='task_error',
        duration=duration,
        status='failed',
        error_type=type(error).__name__,
        error_message=str(error),
        **kwargs
    )
