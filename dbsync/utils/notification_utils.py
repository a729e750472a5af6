"""
Notification and error handling utilities
"""

import logging
import traceback
from datetime import datetime
from typing import Any, Dict, List, Optional

from django.conf import settings
from django.core.mail import send_mail

logger = logging.getLogger(__name__)


def send_error_notification(
    error_title: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    recipients: Optional[List[str]] = None,
    include_traceback: bool = True
) -> bool:
    """
    Send error notification email to administrators

    Args:
        error_title: Brief title of the error
        error_message: Detailed error message
        context: Additional context information (table, follower, ...)
        recipients: List of email addresses (defaults to settings.ADMINS)
        include_traceback: Whether to include stack trace

    Returns:
        bool: True if email sent successfully
    """
    try:
        if recipients is None:
            recipients = [admin[1] for admin in getattr(settings, 'ADMINS', [])]

        if not recipients:
            logger.debug("No recipients configured for error notifications")
            return False

        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        environment = getattr(settings, 'ENVIRONMENT', 'development')
        trace = traceback.format_exc() if include_traceback else ''

        subject = f"[DB Replication] ERROR: {error_title}"
        message = f"""
ERROR: {error_title}

Time: {timestamp}
Environment: {environment}

Message:
{error_message}

Context:
{context or 'No additional context'}

{"Traceback:" if trace else ""}
{trace}
        """.strip()

        send_mail(
            subject=subject,
            message=message,
            from_email=getattr(settings, 'DEFAULT_FROM_EMAIL', 'noreply@example.com'),
            recipient_list=recipients,
            fail_silently=False,
        )

        logger.info(f"Error notification sent: {error_title}")
        return True

    except Exception as e:
        logger.error(f"Failed to send error notification: {str(e)}")
        return False


def log_and_notify_error(
    logger_instance: logging.Logger,
    error_title: str,
    exception: Exception,
    context: Optional[Dict[str, Any]] = None,
    notify: bool = True
) -> None:
    """
    Log error and optionally send notification

    Example:
        try:
            loader.load_table(table_config)
        except BulkLoadError as e:
            log_and_notify_error(logger, "Initial load failed", e, context={'table': 'orders'})
    """
    error_message = str(exception)

    logger_instance.error(
        f"{error_title}: {error_message}",
        extra={'context': context},
        exc_info=True
    )

    if notify:
        send_error_notification(
            error_title=error_title,
            error_message=error_message,
            context=context,
            include_traceback=True
        )
