"""
Celery configuration for Django project
"""
import os
from celery import Celery
from celery.schedules import crontab

# Set default Django settings
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'syncnode.settings')

app = Celery('syncnode')

# Load config from Django settings with CELERY_ prefix
app.config_from_object('django.conf:settings', namespace='CELERY')

# Auto-discover tasks from all installed apps
app.autodiscover_tasks()

# Configure Celery Beat schedule
app.conf.beat_schedule = {
    'cleanup-replication-logs': {
        'task': 'dbsync.tasks.cleanup_replication_logs',
        'schedule': crontab(hour=3, minute=0),  # Daily at 03:00
    },
    'detect-synchronization-gaps': {
        'task': 'dbsync.tasks.detect_synchronization_gaps',
        'schedule': crontab(minute='*/10'),  # Every 10 minutes
    },
}

# The long-running replication task holds its worker
app.conf.task_routes = {
    'dbsync.tasks.run_replication_service': {'queue': 'replication'},
    'dbsync.tasks.*': {'queue': 'celery'},
}
