"""
Django settings for the syncnode project.

Every deployment-specific value comes from the environment so one image
serves every follower.
"""

import json
import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'dev-insecure-change-me')
DEBUG = os.environ.get('DJANGO_DEBUG', 'false').lower() == 'true'
ENVIRONMENT = os.environ.get('ENVIRONMENT', 'development')
ALLOWED_HOSTS = [h for h in os.environ.get('DJANGO_ALLOWED_HOSTS', '').split(',') if h]

INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'django.contrib.auth',
    'dbsync',
]

# Django's own bookkeeping only; replication state lives in the leader and follower databases
DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': os.environ.get('DJANGO_DB_PATH', str(BASE_DIR / 'syncnode.sqlite3')),
    }
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'
USE_TZ = True
TIME_ZONE = 'UTC'

# ====================================
# REPLICATION
# ====================================

# Fernet secret for ENCRYPTED_PASSWORD values in LEADER / FOLLOWER
DB_PASSWORD_ENCRYPTION_KEY = os.environ.get('DB_PASSWORD_ENCRYPTION_KEY', SECRET_KEY)

REPLICATION = {
    'FOLLOWER_SERVER_ID': os.environ.get('REPLICATION_FOLLOWER_SERVER_ID', ''),
    'LEADER_SERVER_NAME': os.environ.get('REPLICATION_LEADER_SERVER_NAME', 'leader'),
    'LEADER': {'URL': os.environ.get('REPLICATION_LEADER_URL', '')},
    'FOLLOWER': {'URL': os.environ.get('REPLICATION_FOLLOWER_URL', '')},
    'TABLES': json.loads(os.environ.get('REPLICATION_TABLES', '[]')),
    'BATCH_SIZE': int(os.environ.get('REPLICATION_BATCH_SIZE', '1000')),
    'DATA_RETENTION_DAYS': int(os.environ.get('REPLICATION_DATA_RETENTION_DAYS', '30')),
    'CLEANUP_INTERVAL_HOURS': float(os.environ.get('REPLICATION_CLEANUP_INTERVAL_HOURS', '24')),
    'CONFLICT_WINDOW_SECONDS': float(os.environ.get('REPLICATION_CONFLICT_WINDOW_SECONDS', '30')),
    'MAX_RETRY_ATTEMPTS': int(os.environ.get('REPLICATION_MAX_RETRY_ATTEMPTS', '3')),
    'INITIAL_LOAD_TABLE_CONCURRENCY': int(os.environ.get('REPLICATION_INITIAL_LOAD_CONCURRENCY', '3')),
}

if os.environ.get('REPLICATION_LEADER_READ_REPLICA_URL'):
    REPLICATION['LEADER_READ_REPLICA'] = {'URL': os.environ['REPLICATION_LEADER_READ_REPLICA_URL']}

# ====================================
# CELERY
# ====================================

CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND', CELERY_BROKER_URL)
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_TIMEZONE = TIME_ZONE

# ====================================
# EMAIL (error notifications)
# ====================================

ADMINS = [
    ('Replication Admin', email)
    for email in os.environ.get('REPLICATION_ADMIN_EMAILS', '').split(',')
    if email
]
EMAIL_BACKEND = os.environ.get('EMAIL_BACKEND', 'django.core.mail.backends.smtp.EmailBackend')
EMAIL_HOST = os.environ.get('EMAIL_HOST', 'localhost')
EMAIL_PORT = int(os.environ.get('EMAIL_PORT', '25'))
DEFAULT_FROM_EMAIL = os.environ.get('DEFAULT_FROM_EMAIL', 'noreply@example.com')

# ====================================
# LOGGING
# ====================================

LOG_DIR = Path(os.environ.get('LOG_DIR', BASE_DIR / 'logs'))
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} [{levelname}] {name}: {message}',
            'style': '{',
        },
        'simple': {
            'format': '[{levelname}] {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'loggers': {
        'dbsync': {
            'handlers': ['console'],
            'level': LOG_LEVEL,
            'propagate': False,
        },
        'celery': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
        'django': {
            'handlers': ['console'],
            'level': 'WARNING',
        },
    },
}

if os.environ.get('LOG_TO_FILE', 'false').lower() == 'true':
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    LOGGING['handlers']['replication_file'] = {
        'class': 'logging.handlers.RotatingFileHandler',
        'filename': str(LOG_DIR / 'replication.log'),
        'maxBytes': 10 * 1024 * 1024,
        'backupCount': 5,
        'formatter': 'verbose',
    }
    LOGGING['loggers']['dbsync']['handlers'].append('replication_file')
