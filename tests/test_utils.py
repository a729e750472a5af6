"""
Connection strings, password encryption and error notifications.
"""

import logging

import pytest

from dbsync.encryption import decrypt_password, encrypt_password
from dbsync.models.config import DatabaseTarget
from dbsync.utils.database_utils import build_connection_string
from dbsync.utils.notification_utils import log_and_notify_error, send_error_notification


class TestConnectionString:
    def test_url_wins(self):
        target = DatabaseTarget(name='leader', url='sqlite:///leader.db', host='db')
        assert build_connection_string(target) == 'sqlite:///leader.db'

    def test_mysql_default_port_and_quoting(self):
        target = DatabaseTarget(name='leader', engine='mysql', host='db', user='repl', password='p@ss:w/rd',
                                database='shop')
        assert build_connection_string(target) == (
            "mysql+pymysql://repl:p%40ss%3Aw%2Frd@db:3306/shop?charset=utf8mb4"
        )

    def test_postgresql(self):
        target = DatabaseTarget(name='follower', engine='postgresql', host='pg', port=6432, user='repl',
                                password='secret', database='shop')
        assert build_connection_string(target) == "postgresql+psycopg2://repl:secret@pg:6432/shop"

    def test_encrypted_password(self, settings):
        settings.DB_PASSWORD_ENCRYPTION_KEY = 'test-key'
        target = DatabaseTarget(name='leader', engine='mysql', host='db', user='repl',
                                encrypted_password=encrypt_password('hunter2'), database='shop')
        assert 'repl:hunter2@db' in build_connection_string(target)

    def test_unsupported_engine(self):
        with pytest.raises(ValueError):
            build_connection_string(DatabaseTarget(name='leader', engine='oracle', database='x'))


class TestEncryption:
    def test_round_trip(self, settings):
        settings.DB_PASSWORD_ENCRYPTION_KEY = 'test-key'
        token = encrypt_password('hunter2')
        assert token != 'hunter2'
        assert decrypt_password(token) == 'hunter2'

    def test_empty(self):
        assert encrypt_password('') == ''
        assert decrypt_password('') == ''

    def test_wrong_key(self, settings):
        settings.DB_PASSWORD_ENCRYPTION_KEY = 'one-key'
        token = encrypt_password('hunter2')
        settings.DB_PASSWORD_ENCRYPTION_KEY = 'other-key'
        with pytest.raises(ValueError):
            decrypt_password(token)


class TestNotifications:
    def test_no_recipients(self, settings, mailoutbox):
        settings.ADMINS = []
        assert send_error_notification("Initial load failed", "boom") is False
        assert mailoutbox == []

    def test_sends_to_admins(self, settings, mailoutbox):
        settings.ADMINS = [('Ops', 'ops@example.com')]

        assert send_error_notification("Initial load failed", "boom", context={'table': 'items'})

        assert len(mailoutbox) == 1
        mail = mailoutbox[0]
        assert mail.subject == "[DB Replication] ERROR: Initial load failed"
        assert mail.to == ['ops@example.com']
        assert "'table': 'items'" in mail.body

    def test_explicit_recipients(self, settings, mailoutbox):
        settings.ADMINS = []
        assert send_error_notification("x", "y", recipients=['dev@example.com'], include_traceback=False)
        assert mailoutbox[0].to == ['dev@example.com']

    def test_log_and_notify(self, settings, mailoutbox, caplog):
        settings.ADMINS = [('Ops', 'ops@example.com')]
        log = logging.getLogger('tests.notify')

        with caplog.at_level(logging.ERROR, logger='tests.notify'):
            log_and_notify_error(log, "Resync failed", RuntimeError("disk full"), context={'table': 'items'})

        assert "Resync failed: disk full" in caplog.text
        assert len(mailoutbox) == 1
