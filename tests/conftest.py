# tests/conftest.py
"""Pytest Configuration & Shared Fixtures.

- In-memory SQLite pro Test (models.init_db)
- fakeredis statt Redis (Plan Store, Queue-Slots)
- Mock-Provider + Mock-KI-Client
"""

from unittest.mock import Mock

import fakeredis
import pytest

from automail.helpers.redis_client import set_redis_client
from automail.mail_types import ParsedEmail
from automail.models import Action, Rule, User, init_db
from automail.services.mail_provider import MailProvider, set_provider_factory
from automail.services.plan_store import PlanStore


# ===== DATABASE FIXTURES =====

@pytest.fixture
def db_engine():
    """Frische In-Memory-Datenbank (StaticPool: alle Sessions teilen eine Verbindung)."""
    engine, Session = init_db("sqlite://")
    yield engine, Session
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return db_engine[1]


@pytest.fixture
def db_session(session_factory):
    """Database session for tests"""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def user(db_session):
    """Test-User mit globaler Auto-Ausführung"""
    user = User(email="anna@example.com", ai_auto_execute=True, webhook_secret="s3cret")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def make_rule(db_session, user):
    """
    Factory: make_rule("Newsletter", "Newsletter archivieren", [{"type": "ARCHIVE"}], automate=True)
    """

    def _make(name, instructions, actions, automate=False, enabled=True, owner=None):
        rule = Rule(
            user_id=(owner or user).id,
            name=name,
            instructions=instructions,
            automate=automate,
            enabled=enabled,
        )
        rule.actions = [Action(**spec) for spec in actions]
        db_session.add(rule)
        db_session.commit()
        return rule

    return _make


# ===== MAIL FIXTURES =====

@pytest.fixture
def email():
    return ParsedEmail(
        message_id="msg-1",
        thread_id="thread-1",
        sender="news@shop.example",
        subject="Wochenangebote",
        body="Diese Woche 20% auf alles.",
        headers={"message-id": "<abc@shop.example>"},
    )


@pytest.fixture
def provider(email):
    """Mock-Provider: get_message liefert die Test-Mail"""
    mock_provider = Mock(spec=MailProvider)
    mock_provider.get_message.return_value = email
    set_provider_factory(lambda user_id: mock_provider)
    yield mock_provider
    set_provider_factory(None)


@pytest.fixture
def ai_client():
    return Mock()


# ===== REDIS FIXTURES =====

@pytest.fixture
def fake_redis():
    client = fakeredis.FakeRedis(decode_responses=True)
    set_redis_client(client)
    yield client
    set_redis_client(None)


@pytest.fixture
def plan_store(fake_redis):
    return PlanStore(redis_client=fake_redis, ttl_days=7)


# ===== CELERY FIXTURES =====

@pytest.fixture
def mock_task():
    """Ersatz für `self` eines gebundenen Celery-Tasks"""
    from celery.exceptions import Retry

    task = Mock()
    task.request.id = "test-task-123"
    task.retry.side_effect = Retry()
    return task


def call_task(task, mock_self, *args, **kwargs):
    """
    Ruft den Task-Body direkt auf (ohne Broker, mit Mock als self).

    Die Klasse hält die ungewrappte Funktion, autoretry_for ersetzt nur
    `run` auf der Instanz.
    """
    return task.__class__.run(mock_self, *args, **kwargs)


@pytest.fixture
def run_task():
    return call_task
