# automail/helpers/database.py
"""Database session helpers for tasks and services.

Supports SQLite (default, single file) and PostgreSQL via DATABASE_URL.
"""

from contextlib import contextmanager
import os

# Lazy init, see _get_session_local()
_SessionLocal = None
_engine = None


def _database_url() -> str:
    database_path = os.path.join(
        os.path.dirname(os.path.dirname(os.path.dirname(__file__))),
        "automail.db"
    )
    return os.getenv("DATABASE_URL", f"sqlite:///{database_path}")


def _get_engine():
    """Get or create SQLAlchemy engine (cached).

    The schema is created on first use via models.init_db().
    """
    global _engine, _SessionLocal
    if _engine is None:
        from automail.models import init_db
        _engine, _SessionLocal = init_db(_database_url())
    return _engine


def _get_session_local():
    """Get or create SQLAlchemy SessionLocal factory (cached)."""
    if _SessionLocal is None:
        _get_engine()
    return _SessionLocal


def get_session_factory():
    """Return the cached session factory.

    Usage in Celery tasks:
        SessionFactory = get_session_factory()
        with SessionFactory() as db:
            ...
    """
    return _get_session_local()


@contextmanager
def get_db_session():
    """Context manager for database sessions.

    Usage:
        with get_db_session() as db:
            rule = db.query(Rule).first()

    Yields:
        SQLAlchemy session that auto-closes on exit
    """
    SessionLocal = _get_session_local()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_user(session, user_id: int):
    """Get user by ID (None if not found)."""
    from automail.models import User
    return session.query(User).filter_by(id=user_id).first()


def get_enabled_rules(session, user_id: int):
    """All enabled rules of a user, ordered by id (= numbering in the prompt).

    Security: only rules owned by user_id are returned.
    """
    from automail.models import Rule
    return (
        session.query(Rule)
        .filter_by(user_id=user_id, enabled=True)
        .order_by(Rule.id.asc())
        .all()
    )
