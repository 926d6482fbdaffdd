"""
Automail - Datenbankmodelle (SQLAlchemy)

Regeln + Aktions-Templates (vom User definiert) und der Audit-Trail
(ExecutedRule / ExecutedAction) inkl. verzögerter Aktionen.
"""

import json
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import (
    create_engine,
    Column,
    Integer,
    String,
    Text,
    Boolean,
    DateTime,
    ForeignKey,
    UniqueConstraint,
    Index,
    event,
)
from sqlalchemy.orm import declarative_base, sessionmaker, relationship
from sqlalchemy.pool import StaticPool


Base = declarative_base()


class ActionType(str, Enum):
    """Aktions-Typen, die eine Regel erlauben kann"""

    ARCHIVE = "ARCHIVE"
    LABEL = "LABEL"
    DRAFT_EMAIL = "DRAFT_EMAIL"
    REPLY = "REPLY"
    SEND_EMAIL = "SEND_EMAIL"
    FORWARD = "FORWARD"
    MARK_READ = "MARK_READ"
    CALL_WEBHOOK = "CALL_WEBHOOK"
    TRACK_THREAD = "TRACK_THREAD"

    @property
    def function_name(self) -> str:
        """Name der Funktion, die dem KI-Modell angeboten wird (z.B. 'draft_email')"""
        return self.value.lower()

    @classmethod
    def from_function_name(cls, name: str) -> Optional["ActionType"]:
        try:
            return cls(name.upper())
        except ValueError:
            return None


class ExecutedRuleStatus(str, Enum):
    """Status einer ausgelösten Regel"""

    PENDING = "PENDING"
    APPLIED = "APPLIED"
    SCHEDULED = "SCHEDULED"
    REJECTED = "REJECTED"
    SKIPPED = "SKIPPED"
    ERROR = "ERROR"


class ExecutedActionStatus(str, Enum):
    """Status einer einzelnen ausgeführten/geplanten Aktion"""

    PENDING = "PENDING"
    SKIPPED = "SKIPPED"
    SCHEDULED = "SCHEDULED"
    EXECUTING = "EXECUTING"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_ACTION_STATUSES = (
    ExecutedActionStatus.EXECUTED,
    ExecutedActionStatus.FAILED,
    ExecutedActionStatus.CANCELLED,
    ExecutedActionStatus.SKIPPED,
)

# Felder eines Aktions-Templates, die {{ Platzhalter }} enthalten dürfen
TEMPLATE_FIELDS = ("label", "subject", "content", "to", "cc", "bcc", "url")


class User(Base):
    """Besitzer von Regeln und Audit-Einträgen"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    email = Column(String(255), nullable=False, unique=True)

    # Globale Erlaubnis: Regeln mit automate=True dürfen ohne Bestätigung laufen
    ai_auto_execute = Column(Boolean, default=True, nullable=False)

    # Wird bei CALL_WEBHOOK als Header mitgeschickt
    webhook_secret = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=lambda: datetime.now(UTC), nullable=False)

    rules = relationship("Rule", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email})>"


class Rule(Base):
    """
    Vom User definierte Regel: natürlichsprachliche Anweisungen + erlaubte Aktionen.

    Beispiel:
        name="Newsletter archivieren"
        instructions="Newsletter und Marketing-Mails"
        actions=[ARCHIVE, LABEL("Newsletter")]
        automate=True
    """

    __tablename__ = "rules"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    name = Column(String(100), nullable=False)
    instructions = Column(Text, nullable=False, default="")
    automate = Column(Boolean, default=False, nullable=False)
    enabled = Column(Boolean, default=True, nullable=False, index=True)

    created_at = Column(DateTime, default=lambda: datetime.now(UTC), nullable=False)
    updated_at = Column(DateTime, default=lambda: datetime.now(UTC), onupdate=lambda: datetime.now(UTC), nullable=False)

    user = relationship("User", back_populates="rules")
    actions = relationship(
        "Action",
        back_populates="rule",
        cascade="all, delete-orphan",
        order_by="Action.id",
    )

    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_user_rule_name"),)

    @property
    def action_types(self) -> set:
        """Menge der erlaubten Aktions-Typen dieser Regel"""
        return {ActionType(action.type) for action in self.actions}

    def __repr__(self):
        return f"<Rule(id={self.id}, name={self.name!r}, automate={self.automate})>"


class Action(Base):
    """
    Aktions-Template einer Regel.

    Jedes Textfeld ist entweder ein Literal oder enthält {{ Anweisung }}-Platzhalter,
    die vom Argument-Generator befüllt werden.
    """

    __tablename__ = "actions"

    id = Column(Integer, primary_key=True)
    rule_id = Column(Integer, ForeignKey("rules.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String(30), nullable=False)

    label = Column(Text, nullable=True)
    subject = Column(Text, nullable=True)
    content = Column(Text, nullable=True)
    to = Column(Text, nullable=True)
    cc = Column(Text, nullable=True)
    bcc = Column(Text, nullable=True)
    url = Column(Text, nullable=True)

    # > 0: Aktion wird nicht sofort ausgeführt, sondern geplant
    delay_minutes = Column(Integer, nullable=True)

    rule = relationship("Rule", back_populates="actions")

    def template_fields(self) -> Dict[str, Optional[str]]:
        return {field: getattr(self, field) for field in TEMPLATE_FIELDS}

    def __repr__(self):
        return f"<Action(id={self.id}, type={self.type}, rule_id={self.rule_id})>"


class ExecutedRule(Base):
    """Audit-Eintrag: eine Regel wurde auf einen Thread angewendet (oder geplant/abgelehnt)"""

    __tablename__ = "executed_rules"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    rule_id = Column(Integer, ForeignKey("rules.id", ondelete="SET NULL"), nullable=True)
    thread_id = Column(String(255), nullable=False)
    message_id = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default=ExecutedRuleStatus.APPLIED.value)
    automated = Column(Boolean, nullable=False, default=False)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(UTC), nullable=False)

    rule = relationship("Rule")
    actions = relationship(
        "ExecutedAction",
        back_populates="executed_rule",
        cascade="all, delete-orphan",
        order_by="ExecutedAction.id",
    )

    __table_args__ = (
        Index("idx_executed_rule_thread", "user_id", "thread_id"),
    )

    def __repr__(self):
        return f"<ExecutedRule(id={self.id}, rule_id={self.rule_id}, status={self.status})>"


class ExecutedAction(Base):
    """
    Audit-Eintrag einer einzelnen Aktion.

    Verzögerte Aktionen leben ebenfalls hier: status=SCHEDULED + scheduled_for.
    Zustandsautomat:
        SCHEDULED → EXECUTING → EXECUTED | FAILED
        SCHEDULED → CANCELLED
        SCHEDULED → SCHEDULED (reschedule)
    """

    __tablename__ = "executed_actions"

    id = Column(Integer, primary_key=True)
    executed_rule_id = Column(Integer, ForeignKey("executed_rules.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    type = Column(String(30), nullable=False)
    arguments_json = Column(Text, nullable=False, default="{}")

    label = Column(Text, nullable=True)
    subject = Column(Text, nullable=True)
    content = Column(Text, nullable=True)
    to = Column(Text, nullable=True)
    cc = Column(Text, nullable=True)
    bcc = Column(Text, nullable=True)
    url = Column(Text, nullable=True)

    message_id = Column(String(255), nullable=False)
    thread_id = Column(String(255), nullable=False)

    status = Column(String(20), nullable=False, default=ExecutedActionStatus.PENDING.value)
    scheduled_for = Column(DateTime, nullable=True)
    executed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(UTC), nullable=False)

    executed_rule = relationship("ExecutedRule", back_populates="actions")

    __table_args__ = (
        Index("idx_executed_action_due", "status", "scheduled_for"),
        Index("idx_executed_action_thread", "user_id", "thread_id"),
    )

    @property
    def arguments(self) -> Dict[str, Any]:
        return json.loads(self.arguments_json) if self.arguments_json else {}

    @arguments.setter
    def arguments(self, value: Dict[str, Any]) -> None:
        self.arguments_json = json.dumps(value or {}, ensure_ascii=False)

    def __repr__(self):
        return f"<ExecutedAction(id={self.id}, type={self.type}, status={self.status})>"


class ThreadTracker(Base):
    """TRACK_THREAD: Thread wartet auf Antwort (Follow-up)"""

    __tablename__ = "thread_trackers"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    thread_id = Column(String(255), nullable=False)
    message_id = Column(String(255), nullable=False)
    sent_at = Column(DateTime, nullable=True)
    resolved = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=lambda: datetime.now(UTC), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "thread_id", "message_id", name="uq_tracker_message"),
    )


def init_db(database_url: str = "sqlite:///automail.db"):
    """Initialisiert die Datenbank und gibt (engine, SessionFactory) zurück"""
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        engine = create_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    elif database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False, "timeout": 30.0},
        )
    else:
        engine = create_engine(
            database_url,
            pool_size=20,
            max_overflow=40,
            pool_recycle=3600,
            connect_args={"connect_timeout": 10},
        )

    if engine.url.drivername.startswith("sqlite"):

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            """SQLite Pragmas für Worker + Beat parallel (WAL, Busy-Timeout)"""
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.close()

    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine)
    return engine, Session
