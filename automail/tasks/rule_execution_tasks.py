"""
Celery Tasks: Regel-Ausführung

Tasks:
- apply_rules_to_message: Regeln auf eine eingehende Nachricht anwenden
- apply_rules_to_messages: Regeln auf mehrere Nachrichten anwenden (Batch)
- confirm_plan: Offenen Plan eines Threads ausführen
- reject_plan: Offenen Plan eines Threads verwerfen
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from celery import Task
from celery.exceptions import Reject, Retry
from sqlalchemy.exc import SQLAlchemyError

from automail.ai_client import AIClientError, TRANSIENT_ERROR_KINDS, get_ai_client
from automail.auto_rules_engine import AutoRulesEngine
from automail.celery_app import celery_app
from automail.helpers.database import get_session_factory, get_user
from automail.services.action_executor import ActionExecutionError, Gating
from automail.services.mail_provider import MessageNotFoundError, get_mail_provider

logger = logging.getLogger(__name__)


class BaseRuleTask(Task):
    """Base Task mit Retry-Logic und Error-Handling für Rule-Execution"""

    autoretry_for = (SQLAlchemyError,)
    retry_kwargs = {"max_retries": 3}
    retry_backoff = True
    retry_backoff_max = 600  # 10 minutes
    retry_jitter = True


def _build_engine(db, user_id: int) -> AutoRulesEngine:
    return AutoRulesEngine(db, get_ai_client(), get_mail_provider(user_id))


def _load_user(db, user_id: int):
    user = get_user(db, user_id)
    if user is None:
        raise Reject(f"User {user_id} not found", requeue=False)
    return user


def _decision_summary(decision) -> Dict[str, Any]:
    if decision is None:
        return {"matched": False, "executed": False, "planned": False}
    return {
        "matched": True,
        "executed": decision.executed,
        "planned": decision.plan is not None,
        "rule_id": decision.rule.id,
        "rule_name": decision.rule.name,
        "function_name": decision.function_call.name,
        "executed_rule_id": decision.executed_rule.id if decision.executed_rule else None,
    }


@celery_app.task(
    bind=True,
    base=BaseRuleTask,
    name="tasks.rule_execution.apply_rules_to_message",
    acks_late=True,
    reject_on_worker_lost=True,
    time_limit=300,  # 5 minutes hard limit
    soft_time_limit=240  # 4 minutes soft limit
)
def apply_rules_to_message(
    self,
    user_id: int,
    message_id: str,
    force_execute: bool = False
) -> Dict[str, Any]:
    """
    Wendet die Regeln des Users auf eine eingehende Nachricht an.

    Args:
        user_id: User ID
        message_id: Provider-Message-ID
        force_execute: Ausführen auch bei automate=False (globale Erlaubnis nötig)

    Returns:
        Dict mit dem Ergebnis:
        {
            "matched": bool,
            "executed": bool,
            "planned": bool,
            "rule_id": int, ...
        }

    Raises:
        Reject: Ungültige Parameter, Nachricht fehlt, Ausführung fehlgeschlagen
        Retry: DB-Fehler oder transiente KI-Fehler
    """
    if not user_id or not message_id:
        raise Reject("Invalid parameters: user_id and message_id required", requeue=False)

    logger.info(
        f"🔧 [Task {self.request.id}] Applying rules: user={user_id}, message={message_id}"
    )

    SessionFactory = get_session_factory()

    try:
        with SessionFactory() as db:
            user = _load_user(db, user_id)
            engine = _build_engine(db, user_id)

            email = engine.provider.get_message(message_id)
            decision = engine.plan_or_execute(
                user, email, gating=Gating.for_user(user, force_execute=force_execute)
            )

            result = _decision_summary(decision)
            logger.info(f"✅ [Task {self.request.id}] Message {message_id}: {result}")
            return result

    except (Reject, Retry):
        raise

    except MessageNotFoundError as e:
        logger.warning(f"Message {message_id} not found: {e}")
        raise Reject(f"Message {message_id} not found", requeue=False)

    except AIClientError as e:
        if e.kind in TRANSIENT_ERROR_KINDS:
            logger.warning(f"Transient AI error (will retry): {e.kind.value}")
            raise self.retry(exc=e, countdown=60)
        logger.error(f"AI error in rule execution: {e.kind.value}: {e}")
        raise Reject(f"AI call failed: {e}", requeue=False)

    except ActionExecutionError as e:
        logger.error(f"Action {e.action_type.value} failed for message {message_id}: {e.original}")
        raise Reject(f"Action execution failed: {e}", requeue=False)

    except SQLAlchemyError as e:
        logger.warning(f"Database error in rule execution (will retry): {e}")
        raise self.retry(exc=e, countdown=60)

    except Exception as e:
        logger.error(f"Unexpected error in rule execution: {type(e).__name__}: {e}")
        raise Reject(f"Rule execution failed: {e}", requeue=False)


@celery_app.task(
    bind=True,
    base=BaseRuleTask,
    name="tasks.rule_execution.apply_rules_to_messages",
    acks_late=True,
    reject_on_worker_lost=True,
    time_limit=600,  # 10 minutes hard limit
    soft_time_limit=540  # 9 minutes soft limit
)
def apply_rules_to_messages(
    self,
    user_id: int,
    message_ids: List[str]
) -> Dict[str, Any]:
    """
    Batch-Variante: Fehler einzelner Nachrichten werden gezählt.

    Returns:
        Dict mit Statistiken:
        {
            "messages_checked": int,
            "executed": int,
            "planned": int,
            "no_match": int,
            "errors": int
        }
    """
    if not user_id or not message_ids:
        raise Reject("Invalid parameters: user_id and message_ids required", requeue=False)

    logger.info(
        f"🔧 [Task {self.request.id}] Applying rules: user={user_id}, messages={len(message_ids)}"
    )

    SessionFactory = get_session_factory()

    try:
        with SessionFactory() as db:
            user = _load_user(db, user_id)
            engine = _build_engine(db, user_id)
            stats = engine.process_messages(user, message_ids)

            logger.info(
                f"✅ [Task {self.request.id}] Rules applied: "
                f"{stats['executed']} executed, {stats['planned']} planned, "
                f"{stats['errors']} errors"
            )
            return stats

    except (Reject, Retry):
        raise

    except SQLAlchemyError as e:
        logger.warning(f"Database error in batch rule execution (will retry): {e}")
        raise self.retry(exc=e, countdown=60)

    except Exception as e:
        logger.error(f"Unexpected error in batch rule execution: {type(e).__name__}: {e}")
        raise Reject(f"Batch rule execution failed: {e}", requeue=False)


@celery_app.task(
    bind=True,
    base=BaseRuleTask,
    name="tasks.rule_execution.confirm_plan",
    acks_late=True,
    reject_on_worker_lost=True,
    time_limit=120,
    soft_time_limit=100
)
def confirm_plan(self, user_id: int, thread_id: str) -> Dict[str, Any]:
    """Führt den offenen Plan eines Threads aus (vom User bestätigt)."""
    if not user_id or not thread_id:
        raise Reject("Invalid parameters: user_id and thread_id required", requeue=False)

    SessionFactory = get_session_factory()

    try:
        with SessionFactory() as db:
            user = _load_user(db, user_id)
            engine = _build_engine(db, user_id)
            executed_rule: Optional[Any] = engine.confirm_plan(user, thread_id)
            return {
                "executed": executed_rule is not None,
                "executed_rule_id": executed_rule.id if executed_rule else None,
            }

    except (Reject, Retry):
        raise

    except ActionExecutionError as e:
        logger.error(f"Confirmed plan failed for thread {thread_id}: {e}")
        raise Reject(f"Action execution failed: {e}", requeue=False)

    except SQLAlchemyError as e:
        logger.warning(f"Database error confirming plan (will retry): {e}")
        raise self.retry(exc=e, countdown=60)


@celery_app.task(
    bind=True,
    base=BaseRuleTask,
    name="tasks.rule_execution.reject_plan",
    acks_late=True,
    time_limit=60,
    soft_time_limit=50
)
def reject_plan(self, user_id: int, thread_id: str) -> Dict[str, Any]:
    """Verwirft den offenen Plan eines Threads."""
    if not user_id or not thread_id:
        raise Reject("Invalid parameters: user_id and thread_id required", requeue=False)

    SessionFactory = get_session_factory()

    try:
        with SessionFactory() as db:
            user = _load_user(db, user_id)
            engine = _build_engine(db, user_id)
            return {"rejected": engine.reject_plan(user, thread_id)}

    except (Reject, Retry):
        raise

    except SQLAlchemyError as e:
        logger.warning(f"Database error rejecting plan (will retry): {e}")
        raise self.retry(exc=e, countdown=60)
