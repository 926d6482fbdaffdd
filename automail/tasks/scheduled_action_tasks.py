"""
Celery Tasks: Verzögerte Aktionen

Tasks:
- process_delayed_actions: Sweep über fällige Aktionen (Celery Beat, DELAYED_ACTIONS_INTERVAL)
- cancel_scheduled_action: Geplante Aktion abbrechen (User)
- reschedule_scheduled_action: Geplante Aktion verschieben (User)
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict

from celery.exceptions import Reject, Retry
from sqlalchemy.exc import SQLAlchemyError

from automail.celery_app import celery_app
from automail.helpers.database import get_session_factory
from automail.services import delayed_actions
from automail.tasks.rule_execution_tasks import BaseRuleTask

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    base=BaseRuleTask,
    name="tasks.scheduled_actions.process_delayed_actions",
    acks_late=True,
    time_limit=300,
    soft_time_limit=240
)
def process_delayed_actions_task(self, limit: int = delayed_actions.DEFAULT_BATCH_SIZE) -> Dict[str, int]:
    """
    Führt alle fälligen geplanten Aktionen aus.

    Parallele Sweeps sind erlaubt: jede Aktion wird einzeln geclaimt.

    Returns:
        {"due": int, "claimed": int, "executed": int, "failed": int, "skipped": int}
    """
    SessionFactory = get_session_factory()

    try:
        with SessionFactory() as db:
            return delayed_actions.process_delayed_actions(db, limit=limit)

    except SQLAlchemyError as e:
        logger.warning(f"Database error in delayed action sweep (will retry): {e}")
        raise self.retry(exc=e, countdown=60)


@celery_app.task(
    bind=True,
    base=BaseRuleTask,
    name="tasks.scheduled_actions.cancel_scheduled_action",
    time_limit=60,
    soft_time_limit=50
)
def cancel_scheduled_action(self, user_id: int, action_id: int) -> Dict[str, Any]:
    """Bricht eine geplante Aktion ab (No-op nach dem Claim)."""
    if not user_id or not action_id:
        raise Reject("Invalid parameters: user_id and action_id required", requeue=False)

    SessionFactory = get_session_factory()

    try:
        with SessionFactory() as db:
            cancelled = delayed_actions.cancel_scheduled_action(db, action_id, user_id=user_id)
            return {"action_id": action_id, "cancelled": cancelled}

    except SQLAlchemyError as e:
        logger.warning(f"Database error cancelling action {action_id} (will retry): {e}")
        raise self.retry(exc=e, countdown=30)


@celery_app.task(
    bind=True,
    base=BaseRuleTask,
    name="tasks.scheduled_actions.reschedule_scheduled_action",
    time_limit=60,
    soft_time_limit=50
)
def reschedule_scheduled_action(self, user_id: int, action_id: int, scheduled_for: str) -> Dict[str, Any]:
    """
    Args:
        scheduled_for: ISO-8601 Zeitpunkt (JSON-Serializer)
    """
    if not user_id or not action_id or not scheduled_for:
        raise Reject("Invalid parameters: user_id, action_id and scheduled_for required", requeue=False)

    try:
        when = datetime.fromisoformat(scheduled_for)
    except ValueError:
        raise Reject(f"Invalid scheduled_for: {scheduled_for!r}", requeue=False)

    SessionFactory = get_session_factory()

    try:
        with SessionFactory() as db:
            rescheduled = delayed_actions.reschedule_scheduled_action(db, action_id, when, user_id=user_id)
            return {"action_id": action_id, "rescheduled": rescheduled}

    except (Reject, Retry):
        raise

    except SQLAlchemyError as e:
        logger.warning(f"Database error rescheduling action {action_id} (will retry): {e}")
        raise self.retry(exc=e, countdown=30)
