"""
Verzögerte Aktionen (Scheduler)
===============================

Zustandsautomat einer geplanten ExecutedAction:

    SCHEDULED → EXECUTING → EXECUTED
                EXECUTING → FAILED
                EXECUTING → SKIPPED    (Nachricht existiert nicht mehr)
    SCHEDULED → CANCELLED
    SCHEDULED → SCHEDULED              (reschedule)

Der Sweep (process_delayed_actions) wird periodisch von Celery Beat
gestartet. Jede fällige Aktion wird einzeln per bedingtem UPDATE
"geclaimt" (nur wenn sie noch SCHEDULED ist). Laufen zwei Sweeps parallel,
gewinnt genau einer den Claim und nur dieser führt die Aktion aus.

Eine fehlgeschlagene verzögerte Aktion setzt die Regel NICHT auf ERROR.
Andere Aktionen derselben Regel können bereits erfolgreich gelaufen sein.
"""

import logging
from datetime import datetime, UTC
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from automail.mail_types import ActionItem
from automail.models import (
    ActionType,
    ExecutedAction,
    ExecutedActionStatus,
    ExecutedRule,
    ExecutedRuleStatus,
    TEMPLATE_FIELDS,
    User,
)
from automail.services.action_executor import ActionExecutionError, ActionExecutor
from automail.services.mail_provider import MessageNotFoundError, get_mail_provider

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100

# Status, in denen eine Regel noch nicht abgeschlossen ist
_OPEN_STATUSES = (
    ExecutedActionStatus.PENDING.value,
    ExecutedActionStatus.SCHEDULED.value,
    ExecutedActionStatus.EXECUTING.value,
)


def get_due_actions(
    session: Session, now: Optional[datetime] = None, limit: int = DEFAULT_BATCH_SIZE
) -> List[ExecutedAction]:
    """Fällige Aktionen, älteste Fälligkeit zuerst"""
    now = now or datetime.now(UTC)
    return (
        session.query(ExecutedAction)
        .filter(
            ExecutedAction.status == ExecutedActionStatus.SCHEDULED.value,
            ExecutedAction.scheduled_for <= now,
        )
        .order_by(ExecutedAction.scheduled_for.asc(), ExecutedAction.id.asc())
        .limit(limit)
        .all()
    )


def _transition(
    session: Session,
    action_id: int,
    from_status: ExecutedActionStatus,
    values: Dict[str, Any],
    user_id: Optional[int] = None,
) -> bool:
    """Bedingtes UPDATE: greift nur, wenn die Zeile noch from_status hat"""
    query = session.query(ExecutedAction).filter(
        ExecutedAction.id == action_id,
        ExecutedAction.status == from_status.value,
    )
    if user_id is not None:
        query = query.filter(ExecutedAction.user_id == user_id)
    updated = query.update(values, synchronize_session=False)
    return updated == 1


def claim_scheduled_action(session: Session, action_id: int) -> bool:
    """
    SCHEDULED → EXECUTING (atomar).

    Returns:
        True nur für genau einen Aufrufer pro Aktion
    """
    claimed = _transition(
        session,
        action_id,
        ExecutedActionStatus.SCHEDULED,
        {"status": ExecutedActionStatus.EXECUTING.value},
    )
    session.commit()
    if not claimed:
        logger.debug(f"Aktion {action_id} bereits geclaimt oder nicht mehr geplant")
    return claimed


def cancel_scheduled_action(session: Session, action_id: int, user_id: Optional[int] = None) -> bool:
    """
    SCHEDULED → CANCELLED. Nach dem Claim ist Abbrechen ein No-op.

    Returns:
        True wenn die Aktion abgebrochen wurde
    """
    cancelled = _transition(
        session,
        action_id,
        ExecutedActionStatus.SCHEDULED,
        {"status": ExecutedActionStatus.CANCELLED.value},
        user_id=user_id,
    )
    if cancelled:
        action = session.get(ExecutedAction, action_id)
        session.refresh(action)
        complete_executed_rule_if_done(session, action.executed_rule_id)
        logger.info(f"🚫 Geplante Aktion {action_id} abgebrochen")
    session.commit()
    return cancelled


def reschedule_scheduled_action(
    session: Session, action_id: int, scheduled_for: datetime, user_id: Optional[int] = None
) -> bool:
    """SCHEDULED → SCHEDULED mit neuer Fälligkeit"""
    rescheduled = _transition(
        session,
        action_id,
        ExecutedActionStatus.SCHEDULED,
        {"scheduled_for": scheduled_for},
        user_id=user_id,
    )
    session.commit()
    if rescheduled:
        logger.info(f"⏰ Aktion {action_id} neu geplant auf {scheduled_for.isoformat()}")
    return rescheduled


def cancel_scheduled_actions_for_thread(
    session: Session, user_id: int, thread_id: str, commit: bool = True
) -> int:
    """Bricht alle noch geplanten Aktionen eines Threads ab (neue Regel ersetzt alte)"""
    pending = (
        session.query(ExecutedAction)
        .filter_by(
            user_id=user_id,
            thread_id=thread_id,
            status=ExecutedActionStatus.SCHEDULED.value,
        )
        .all()
    )
    count = 0
    rule_ids = set()
    for action in pending:
        if _transition(
            session,
            action.id,
            ExecutedActionStatus.SCHEDULED,
            {"status": ExecutedActionStatus.CANCELLED.value},
        ):
            count += 1
            rule_ids.add(action.executed_rule_id)

    session.expire_all()
    for executed_rule_id in rule_ids:
        complete_executed_rule_if_done(session, executed_rule_id)

    if commit:
        session.commit()
    if count:
        logger.info(f"🚫 {count} geplante Aktionen für Thread {thread_id} abgebrochen")
    return count


def complete_executed_rule_if_done(session: Session, executed_rule_id: int) -> bool:
    """SCHEDULED-Regel → APPLIED, sobald keine Aktion mehr offen ist"""
    executed_rule = session.get(ExecutedRule, executed_rule_id)
    if executed_rule is None or executed_rule.status != ExecutedRuleStatus.SCHEDULED.value:
        return False

    still_open = (
        session.query(ExecutedAction)
        .filter(
            ExecutedAction.executed_rule_id == executed_rule_id,
            ExecutedAction.status.in_(_OPEN_STATUSES),
        )
        .count()
    )
    if still_open:
        return False

    executed_rule.status = ExecutedRuleStatus.APPLIED.value
    return True


def _action_item(action: ExecutedAction) -> ActionItem:
    return ActionItem(
        type=ActionType(action.type),
        **{field: getattr(action, field) for field in TEMPLATE_FIELDS},
    )


def _finish(session: Session, action: ExecutedAction, status: ExecutedActionStatus, error: Optional[str] = None) -> None:
    action.status = status.value
    action.error_message = error
    if status == ExecutedActionStatus.EXECUTED:
        action.executed_at = datetime.now(UTC)
    session.flush()
    complete_executed_rule_if_done(session, action.executed_rule_id)
    session.commit()


def execute_claimed_action(
    session: Session,
    action: ExecutedAction,
    provider_factory: Callable[[int], Any] = get_mail_provider,
) -> ExecutedActionStatus:
    """
    Führt eine geclaimte (EXECUTING) Aktion aus.

    Returns:
        Endstatus: EXECUTED, FAILED oder SKIPPED

    Raises:
        SQLAlchemyError: DB-Fehler (Celery-Task retried)
    """
    try:
        provider = provider_factory(action.user_id)
        try:
            email = provider.get_message(action.message_id)
        except MessageNotFoundError:
            logger.warning(f"⚠️ Nachricht {action.message_id} existiert nicht mehr - Aktion {action.id} übersprungen")
            _finish(session, action, ExecutedActionStatus.SKIPPED, "Nachricht nicht gefunden")
            return ExecutedActionStatus.SKIPPED

        user = session.get(User, action.user_id)
        executor = ActionExecutor(session, provider)
        executor.run_action(_action_item(action), email, action.executed_rule, user)

    except SQLAlchemyError:
        raise
    except ActionExecutionError as e:
        _finish(session, action, ExecutedActionStatus.FAILED, str(e.original))
        return ExecutedActionStatus.FAILED
    except Exception as e:
        logger.error(f"❌ Aktion {action.id} fehlgeschlagen: {e}")
        _finish(session, action, ExecutedActionStatus.FAILED, str(e))
        return ExecutedActionStatus.FAILED

    _finish(session, action, ExecutedActionStatus.EXECUTED)
    logger.info(f"✅ Verzögerte Aktion {action.id} ({action.type}) ausgeführt")
    return ExecutedActionStatus.EXECUTED


def process_delayed_actions(
    session: Session,
    provider_factory: Callable[[int], Any] = get_mail_provider,
    now: Optional[datetime] = None,
    limit: int = DEFAULT_BATCH_SIZE,
) -> Dict[str, int]:
    """
    Ein Sweep über alle fälligen Aktionen.

    Returns:
        {"due": int, "claimed": int, "executed": int, "failed": int, "skipped": int}
    """
    due_ids = [action.id for action in get_due_actions(session, now=now, limit=limit)]
    stats = {"due": len(due_ids), "claimed": 0, "executed": 0, "failed": 0, "skipped": 0}

    for action_id in due_ids:
        if not claim_scheduled_action(session, action_id):
            continue
        stats["claimed"] += 1

        action = session.get(ExecutedAction, action_id)
        session.refresh(action)
        status = execute_claimed_action(session, action, provider_factory)

        if status == ExecutedActionStatus.EXECUTED:
            stats["executed"] += 1
        elif status == ExecutedActionStatus.FAILED:
            stats["failed"] += 1
        else:
            stats["skipped"] += 1

    if due_ids:
        logger.info(
            f"⏱️ Sweep: {stats['due']} fällig, {stats['claimed']} geclaimt, "
            f"{stats['executed']} ausgeführt, {stats['failed']} fehlgeschlagen, {stats['skipped']} übersprungen"
        )
    return stats
