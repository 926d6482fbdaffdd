# automail/tasks/__init__.py
"""Celery Tasks - Asynchrone Regel-Ausführung für Automail.

ARCHITEKTUR (Business-Logic Separation Pattern):
┌─────────────────────────────┐
│ Mail-Eingang / UI           │
└────────────┬────────────────┘
             │ task.delay(...)
             ↓
┌─────────────────────────────┐
│ Task (Celery Wrapper)       │
│ rule_execution_tasks.py     │
│ - Session Management        │
│ - Error Handling            │
│ - Reject / Retry            │
└────────────┬────────────────┘
             │ engine.method(...)
             ↓
┌─────────────────────────────┐
│ Engine + Services           │
│ auto_rules_engine.py        │
│ services/*.py               │
│ - Keine Celery-Abhängigkeit │
└─────────────────────────────┘

Task-Module:
- rule_execution_tasks: Regeln auf Nachrichten anwenden, Pläne bestätigen/ablehnen
- scheduled_action_tasks: Sweep der verzögerten Aktionen (Celery Beat)
- queue_tasks: Verteilte Queue mit Parallelitäts-Limit pro User

Auto-discovered durch celery_app.autodiscover_tasks() in celery_app.py
"""

from automail.tasks.rule_execution_tasks import (
    apply_rules_to_message,
    apply_rules_to_messages,
)
from automail.tasks.rule_execution_tasks import confirm_plan, reject_plan
from automail.tasks.scheduled_action_tasks import (
    process_delayed_actions_task,
    cancel_scheduled_action,
    reschedule_scheduled_action,
)
from automail.tasks.queue_tasks import run_queue_job, bulk_enqueue

__all__ = [
    "apply_rules_to_message",
    "apply_rules_to_messages",
    "confirm_plan",
    "reject_plan",
    "process_delayed_actions_task",
    "cancel_scheduled_action",
    "reschedule_scheduled_action",
    "run_queue_job",
    "bulk_enqueue",
]
