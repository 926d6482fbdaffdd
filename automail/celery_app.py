# automail/celery_app.py
"""Celery Application für asynchrone Regel-Ausführung.

INHALT:
- Redis als Message Broker + Result-Backend
- Auto-discovery von Tasks in automail/tasks/
- Beat-Schedule für den Sweep der verzögerten Aktionen

VERWENDUNG:
    1. .env updaten mit:
       - CELERY_BROKER_URL=redis://localhost:6379/1
       - CELERY_RESULT_BACKEND=redis://localhost:6379/2
       - DELAYED_ACTIONS_INTERVAL=60

    2. Worker + Beat starten:
       celery -A automail.celery_app worker --loglevel=info
       celery -A automail.celery_app beat --loglevel=info

    3. Aus dem Mail-Eingang aufrufen:
       from automail.tasks.rule_execution_tasks import apply_rules_to_message
       task = apply_rules_to_message.delay(user_id, message_id)
"""

import os
from pathlib import Path
from celery import Celery
from celery.signals import worker_init
from dotenv import load_dotenv

# Load .env.local first (priority), then .env (fallback)
project_root = Path(__file__).parent.parent
load_dotenv(project_root / ".env.local", override=True)
load_dotenv(project_root / ".env", override=False)

celery_app = Celery(
    "automail",
    broker=os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/1"),
    backend=os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/2"),
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="Europe/Berlin",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=15 * 60,      # 15 Minuten Hard-Limit
    task_soft_time_limit=12 * 60,  # 12 Minuten Soft-Limit (für lokale LLMs)
    worker_prefetch_multiplier=1,
    beat_schedule={
        "process-delayed-actions": {
            "task": "tasks.scheduled_actions.process_delayed_actions",
            "schedule": float(os.getenv("DELAYED_ACTIONS_INTERVAL", "60")),
        },
    },
)

celery_app.autodiscover_tasks(["automail.tasks"])


@worker_init.connect
def validate_worker_environment(**kwargs):
    """Worker startet nur mit vollständiger Konfiguration (exit 1 sonst)"""
    from automail.env_validator import validate_environment
    validate_environment()


if __name__ == "__main__":
    celery_app.start()
