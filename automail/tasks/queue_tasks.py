"""
Celery Tasks: Verteilte Queue mit Parallelitäts-Limit pro Schlüssel

Jobs eines Users laufen über den Schlüssel queue:{name}:{user_id}. Pro
Schlüssel dürfen höchstens `parallelism` Jobs gleichzeitig laufen
(Redis-Zähler). Sind alle Slots belegt, wird der Job von Celery nach kurzer
Pause erneut zugestellt. Viele User laufen trotzdem parallel.

Große Batches werden vor dem Einreihen in Chunks fester Größe zerlegt.
Ist der Broker nicht erreichbar, wird der Handler direkt aufgerufen.

Handler werden per Name registriert:

    @register_queue_handler("run_rules")
    def run_rules(user_id, items): ...
"""

from __future__ import annotations

import logging
import os
from typing import Any, Callable, Dict, List, Optional, Sequence

from celery.exceptions import Reject, Retry
from kombu.exceptions import OperationalError
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.exc import SQLAlchemyError

from automail.celery_app import celery_app
from automail.helpers.redis_client import get_redis_client
from automail.tasks.rule_execution_tasks import BaseRuleTask

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 50
SLOT_WAIT_SECONDS = 5
# Schutz gegen verwaiste Slots (Worker-Absturz)
SLOT_TTL_SECONDS = 15 * 60

QueueHandler = Callable[[int, List[Any]], Any]

QUEUE_HANDLERS: Dict[str, QueueHandler] = {}


def register_queue_handler(name: str):
    def decorator(fn: QueueHandler) -> QueueHandler:
        QUEUE_HANDLERS[name] = fn
        return fn
    return decorator


def _default_parallelism() -> int:
    return int(os.getenv("QUEUE_PARALLELISM", "3"))


def slot_key(queue_name: str, user_id: int) -> str:
    return f"queue:{queue_name}:{user_id}"


def acquire_slot(redis_client, key: str, parallelism: int) -> bool:
    """
    INCR; über dem Limit sofort wieder DECR.

    Die TTL wird nur beim Anlegen des Zählers gesetzt (oder wenn sie fehlt),
    sonst würde jeder belegte Retry einen verwaisten Slot am Leben halten.
    """
    running = redis_client.incr(key)
    if running == 1 or redis_client.ttl(key) == -1:
        redis_client.expire(key, SLOT_TTL_SECONDS)
    if running > parallelism:
        redis_client.decr(key)
        return False
    return True


def release_slot(redis_client, key: str) -> None:
    if redis_client.decr(key) <= 0:
        redis_client.delete(key)


def chunked(items: Sequence[Any], size: int) -> List[List[Any]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    return [list(items[index:index + size]) for index in range(0, len(items), size)]


def run_handler(queue_name: str, user_id: int, items: List[Any]) -> Any:
    handler = QUEUE_HANDLERS.get(queue_name)
    if handler is None:
        raise ValueError(f"Unknown queue handler: {queue_name}")
    return handler(user_id, items)


@celery_app.task(
    bind=True,
    base=BaseRuleTask,
    name="tasks.queue.run_queue_job",
    acks_late=True,
    reject_on_worker_lost=True,
    max_retries=None,
    time_limit=600,
    soft_time_limit=540
)
def run_queue_job(
    self,
    queue_name: str,
    user_id: int,
    items: List[Any],
    parallelism: Optional[int] = None
) -> Dict[str, Any]:
    """
    Führt einen Chunk aus, sobald ein Slot für den User frei ist.

    Raises:
        Reject: Unbekannter Handler / ungültige Parameter / Handler-Fehler
        Retry: Alle Slots belegt oder DB-Fehler
    """
    if not queue_name or not user_id or not items:
        raise Reject("Invalid parameters: queue_name, user_id and items required", requeue=False)
    if queue_name not in QUEUE_HANDLERS:
        raise Reject(f"Unknown queue handler: {queue_name}", requeue=False)

    redis_client = get_redis_client()
    key = slot_key(queue_name, user_id)
    if not acquire_slot(redis_client, key, parallelism or _default_parallelism()):
        logger.debug(f"[Task {self.request.id}] {key}: alle Slots belegt - Retry in {SLOT_WAIT_SECONDS}s")
        raise self.retry(countdown=SLOT_WAIT_SECONDS)

    try:
        result = run_handler(queue_name, user_id, items)
        logger.info(f"✅ [Task {self.request.id}] {queue_name} für User {user_id}: {len(items)} Einträge")
        return {"queue": queue_name, "user_id": user_id, "items": len(items), "result": result}

    except (Reject, Retry):
        raise

    except SQLAlchemyError as e:
        logger.warning(f"Database error in queue job (will retry): {e}")
        raise self.retry(exc=e, countdown=60)

    except Exception as e:
        logger.error(f"Queue job {queue_name} failed: {type(e).__name__}: {e}")
        raise Reject(f"Queue job failed: {e}", requeue=False)

    finally:
        release_slot(redis_client, key)


def bulk_enqueue(
    queue_name: str,
    user_id: int,
    items: Sequence[Any],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    parallelism: Optional[int] = None,
) -> List[Optional[str]]:
    """
    Zerlegt items in Chunks und reiht jeden Chunk als eigenen Job ein.

    Returns:
        Task-IDs pro Chunk (None = direkt ausgeführt, Broker nicht erreichbar)
    """
    if queue_name not in QUEUE_HANDLERS:
        raise ValueError(f"Unknown queue handler: {queue_name}")

    task_ids: List[Optional[str]] = []
    for chunk in chunked(list(items), chunk_size):
        try:
            result = run_queue_job.apply_async(
                args=[queue_name, user_id, chunk],
                kwargs={"parallelism": parallelism},
            )
            task_ids.append(result.id)
        except (OperationalError, RedisConnectionError) as e:
            logger.warning(f"⚠️ Queue nicht erreichbar ({type(e).__name__}) - führe {queue_name} direkt aus")
            run_handler(queue_name, user_id, chunk)
            task_ids.append(None)

    logger.info(f"📥 {queue_name}: {len(items)} Einträge in {len(task_ids)} Chunks (User {user_id})")
    return task_ids


# ===== Eingebaute Handler =====

@register_queue_handler("run_rules")
def run_rules_handler(user_id: int, message_ids: List[str]) -> Dict[str, Any]:
    """Regeln auf einen Chunk von Nachrichten anwenden"""
    from automail.auto_rules_engine import run_rules_for_messages

    return run_rules_for_messages(user_id, message_ids)


@register_queue_handler("bulk_thread_action")
def bulk_thread_action_handler(user_id: int, items: List[Dict[str, str]]) -> Dict[str, int]:
    """
    items: [{"thread_id": "...", "operation": "archive" | "mark_read"}, ...]
    """
    from automail.services.mail_provider import get_mail_provider

    provider = get_mail_provider(user_id)
    operations = {
        "archive": provider.archive_thread,
        "mark_read": provider.mark_thread_read,
    }
    stats = {"done": 0, "errors": 0}
    for item in items:
        operation = operations.get(item.get("operation"))
        if operation is None:
            logger.warning(f"Unbekannte Operation: {item.get('operation')!r}")
            stats["errors"] += 1
            continue
        try:
            operation(item["thread_id"])
            stats["done"] += 1
        except Exception as e:
            logger.error(f"{item.get('operation')} für Thread {item.get('thread_id')} fehlgeschlagen: {e}")
            stats["errors"] += 1
    return stats
