"""
Lokale Operations-Queue für Bulk-Aktionen des Users.

Worker-Pool mit begrenzter Parallelität (Default 3). Offene Einträge werden
pro Operations-Typ in einem PendingStore gehalten. Nach einem Neustart holt
resume() alles zurück, was noch nicht abgearbeitet wurde.

    queue = BulkOperationQueue(build_default_handlers(), store=JsonFilePendingStore(path))
    queue.resume()
    queue.enqueue(user_id=1, operation=QueueOperation.ARCHIVE, target_ids=["t1", "t2"])
"""

from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from queue import Empty, Queue
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

# Layer 4 Security: Resource Exhaustion Prevention
MAX_ITEMS_PER_REQUEST = 1000


class QueueOperation(str, Enum):
    ARCHIVE = "archive"
    DELETE = "delete"
    MARK_READ = "mark_read"
    RUN_RULES = "run_rules"


@dataclass
class QueueItem:
    """Ein Thread (archive/delete/mark_read) oder eine Nachricht (run_rules)"""

    job_id: str
    user_id: int
    operation: QueueOperation
    target_id: str


Handler = Callable[[int, str], Any]
CompletionCallback = Callable[[QueueItem, Optional[Exception]], None]
PendingKey = Tuple[int, str]


class PendingStore(ABC):
    """Persistiert offene Einträge pro Operations-Typ"""

    @abstractmethod
    def add(self, operation: QueueOperation, user_id: int, target_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def remove(self, operation: QueueOperation, user_id: int, target_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def pending(self, operation: QueueOperation) -> List[PendingKey]:
        raise NotImplementedError


class InMemoryPendingStore(PendingStore):
    """Für Tests und Prozesse ohne Wiederaufnahme"""

    def __init__(self):
        self._items: Dict[QueueOperation, Set[PendingKey]] = {op: set() for op in QueueOperation}
        self._lock = threading.Lock()

    def add(self, operation, user_id, target_id):
        with self._lock:
            self._items[operation].add((user_id, target_id))

    def remove(self, operation, user_id, target_id):
        with self._lock:
            self._items[operation].discard((user_id, target_id))

    def pending(self, operation):
        with self._lock:
            return sorted(self._items[operation])


class JsonFilePendingStore(PendingStore):
    """
    Eine JSON-Datei, ein Slot pro Operations-Typ:

        {"archive": [[1, "thread-a"], ...], "run_rules": [...]}

    Jede Änderung schreibt die Datei atomar neu (tmp + os.replace).
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()
        self._items: Dict[QueueOperation, Set[PendingKey]] = {op: set() for op in QueueOperation}
        self._load()

    def _load(self) -> None:
        if not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"⚠️ Pending-Datei {self.path} nicht lesbar - starte leer: {e}")
            return
        for op in QueueOperation:
            self._items[op] = {(int(user_id), str(target)) for user_id, target in data.get(op.value, [])}

    def _write(self) -> None:
        data = {op.value: sorted([list(key) for key in keys]) for op, keys in self._items.items()}
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f)
        os.replace(tmp_path, self.path)

    def add(self, operation, user_id, target_id):
        with self._lock:
            self._items[operation].add((user_id, target_id))
            self._write()

    def remove(self, operation, user_id, target_id):
        with self._lock:
            self._items[operation].discard((user_id, target_id))
            self._write()

    def pending(self, operation):
        with self._lock:
            return sorted(self._items[operation])


class BulkOperationQueue:
    """In-memory Queue mit mehreren Worker-Threads und persistentem Pending-Store."""

    def __init__(
        self,
        handlers: Dict[QueueOperation, Handler],
        store: Optional[PendingStore] = None,
        parallelism: Optional[int] = None,
        on_complete: Optional[CompletionCallback] = None,
    ):
        self.handlers = handlers
        self.store = store or InMemoryPendingStore()
        self.parallelism = parallelism or int(os.getenv("QUEUE_PARALLELISM", "3"))
        self.on_complete = on_complete
        self.queue: Queue = Queue()
        self._stop_event = threading.Event()
        self._workers: List[threading.Thread] = []
        self._status: Dict[str, Dict[str, Any]] = {}
        self._status_lock = threading.Lock()

    def ensure_workers(self) -> None:
        self._workers = [worker for worker in self._workers if worker.is_alive()]
        if len(self._workers) >= self.parallelism:
            return
        self._stop_event.clear()
        for index in range(len(self._workers), self.parallelism):
            worker = threading.Thread(
                target=self._run, name=f"automail-queue-{index}", daemon=True
            )
            worker.start()
            self._workers.append(worker)
        logger.info(f"🧵 {self.parallelism} Queue-Worker gestartet")

    def stop(self) -> None:
        self._stop_event.set()
        for worker in self._workers:
            if worker.is_alive():
                worker.join(timeout=2)
        self._workers = []

    def join(self) -> None:
        """Blockiert bis alle eingereihten Einträge abgearbeitet sind"""
        self.queue.join()

    def enqueue(
        self, *, user_id: int, operation: QueueOperation, target_ids: Iterable[str]
    ) -> List[str]:
        """
        Returns:
            Job-IDs (eine pro Eintrag)
        """
        if operation not in self.handlers:
            raise ValueError(f"Kein Handler für Operation {operation.value}")

        target_ids = list(dict.fromkeys(target_ids))
        if len(target_ids) > MAX_ITEMS_PER_REQUEST:
            raise ValueError(
                f"Maximal {MAX_ITEMS_PER_REQUEST} Einträge pro Anfrage (gegeben: {len(target_ids)})"
            )

        job_ids = []
        for target_id in target_ids:
            self.store.add(operation, user_id, target_id)
            job_ids.append(self._put(user_id, operation, target_id))

        self.ensure_workers()
        logger.info(f"📥 {len(job_ids)} x {operation.value} eingereiht (User {user_id})")
        return job_ids

    def resume(self) -> int:
        """Reiht alle noch offenen Einträge aus dem Store wieder ein"""
        count = 0
        for operation in QueueOperation:
            if operation not in self.handlers:
                continue
            for user_id, target_id in self.store.pending(operation):
                self._put(user_id, operation, target_id)
                count += 1
        if count:
            self.ensure_workers()
            logger.info(f"🔁 {count} offene Einträge wieder aufgenommen")
        return count

    def _put(self, user_id: int, operation: QueueOperation, target_id: str) -> str:
        item = QueueItem(
            job_id=uuid.uuid4().hex,
            user_id=user_id,
            operation=operation,
            target_id=target_id,
        )
        self._update_status(
            item.job_id,
            {"state": "queued", "user_id": user_id, "operation": operation.value, "target_id": target_id},
        )
        self.queue.put(item)
        return item.job_id

    def get_status(self, job_id: str, user_id: int) -> Optional[Dict[str, Any]]:
        with self._status_lock:
            status = self._status.get(job_id)
            if not status or status.get("user_id") != user_id:
                return None
            filtered = status.copy()
            filtered.pop("user_id", None)
            return filtered

    def _update_status(self, job_id: str, payload: Dict[str, Any]) -> None:
        with self._status_lock:
            self._status[job_id] = {**self._status.get(job_id, {}), **payload}

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                item = self.queue.get(timeout=1)
            except Empty:
                continue
            try:
                self._process(item)
            except Exception:
                logger.exception("Unerwarteter Fehler im Queue-Worker")
            finally:
                self.queue.task_done()

    def _process(self, item: QueueItem) -> None:
        self._update_status(item.job_id, {"state": "running"})
        error: Optional[Exception] = None
        try:
            self.handlers[item.operation](item.user_id, item.target_id)
            self._update_status(item.job_id, {"state": "done"})
        except Exception as e:
            error = e
            logger.error(f"❌ {item.operation.value} für {item.target_id} fehlgeschlagen: {e}")
            self._update_status(item.job_id, {"state": "error", "error": str(e)})
        finally:
            self.store.remove(item.operation, item.user_id, item.target_id)

        if self.on_complete is not None:
            self.on_complete(item, error)


def _run_rules_for_message(user_id: int, message_id: str) -> Dict[str, Any]:
    from automail.auto_rules_engine import run_rules_for_messages

    return run_rules_for_messages(user_id, [message_id])


def build_default_handlers(provider_factory: Optional[Callable[[int], Any]] = None) -> Dict[QueueOperation, Handler]:
    """archive/delete/mark_read direkt über den Mail-Provider, run_rules über die Engine"""
    if provider_factory is None:
        from automail.services.mail_provider import get_mail_provider

        provider_factory = get_mail_provider

    return {
        QueueOperation.ARCHIVE: lambda user_id, thread_id: provider_factory(user_id).archive_thread(thread_id),
        QueueOperation.DELETE: lambda user_id, thread_id: provider_factory(user_id).trash_thread(thread_id),
        QueueOperation.MARK_READ: lambda user_id, thread_id: provider_factory(user_id).mark_thread_read(thread_id),
        QueueOperation.RUN_RULES: _run_rules_for_message,
    }
