"""
Plan Store (Redis)
==================

Höchstens ein offener Plan pro (User, Thread). Ein Plan ist eine gewählte
Regel mit fertig generierten Aktionen, die auf Bestätigung wartet.

Layout:
    Hash  plans:{user_id}
    Feld  {thread_id} → JSON des Plans
    TTL   PLAN_TTL_DAYS (Default 7), bei jedem save() erneuert

Der Store darf Daten verlieren (dann ist nur ein Vorschlag weg). Er ist nie
die einzige Aufzeichnung einer ausgeführten Aktion, das ist der Audit-Trail.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional

from automail.helpers.redis_client import get_redis_client
from automail.mail_types import ActionItem

logger = logging.getLogger(__name__)


@dataclass
class Plan:
    """Offener Vorschlag: Regel + Aktionen für einen Thread"""

    function_name: str
    function_args: Dict[str, Any]
    message_id: str
    thread_id: str
    rule_id: Optional[int] = None
    actions: List[ActionItem] = field(default_factory=list)
    reason: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_json(self) -> str:
        return json.dumps(
            {
                "created_at": self.created_at.isoformat(),
                "function_name": self.function_name,
                "function_args": self.function_args,
                "message_id": self.message_id,
                "thread_id": self.thread_id,
                "rule_id": self.rule_id,
                "actions": [action.to_dict() for action in self.actions],
                "reason": self.reason,
            },
            ensure_ascii=False,
        )

    @classmethod
    def from_json(cls, raw: str) -> "Plan":
        data = json.loads(raw)
        return cls(
            function_name=data["function_name"],
            function_args=data.get("function_args") or {},
            message_id=data["message_id"],
            thread_id=data["thread_id"],
            rule_id=data.get("rule_id"),
            actions=[ActionItem.from_dict(item) for item in data.get("actions") or []],
            reason=data.get("reason"),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


class PlanStore:
    """get/set/delete auf einem Redis-Hash pro User"""

    def __init__(self, redis_client=None, ttl_days: Optional[int] = None):
        self.redis = redis_client or get_redis_client()
        days = ttl_days if ttl_days is not None else int(os.getenv("PLAN_TTL_DAYS", "7"))
        self.ttl_seconds = days * 24 * 60 * 60

    @staticmethod
    def _key(user_id: int) -> str:
        return f"plans:{user_id}"

    def save(self, user_id: int, thread_id: str, plan: Plan) -> None:
        """Überschreibt einen bestehenden Plan für den Thread (last write wins)"""
        key = self._key(user_id)
        pipe = self.redis.pipeline()
        pipe.hset(key, thread_id, plan.to_json())
        pipe.expire(key, self.ttl_seconds)
        pipe.execute()
        logger.info(f"📝 Plan gespeichert: user={user_id} thread={thread_id} ({plan.function_name})")

    def get(self, user_id: int, thread_id: str) -> Optional[Plan]:
        raw = self.redis.hget(self._key(user_id), thread_id)
        if raw is None:
            return None
        try:
            return Plan.from_json(raw)
        except (ValueError, KeyError) as e:
            # Kaputter Eintrag zählt als "kein Plan"
            logger.warning(f"⚠️ Plan für thread={thread_id} nicht lesbar, wird verworfen: {e}")
            self.delete(user_id, thread_id)
            return None

    def delete(self, user_id: int, thread_id: str) -> bool:
        """Returns: True wenn ein Plan gelöscht wurde"""
        return bool(self.redis.hdel(self._key(user_id), thread_id))

    def list_for_user(self, user_id: int) -> List[Plan]:
        """Alle offenen Pläne eines Users, älteste zuerst"""
        plans = []
        for thread_id, raw in self.redis.hgetall(self._key(user_id)).items():
            try:
                plans.append(Plan.from_json(raw))
            except (ValueError, KeyError):
                logger.warning(f"⚠️ Plan für thread={thread_id} nicht lesbar - übersprungen")
        return sorted(plans, key=lambda plan: plan.created_at)
