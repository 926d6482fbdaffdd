"""Gemeinsame Datentypen: eingehende E-Mail und konkrete Aktion (nach Befüllung)"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from automail.models import ActionType, TEMPLATE_FIELDS


@dataclass
class ParsedEmail:
    """Vom Mail-Provider geliefert, bereits geparst"""

    message_id: str
    thread_id: str
    sender: str
    subject: str = ""
    body: str = ""
    reply_to: Optional[str] = None
    cc: Optional[str] = None
    internal_date: Optional[datetime] = None
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class ActionItem:
    """Eine ausführbare Aktion mit finalen Feldwerten"""

    type: ActionType
    label: Optional[str] = None
    subject: Optional[str] = None
    content: Optional[str] = None
    to: Optional[str] = None
    cc: Optional[str] = None
    bcc: Optional[str] = None
    url: Optional[str] = None
    delay_minutes: Optional[int] = None
    action_id: Optional[int] = None

    @property
    def is_delayed(self) -> bool:
        return bool(self.delay_minutes and self.delay_minutes > 0)

    def field_values(self) -> Dict[str, Optional[str]]:
        return {name: getattr(self, name) for name in TEMPLATE_FIELDS}

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionItem":
        values = dict(data)
        values["type"] = ActionType(values["type"])
        return cls(**values)
