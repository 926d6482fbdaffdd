"""
Function-Calls der Regel-Auswahl als Tagged Union.

Das Modell ruft eine Funktion pro Aktions-Typ auf ("archive", "label", ...).
Die Argumente werden direkt nach dem Parsen gegen das Schema des Typs
validiert. Statt eine Exception zu werfen gibt parse_function_call()
bei unbekannten Namen oder ungültigen Argumenten InvalidFunctionCall zurück.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from automail.models import ActionType


class BaseFunctionArgs(BaseModel):
    """Gemeinsame Argumente: welche Regel (1..N) und warum"""

    model_config = ConfigDict(extra="ignore")

    rule_number: Optional[int] = Field(
        default=None, description="The number of the rule that matches the email."
    )
    reason: Optional[str] = Field(
        default=None, description="Short explanation why this rule was chosen."
    )


class ArchiveArgs(BaseFunctionArgs):
    pass


class LabelArgs(BaseFunctionArgs):
    label: Optional[str] = Field(default=None, description="The name of the label.")


class DraftEmailArgs(BaseFunctionArgs):
    to: Optional[str] = Field(default=None, description="The email address of the recipient.")
    subject: Optional[str] = Field(default=None, description="The subject of the email.")
    content: Optional[str] = Field(default=None, description="The content of the email.")


class ReplyArgs(BaseFunctionArgs):
    content: Optional[str] = Field(default=None, description="The content of the reply.")
    cc: Optional[str] = Field(default=None, description="Comma separated cc recipients.")
    bcc: Optional[str] = Field(default=None, description="Comma separated bcc recipients.")


class SendEmailArgs(BaseFunctionArgs):
    to: Optional[str] = Field(default=None, description="Comma separated recipients.")
    cc: Optional[str] = Field(default=None, description="Comma separated cc recipients.")
    bcc: Optional[str] = Field(default=None, description="Comma separated bcc recipients.")
    subject: Optional[str] = Field(default=None, description="The subject of the email.")
    content: Optional[str] = Field(default=None, description="The content of the email.")


class ForwardArgs(BaseFunctionArgs):
    to: Optional[str] = Field(default=None, description="Comma separated recipients to forward to.")
    cc: Optional[str] = Field(default=None, description="Comma separated cc recipients.")
    bcc: Optional[str] = Field(default=None, description="Comma separated bcc recipients.")
    content: Optional[str] = Field(default=None, description="Extra content to add to the forwarded email.")


class MarkReadArgs(BaseFunctionArgs):
    pass


class CallWebhookArgs(BaseFunctionArgs):
    url: Optional[str] = Field(default=None, description="The url of the webhook to call.")


class TrackThreadArgs(BaseFunctionArgs):
    pass


ARGS_BY_TYPE: Dict[ActionType, Type[BaseFunctionArgs]] = {
    ActionType.ARCHIVE: ArchiveArgs,
    ActionType.LABEL: LabelArgs,
    ActionType.DRAFT_EMAIL: DraftEmailArgs,
    ActionType.REPLY: ReplyArgs,
    ActionType.SEND_EMAIL: SendEmailArgs,
    ActionType.FORWARD: ForwardArgs,
    ActionType.MARK_READ: MarkReadArgs,
    ActionType.CALL_WEBHOOK: CallWebhookArgs,
    ActionType.TRACK_THREAD: TrackThreadArgs,
}

DESCRIPTIONS: Dict[ActionType, str] = {
    ActionType.ARCHIVE: "Archive an email",
    ActionType.LABEL: "Label an email",
    ActionType.DRAFT_EMAIL: "Draft an email.",
    ActionType.REPLY: "Reply to an email.",
    ActionType.SEND_EMAIL: "Send an email.",
    ActionType.FORWARD: "Forward an email.",
    ActionType.MARK_READ: "Mark an email as read.",
    ActionType.CALL_WEBHOOK: "Call a webhook.",
    ActionType.TRACK_THREAD: "Track the thread and remind if there is no reply.",
}


@dataclass
class ParsedFunctionCall:
    """Gültiger Function-Call: Aktions-Typ + typisierte Argumente"""

    action_type: ActionType
    args: BaseFunctionArgs
    rule: Any = None  # automail.models.Rule nach Auflösung von rule_number

    @property
    def name(self) -> str:
        return self.action_type.function_name

    def field_values(self) -> Dict[str, Any]:
        """Aktions-Felder ohne rule_number/reason"""
        return self.args.model_dump(exclude={"rule_number", "reason"}, exclude_none=True)


@dataclass
class InvalidFunctionCall:
    """Nicht erkannter Name oder Argumente passen nicht zum Schema"""

    name: str
    raw_arguments: Dict[str, Any] = field(default_factory=dict)
    error: str = ""


FunctionCall = Union[ParsedFunctionCall, InvalidFunctionCall]


def function_parameters(action_type: ActionType) -> Dict[str, Any]:
    """JSON-Schema der Argumente für die tools-Definition"""
    schema = ARGS_BY_TYPE[action_type].model_json_schema()
    schema.pop("title", None)
    schema["required"] = ["rule_number"]
    return schema


def parse_function_call(name: str, arguments: Optional[Dict[str, Any]]) -> FunctionCall:
    action_type = ActionType.from_function_name(name or "")
    if action_type is None:
        return InvalidFunctionCall(
            name=name, raw_arguments=arguments or {}, error=f"Unbekannte Funktion: {name}"
        )
    try:
        args = ARGS_BY_TYPE[action_type].model_validate(arguments or {})
    except ValidationError as exc:
        return InvalidFunctionCall(
            name=name, raw_arguments=arguments or {}, error=f"Ungültige Argumente: {exc.error_count()} Fehler"
        )
    return ParsedFunctionCall(action_type=action_type, args=args)
