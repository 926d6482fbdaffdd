"""
Regel-Auswahl per KI (Function-Calling)
=======================================

Pro erlaubtem Aktions-Typ wird dem Modell eine Funktion angeboten. Das Modell
wählt eine Funktion und nennt die Regel-Nummer (1..N). Die Entscheidung gilt
nur, wenn die gewählte Regel diesen Aktions-Typ tatsächlich erlaubt. Sonst
gibt es keine Entscheidung (es wird keine andere Regel "erraten").

Keine Seiteneffekte außer dem KI-Aufruf.
"""

import logging
from typing import List, Optional, Sequence

from automail.ai_client import (
    AIClient,
    AIClientError,
    AIErrorKind,
    FunctionDefinition,
    _sanitize_email_input,
)
from automail.function_calls import (
    DESCRIPTIONS,
    InvalidFunctionCall,
    ParsedFunctionCall,
    function_parameters,
    parse_function_call,
)
from automail.mail_types import ParsedEmail
from automail.models import ActionType, Rule

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = """You are an AI assistant that helps people manage their emails.
Never put placeholders in your email responses.
It's better not to act if you don't know how.

These are the rules you can select from:
{rules}

Call exactly one function. Always pass the number of the rule you applied as rule_number."""


def permitted_action_types(rules: Sequence[Rule]) -> List[ActionType]:
    """Vereinigung der erlaubten Aktions-Typen (stabile Reihenfolge wie ActionType)"""
    union = set()
    for rule in rules:
        union |= rule.action_types
    return [action_type for action_type in ActionType if action_type in union]


def build_rules_prompt(rules: Sequence[Rule]) -> str:
    lines = []
    for number, rule in enumerate(rules, start=1):
        allowed = ", ".join(
            action_type.function_name
            for action_type in ActionType
            if action_type in rule.action_types
        )
        lines.append(f"{number}. {rule.instructions.strip()}\n   Allowed actions: {allowed}")
    return "\n".join(lines)


def format_email_for_prompt(email: ParsedEmail) -> str:
    parts = [f"From: {email.sender}"]
    if email.reply_to:
        parts.append(f"Reply to: {email.reply_to}")
    if email.cc:
        parts.append(f"CC: {email.cc}")
    parts.append(f"Subject: {_sanitize_email_input(email.subject, max_length=500)}")
    parts.append(f"Body:\n{_sanitize_email_input(email.body, max_length=20000)}")
    return "\n".join(parts)


class RuleMatcher:
    """Wählt für eine E-Mail genau eine Regel + Aktion (oder keine)."""

    def __init__(self, ai_client: AIClient, timeout: Optional[int] = None):
        self.ai_client = ai_client
        self.timeout = timeout

    def choose_rule(
        self, email: ParsedEmail, rules: Sequence[Rule]
    ) -> Optional[ParsedFunctionCall]:
        """
        Returns:
            ParsedFunctionCall mit aufgelöster Regel oder None (kein Match /
            ungültige Entscheidung)

        Raises:
            AIClientError: KI-Aufruf selbst fehlgeschlagen (nicht bei
                unlesbaren Argumenten, die zählen als ungültige Entscheidung)
        """
        rules = [rule for rule in rules if rule.enabled]
        action_types = permitted_action_types(rules)
        if not action_types:
            logger.info(f"Keine erlaubten Aktionen in {len(rules)} Regeln - kein KI-Aufruf")
            return None

        functions = [
            FunctionDefinition(
                name=action_type.function_name,
                description=DESCRIPTIONS[action_type],
                parameters=function_parameters(action_type),
            )
            for action_type in action_types
        ]
        system = SYSTEM_PROMPT.format(rules=build_rules_prompt(rules))
        messages = [{"role": "user", "content": format_email_for_prompt(email)}]

        try:
            result = self.ai_client.complete_with_functions(
                system, messages, functions, timeout=self.timeout
            )
        except AIClientError as e:
            if e.kind != AIErrorKind.INVALID_ARGUMENTS:
                raise
            logger.warning(f"⚠️ Unlesbare Function-Call-Argumente für Nachricht {email.message_id}: {e}")
            return None
        if result is None:
            logger.info(f"Keine Regel passt auf Nachricht {email.message_id}")
            return None

        call = parse_function_call(result.name, result.arguments)
        if isinstance(call, InvalidFunctionCall):
            logger.warning(
                f"⚠️ Ungültiger Function-Call '{call.name}' für Nachricht {email.message_id}: {call.error}"
            )
            return None

        rule = self._resolve_rule(call.args.rule_number, rules)
        if rule is None:
            logger.warning(
                f"⚠️ Function-Call '{call.name}' ohne gültige Regel-Nummer "
                f"({call.args.rule_number}) für Nachricht {email.message_id}"
            )
            return None

        if call.action_type not in rule.action_types:
            # TODO: Modell um Selbstkorrektur bitten statt verwerfen (erst nach Auswertung der Verwerfungsrate)
            logger.warning(
                f"⚠️ Regel '{rule.name}' erlaubt '{call.name}' nicht - Entscheidung verworfen "
                f"(Nachricht {email.message_id})"
            )
            return None

        call.rule = rule
        logger.info(f"✅ Regel '{rule.name}' gewählt: {call.name} (Nachricht {email.message_id})")
        return call

    @staticmethod
    def _resolve_rule(rule_number: Optional[int], rules: Sequence[Rule]) -> Optional[Rule]:
        if rule_number is None or not 1 <= rule_number <= len(rules):
            return None
        return rules[rule_number - 1]
