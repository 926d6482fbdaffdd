"""
Argument-Generierung für Aktions-Templates
==========================================

Für jede Aktion der gewählten Regel werden die Felder mit {{ Platzhaltern }}
gesammelt. Das Modell bekommt genau eine Funktion ("apply_rule"), deren
Argumente pro Aktion und Feld die Variablen var1..varN enthalten:

    {
        "LABEL-3":       {"label":   {"var1": "Rechnung"}},
        "DRAFT_EMAIL-4": {"content": {"var1": "Hallo Anna", "var2": "..."}}
    }

Liefert das Modell Argumente, die nicht zum Schema passen, wird der Aufruf
mit fester Pause wiederholt (max. 3 Versuche). Das Zusammensetzen der
finalen Feldwerte übernimmt der ActionExecutor.
"""

import logging
from typing import Any, Dict, Optional

from pydantic import ConfigDict, Field, create_model

from automail.ai_client import AIClient, AIClientError, AIErrorKind, FunctionDefinition
from automail.helpers.retry import RetryPolicy
from automail.mail_types import ParsedEmail
from automail.models import Action, Rule
from automail.rule_matcher import format_email_for_prompt
from automail.template_parser import (
    ParsedTemplate,
    fields_needing_generation,
    template_with_var_names,
)

logger = logging.getLogger(__name__)

FUNCTION_NAME = "apply_rule"

# action_key → field → {"var1": ..., "var2": ...}
GeneratedArgs = Dict[str, Dict[str, Dict[str, str]]]

SYSTEM_PROMPT = """You are an AI assistant that helps people manage their emails.
Never put placeholders in your email responses.
Do not mention you are an AI assistant when responding to people.

An email matched the following rule:
{instructions}

Fill in the template variables of the rule's actions. Follow every instruction exactly."""


def invalid_arguments_only(kind) -> bool:
    return kind == AIErrorKind.INVALID_ARGUMENTS


DEFAULT_RETRY_POLICY = RetryPolicy(
    max_attempts=3,
    delay_seconds=1.0,
    retry_on=invalid_arguments_only,
)


def action_key(action: Action) -> str:
    """'LABEL-3' - eindeutig pro Aktion einer Regel"""
    return f"{action.type}-{action.id}"


def field_description(field_name: str, template: str) -> str:
    description = f"Generate this template: {template_with_var_names(template)}"
    if field_name == "content":
        description += "\nMake sure to maintain the exact formatting."
    return description


def _var_schema(parsed: ParsedTemplate) -> Dict[str, Any]:
    return {
        f"var{index + 1}": {
            "type": "string",
            "description": f"fulfil instruction: {prompt}",
        }
        for index, prompt in enumerate(parsed.ai_prompts)
    }


class ArgumentGenerator:
    """Befüllt die Template-Variablen einer Regel per Function-Call."""

    def __init__(
        self,
        ai_client: AIClient,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: Optional[int] = None,
    ):
        self.ai_client = ai_client
        self.retry_policy = retry_policy or DEFAULT_RETRY_POLICY
        self.timeout = timeout

    def build_function(self, rule: Rule) -> Optional[FunctionDefinition]:
        """
        Eine Funktion mit einer Argument-Gruppe pro (Aktion, Feld).

        Returns:
            None wenn keine Aktion der Regel Platzhalter enthält
        """
        properties: Dict[str, Any] = {}
        model_fields: Dict[str, Any] = {}

        for action in rule.actions:
            fields = fields_needing_generation(action.template_fields())
            if not fields:
                continue

            key = action_key(action)
            field_properties = {}
            field_models = {}
            for field_name, parsed in fields.items():
                template = getattr(action, field_name)
                field_properties[field_name] = {
                    "type": "object",
                    "description": field_description(field_name, template),
                    "properties": _var_schema(parsed),
                    "required": [f"var{index + 1}" for index in range(len(parsed.ai_prompts))],
                }
                vars_model = create_model(
                    f"Vars_{action.id}_{field_name}",
                    **{f"var{index + 1}": (str, ...) for index in range(len(parsed.ai_prompts))},
                )
                field_models[field_name] = (vars_model, ...)

            properties[key] = {
                "type": "object",
                "description": f"Arguments for the {action.type} action",
                "properties": field_properties,
                "required": list(field_properties),
            }
            action_model = create_model(f"Action_{action.id}", **field_models)
            model_fields[f"action_{action.id}"] = (action_model, Field(..., alias=key))

        if not properties:
            return None

        args_model = create_model(
            f"ApplyRule_{rule.id}",
            __config__=ConfigDict(populate_by_name=True, extra="ignore"),
            **model_fields,
        )
        return FunctionDefinition(
            name=FUNCTION_NAME,
            description="Apply the rule with the generated arguments.",
            parameters={
                "type": "object",
                "properties": properties,
                "required": list(properties),
            },
            args_model=args_model,
        )

    def generate(self, email: ParsedEmail, rule: Rule) -> GeneratedArgs:
        """
        Returns:
            Generierte Variablen ({} wenn nichts zu generieren ist)

        Raises:
            AIClientError: nach erschöpften Versuchen oder bei anderen Fehlern
        """
        function = self.build_function(rule)
        if function is None:
            logger.debug(f"Regel '{rule.name}': keine Platzhalter, kein KI-Aufruf")
            return {}

        system = SYSTEM_PROMPT.format(instructions=rule.instructions.strip())
        messages = [{"role": "user", "content": format_email_for_prompt(email)}]

        result = self.retry_policy.run(
            self.ai_client.complete_with_functions,
            system,
            messages,
            [function],
            timeout=self.timeout,
            force_function=FUNCTION_NAME,
        )
        if result is None:
            # Funktion war erzwungen - keine Antwort zählt als Fehler
            raise AIClientError(
                AIErrorKind.NO_FUNCTION_CALL, f"Keine Argumente für Regel '{rule.name}'"
            )

        generated: GeneratedArgs = result.arguments
        logger.info(
            f"🤖 Argumente für Regel '{rule.name}' generiert ({len(generated)} Aktionen)"
        )
        return generated


def generated_vars_for(
    generated: GeneratedArgs, action: Action
) -> Dict[str, Dict[str, str]]:
    """Variablen einer Aktion (leer wenn keine generiert wurden)"""
    return generated.get(action_key(action)) or {}

