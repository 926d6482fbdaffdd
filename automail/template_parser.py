"""
Template-Parser für Aktions-Felder
==================================

Ein Feld eines Aktions-Templates ist entweder ein Literal oder enthält
{{ Anweisung }}-Platzhalter, die von der KI befüllt werden:

    "Dear {{write greeting}},\\n\\n{{draft response}}\\n\\nBest"

    parse_template(...) →
        ai_prompts  = ["write greeting", "draft response"]
        fixed_parts = ["Dear ", ",\\n\\n", "\\n\\nBest"]

Es gilt immer len(fixed_parts) == len(ai_prompts) + 1.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

# Nicht-gierig, über Zeilen hinweg, ohne verschachtelte {{ / }}
_PLACEHOLDER = re.compile(r"\{\{((?:(?!\{\{|\}\})[\s\S])*?)\}\}")


@dataclass(frozen=True)
class ParsedTemplate:
    fixed_parts: List[str]
    ai_prompts: List[str]

    @property
    def has_placeholders(self) -> bool:
        return bool(self.ai_prompts)

    def render(self, values: List[str]) -> str:
        """fixed_parts[0] + values[0] + fixed_parts[1] + ... + fixed_parts[N]"""
        result = self.fixed_parts[0]
        for index in range(len(self.ai_prompts)):
            value = values[index] if index < len(values) else ""
            result += (value or "") + self.fixed_parts[index + 1]
        return result

    def to_template(self) -> str:
        """Setzt die Platzhalter wieder ein ({{prompt}})"""
        return self.render([f"{{{{{prompt}}}}}" for prompt in self.ai_prompts])


def parse_template(template: str) -> ParsedTemplate:
    """Zerlegt ein Template in feste Teile und KI-Anweisungen (links nach rechts)."""
    fixed_parts: List[str] = []
    ai_prompts: List[str] = []
    last_index = 0

    for match in _PLACEHOLDER.finditer(template):
        fixed_parts.append(template[last_index:match.start()])
        ai_prompts.append(match.group(1).strip())
        last_index = match.end()
    fixed_parts.append(template[last_index:])

    return ParsedTemplate(fixed_parts=fixed_parts, ai_prompts=ai_prompts)


def merge_template_with_vars(template: str, variables: Mapping[str, str]) -> str:
    """
    Setzt KI-generierte Variablen (var1, var2, ...) in ein Template ein.

    Beispiel:
        merge_template_with_vars("Price: {{price}}", {"var1": "$1.99"})
        → "Price: $1.99"

    Fehlende Variablen werden zu leeren Strings.
    """
    parsed = parse_template(template)
    values = [variables.get(f"var{index + 1}") or "" for index in range(len(parsed.ai_prompts))]
    return parsed.render(values)


def template_with_var_names(template: str) -> str:
    """"Hi {{greeting}}" → "Hi {{var1: greeting}}" (für die Schema-Beschreibung)"""
    parsed = parse_template(template)
    return parsed.render(
        [f"{{{{var{index + 1}: {prompt}}}}}" for index, prompt in enumerate(parsed.ai_prompts)]
    )


def fields_needing_generation(fields: Mapping[str, Optional[str]]) -> Dict[str, ParsedTemplate]:
    """Nur Felder mit mindestens einem Platzhalter; Literale werden übersprungen."""
    result: Dict[str, ParsedTemplate] = {}
    for name, value in fields.items():
        if not isinstance(value, str):
            continue
        parsed = parse_template(value)
        if parsed.has_placeholders:
            result[name] = parsed
    return result
