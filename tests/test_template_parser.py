"""
Unit Tests: Template-Parser ({{ Platzhalter }} in Aktions-Feldern)
"""

from automail.template_parser import (
    fields_needing_generation,
    merge_template_with_vars,
    parse_template,
    template_with_var_names,
)


class TestParseTemplate:
    def test_greeting_and_body(self):
        parsed = parse_template("Dear {{write greeting}},\n\n{{draft response}}\n\nBest")

        assert parsed.ai_prompts == ["write greeting", "draft response"]
        assert parsed.fixed_parts == ["Dear ", ",\n\n", "\n\nBest"]

    def test_literal_only(self):
        parsed = parse_template("Newsletter")

        assert parsed.ai_prompts == []
        assert parsed.fixed_parts == ["Newsletter"]
        assert not parsed.has_placeholders

    def test_adjacent_placeholders(self):
        parsed = parse_template("{{a}}{{b}}")

        assert parsed.ai_prompts == ["a", "b"]
        assert parsed.fixed_parts == ["", "", ""]

    def test_prompt_spans_lines_and_is_trimmed(self):
        parsed = parse_template("Hi {{  line one\nline two  }}!")

        assert parsed.ai_prompts == ["line one\nline two"]
        assert parsed.fixed_parts == ["Hi ", "!"]

    def test_nested_braces_only_inner_placeholder(self):
        parsed = parse_template("{{a {{b}} c}}")

        assert parsed.ai_prompts == ["b"]
        assert parsed.fixed_parts == ["{{a ", " c}}"]

    def test_part_count_invariant(self):
        for template in ["", "x", "{{a}}", "x {{a}} y {{b}} z", "{{a}}{{b}}{{c}}"]:
            parsed = parse_template(template)
            assert len(parsed.fixed_parts) == len(parsed.ai_prompts) + 1

    def test_render_reassembles_in_order(self):
        parsed = parse_template("Dear {{greeting}},\n{{body}}")

        assert parsed.render(["Anna", "Danke!"]) == "Dear Anna,\nDanke!"

    def test_reparse_of_template_is_stable(self):
        parsed = parse_template("Dear {{ write greeting }},\n\n{{draft response}}")

        assert parse_template(parsed.to_template()) == parsed


class TestMergeTemplateWithVars:
    def test_merge(self):
        result = merge_template_with_vars(
            "Price: {{price}}, Message: {{message}}",
            {"var1": "$1.99", "var2": "Hello!"},
        )
        assert result == "Price: $1.99, Message: Hello!"

    def test_missing_variables_become_empty(self):
        assert merge_template_with_vars("A{{x}}B{{y}}C", {"var1": "1"}) == "A1BC"

    def test_literal_unchanged(self):
        assert merge_template_with_vars("Rechnung", {}) == "Rechnung"


class TestSchemaHelpers:
    def test_template_with_var_names(self):
        assert (
            template_with_var_names("Hi {{greeting}} and {{closing}}")
            == "Hi {{var1: greeting}} and {{var2: closing}}"
        )

    def test_fields_needing_generation_skips_literals(self):
        fields = fields_needing_generation(
            {"label": "Newsletter", "content": "Hallo {{name}}", "to": None}
        )

        assert list(fields) == ["content"]
        assert fields["content"].ai_prompts == ["name"]
