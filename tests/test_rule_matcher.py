"""
Unit Tests: Regel-Auswahl (RuleMatcher)

KI-Client ist ein Mock - geprüft wird, welche Funktionen angeboten werden
und wie die Antwort auf eine Regel abgebildet wird.
"""

from unittest.mock import Mock, patch

import pytest

from automail.ai_client import AIClientError, AIErrorKind, FunctionCallResult, OpenAIClient
from automail.models import ActionType
from automail.rule_matcher import RuleMatcher, build_rules_prompt, permitted_action_types


@pytest.fixture
def rules(make_rule):
    newsletter = make_rule(
        "Newsletter",
        "Newsletter und Werbung",
        [{"type": "LABEL", "label": "Newsletter"}, {"type": "ARCHIVE"}],
        automate=True,
    )
    questions = make_rule(
        "Fragen",
        "Kunden stellen eine Frage",
        [{"type": "DRAFT_EMAIL", "content": "{{answer}}"}],
    )
    return [newsletter, questions]


def _offered_names(ai_client):
    functions = ai_client.complete_with_functions.call_args.args[2]
    return [f.name for f in functions]


class TestPrompt:
    def test_permitted_action_types_union_in_stable_order(self, rules):
        assert permitted_action_types(rules) == [
            ActionType.ARCHIVE,
            ActionType.LABEL,
            ActionType.DRAFT_EMAIL,
        ]

    def test_rules_are_numbered_from_one(self, rules):
        prompt = build_rules_prompt(rules)

        assert "1. Newsletter und Werbung\n   Allowed actions: archive, label" in prompt
        assert "2. Kunden stellen eine Frage\n   Allowed actions: draft_email" in prompt


class TestChooseRule:
    def test_valid_choice(self, ai_client, rules, email):
        ai_client.complete_with_functions.return_value = FunctionCallResult(
            name="label", arguments={"rule_number": 1, "label": "Werbung"}
        )

        call = RuleMatcher(ai_client).choose_rule(email, rules)

        assert call is not None
        assert call.rule is rules[0]
        assert call.action_type == ActionType.LABEL
        assert call.field_values() == {"label": "Werbung"}
        assert _offered_names(ai_client) == ["archive", "label", "draft_email"]

    def test_action_not_allowed_by_chosen_rule(self, ai_client, make_rule, email):
        rule = make_rule("R", "Newsletter", [{"type": "LABEL", "label": "N"}, {"type": "ARCHIVE"}])
        ai_client.complete_with_functions.return_value = FunctionCallResult(
            name="draft_email", arguments={"rule_number": 1, "content": "Hallo"}
        )

        assert RuleMatcher(ai_client).choose_rule(email, [rule]) is None

    def test_action_of_other_rule_is_not_guessed(self, ai_client, rules, email):
        # draft_email gehört zu Regel 2, das Modell nennt aber Regel 1
        ai_client.complete_with_functions.return_value = FunctionCallResult(
            name="draft_email", arguments={"rule_number": 1}
        )

        assert RuleMatcher(ai_client).choose_rule(email, rules) is None

    def test_rule_number_out_of_range(self, ai_client, rules, email):
        ai_client.complete_with_functions.return_value = FunctionCallResult(
            name="archive", arguments={"rule_number": 3}
        )

        assert RuleMatcher(ai_client).choose_rule(email, rules) is None

    def test_missing_rule_number(self, ai_client, rules, email):
        ai_client.complete_with_functions.return_value = FunctionCallResult(
            name="archive", arguments={}
        )

        assert RuleMatcher(ai_client).choose_rule(email, rules) is None

    def test_unknown_function(self, ai_client, rules, email):
        ai_client.complete_with_functions.return_value = FunctionCallResult(
            name="explode", arguments={"rule_number": 1}
        )

        assert RuleMatcher(ai_client).choose_rule(email, rules) is None

    def test_model_calls_no_function(self, ai_client, rules, email):
        ai_client.complete_with_functions.return_value = None

        assert RuleMatcher(ai_client).choose_rule(email, rules) is None

    def test_no_permitted_actions_skips_ai(self, ai_client, make_rule, email):
        rule = make_rule("Leer", "Irgendwas", [])

        assert RuleMatcher(ai_client).choose_rule(email, [rule]) is None
        ai_client.complete_with_functions.assert_not_called()

    def test_disabled_rules_are_ignored(self, ai_client, make_rule, email):
        disabled = make_rule("Aus", "Alles", [{"type": "ARCHIVE"}], enabled=False)
        active = make_rule("An", "Rechnungen", [{"type": "LABEL", "label": "Rechnung"}])
        ai_client.complete_with_functions.return_value = FunctionCallResult(
            name="label", arguments={"rule_number": 1}
        )

        call = RuleMatcher(ai_client).choose_rule(email, [disabled, active])

        assert call.rule is active
        assert _offered_names(ai_client) == ["label"]

    def test_ai_error_propagates(self, ai_client, rules, email):
        ai_client.complete_with_functions.side_effect = AIClientError(AIErrorKind.TIMEOUT)

        with pytest.raises(AIClientError):
            RuleMatcher(ai_client).choose_rule(email, rules)

    @patch("automail.ai_client.requests.post")
    def test_truncated_json_arguments_are_dropped(self, mock_post, rules, email):
        response = Mock(status_code=200)
        response.json.return_value = {
            "choices": [{"message": {"tool_calls": [
                {"function": {"name": "label", "arguments": '{"rule_number": 1,'}}
            ]}}]
        }
        mock_post.return_value = response
        client = OpenAIClient(api_key="sk-test", model="gpt-4o-mini")

        assert RuleMatcher(client).choose_rule(email, rules) is None
        assert mock_post.call_count == 1
