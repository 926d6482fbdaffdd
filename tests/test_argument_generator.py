"""
Unit Tests: Argument-Generierung für Aktions-Templates
"""

from unittest.mock import Mock

import pytest
from pydantic import ValidationError

from automail.ai_client import (
    AIClientError,
    AIErrorKind,
    FunctionCallResult,
    FunctionDefinition,
    _validate_arguments,
)
from automail.argument_generator import (
    FUNCTION_NAME,
    ArgumentGenerator,
    action_key,
    generated_vars_for,
    invalid_arguments_only,
)
from automail.helpers.retry import RetryPolicy


@pytest.fixture
def fast_policy():
    return RetryPolicy(max_attempts=3, delay_seconds=1.0, retry_on=invalid_arguments_only, sleep=Mock())


@pytest.fixture
def reply_rule(make_rule):
    return make_rule(
        "Antworten",
        "Kundenanfragen beantworten",
        [
            {"type": "LABEL", "label": "{{write label}}"},
            {"type": "DRAFT_EMAIL", "subject": "Ihre Anfrage", "content": "Dear {{greeting}},\n\n{{answer}}"},
            {"type": "ARCHIVE"},
        ],
    )


class TestBuildFunction:
    def test_one_group_per_action_with_placeholders(self, ai_client, reply_rule):
        label, draft, archive = reply_rule.actions

        function = ArgumentGenerator(ai_client).build_function(reply_rule)

        assert function.name == FUNCTION_NAME
        properties = function.parameters["properties"]
        assert set(properties) == {action_key(label), action_key(draft)}
        assert action_key(label) == f"LABEL-{label.id}"
        # Literale (subject) werden nicht generiert
        assert set(properties[action_key(draft)]["properties"]) == {"content"}

    def test_field_descriptions(self, ai_client, reply_rule):
        label, draft, _ = reply_rule.actions

        function = ArgumentGenerator(ai_client).build_function(reply_rule)
        properties = function.parameters["properties"]

        label_field = properties[action_key(label)]["properties"]["label"]
        assert label_field["description"] == "Generate this template: {{var1: write label}}"
        assert label_field["properties"]["var1"]["description"] == "fulfil instruction: write label"

        content_field = properties[action_key(draft)]["properties"]["content"]
        assert content_field["description"].endswith("\nMake sure to maintain the exact formatting.")
        assert content_field["required"] == ["var1", "var2"]

    def test_literal_only_rule_has_no_function(self, ai_client, make_rule):
        rule = make_rule("Lit", "Newsletter", [{"type": "LABEL", "label": "Newsletter"}, {"type": "ARCHIVE"}])

        assert ArgumentGenerator(ai_client).build_function(rule) is None

    def test_args_model_validates_and_keeps_keys(self, ai_client, reply_rule):
        label, draft, _ = reply_rule.actions
        function = ArgumentGenerator(ai_client).build_function(reply_rule)
        arguments = {
            action_key(label): {"label": {"var1": "Support"}},
            action_key(draft): {"content": {"var1": "Frau Muster", "var2": "Danke!"}},
        }

        assert _validate_arguments(function, arguments) == arguments

    def test_args_model_rejects_missing_var(self, ai_client, reply_rule):
        label, draft, _ = reply_rule.actions
        function = ArgumentGenerator(ai_client).build_function(reply_rule)

        with pytest.raises(ValidationError):
            function.args_model.model_validate(
                {
                    action_key(label): {"label": {"var1": "Support"}},
                    action_key(draft): {"content": {"var1": "nur einer"}},
                }
            )


class TestGenerate:
    def _result(self, rule):
        label, draft, _ = rule.actions
        return FunctionCallResult(
            name=FUNCTION_NAME,
            arguments={
                action_key(label): {"label": {"var1": "Support"}},
                action_key(draft): {"content": {"var1": "Anna", "var2": "Danke!"}},
            },
        )

    def test_forces_apply_rule(self, ai_client, reply_rule, email, fast_policy):
        ai_client.complete_with_functions.return_value = self._result(reply_rule)

        generated = ArgumentGenerator(ai_client, retry_policy=fast_policy).generate(email, reply_rule)

        label = reply_rule.actions[0]
        assert generated_vars_for(generated, label) == {"label": {"var1": "Support"}}
        kwargs = ai_client.complete_with_functions.call_args.kwargs
        assert kwargs["force_function"] == FUNCTION_NAME
        system = ai_client.complete_with_functions.call_args.args[0]
        assert "Kundenanfragen beantworten" in system

    def test_no_placeholders_no_ai_call(self, ai_client, make_rule, email):
        rule = make_rule("Lit", "Newsletter", [{"type": "ARCHIVE"}])

        assert ArgumentGenerator(ai_client).generate(email, rule) == {}
        ai_client.complete_with_functions.assert_not_called()

    def test_retries_invalid_arguments(self, ai_client, reply_rule, email, fast_policy):
        ai_client.complete_with_functions.side_effect = [
            AIClientError(AIErrorKind.INVALID_ARGUMENTS),
            self._result(reply_rule),
        ]

        generated = ArgumentGenerator(ai_client, retry_policy=fast_policy).generate(email, reply_rule)

        assert ai_client.complete_with_functions.call_count == 2
        assert len(generated) == 2
        fast_policy.sleep.assert_called_once_with(1.0)

    def test_gives_up_after_three_attempts(self, ai_client, reply_rule, email, fast_policy):
        ai_client.complete_with_functions.side_effect = AIClientError(AIErrorKind.INVALID_ARGUMENTS)

        with pytest.raises(AIClientError) as exc_info:
            ArgumentGenerator(ai_client, retry_policy=fast_policy).generate(email, reply_rule)

        assert exc_info.value.kind == AIErrorKind.INVALID_ARGUMENTS
        assert ai_client.complete_with_functions.call_count == 3

    def test_timeout_is_not_retried(self, ai_client, reply_rule, email, fast_policy):
        ai_client.complete_with_functions.side_effect = AIClientError(AIErrorKind.TIMEOUT)

        with pytest.raises(AIClientError):
            ArgumentGenerator(ai_client, retry_policy=fast_policy).generate(email, reply_rule)
        assert ai_client.complete_with_functions.call_count == 1

    def test_missing_function_call_is_an_error(self, ai_client, reply_rule, email, fast_policy):
        ai_client.complete_with_functions.return_value = None

        with pytest.raises(AIClientError) as exc_info:
            ArgumentGenerator(ai_client, retry_policy=fast_policy).generate(email, reply_rule)
        assert exc_info.value.kind == AIErrorKind.NO_FUNCTION_CALL


class TestFunctionDefinition:
    def test_to_tool(self):
        function = FunctionDefinition(name="archive", description="Archive", parameters={"type": "object"})

        assert function.to_tool() == {
            "type": "function",
            "function": {"name": "archive", "description": "Archive", "parameters": {"type": "object"}},
        }
