"""
Unit Tests: Verzögerte Aktionen (Claim, Sweep, Cancel, Reschedule)
"""

from datetime import datetime, timedelta, UTC

import pytest

from automail.models import (
    ExecutedAction,
    ExecutedActionStatus,
    ExecutedRule,
    ExecutedRuleStatus,
)
from automail.services import delayed_actions
from automail.services.mail_provider import MessageNotFoundError


@pytest.fixture
def archive_rule(make_rule):
    return make_rule("Newsletter", "Newsletter", [{"type": "ARCHIVE"}, {"type": "LABEL", "label": "N"}])


@pytest.fixture
def scheduled_rule(db_session, user, archive_rule):
    executed_rule = ExecutedRule(
        user_id=user.id,
        rule_id=archive_rule.id,
        thread_id="thread-1",
        message_id="msg-1",
        status=ExecutedRuleStatus.SCHEDULED.value,
        automated=True,
    )
    db_session.add(executed_rule)
    db_session.commit()
    return executed_rule


@pytest.fixture
def schedule(db_session, user, scheduled_rule):
    """Factory: schedule("ARCHIVE", minutes=-5) → fällige ExecutedAction"""

    def _schedule(action_type="ARCHIVE", minutes=-5, status=ExecutedActionStatus.SCHEDULED, **fields):
        action = ExecutedAction(
            executed_rule_id=scheduled_rule.id,
            user_id=user.id,
            type=action_type,
            message_id="msg-1",
            thread_id="thread-1",
            status=status.value,
            scheduled_for=datetime.now(UTC) + timedelta(minutes=minutes),
            **fields,
        )
        db_session.add(action)
        db_session.commit()
        return action

    return _schedule


def _factory(provider):
    return lambda user_id: provider


class TestGetDueActions:
    def test_only_due_scheduled_actions_in_order(self, db_session, schedule):
        later = schedule(minutes=-1)
        earlier = schedule(minutes=-10)
        schedule(minutes=30)
        schedule(minutes=-20, status=ExecutedActionStatus.CANCELLED)

        due = delayed_actions.get_due_actions(db_session)

        assert [a.id for a in due] == [earlier.id, later.id]

    def test_limit(self, db_session, schedule):
        for _ in range(3):
            schedule()

        assert len(delayed_actions.get_due_actions(db_session, limit=2)) == 2


class TestClaim:
    def test_claim_only_once(self, db_session, schedule):
        action = schedule()

        assert delayed_actions.claim_scheduled_action(db_session, action.id) is True
        assert delayed_actions.claim_scheduled_action(db_session, action.id) is False
        db_session.refresh(action)
        assert action.status == ExecutedActionStatus.EXECUTING.value

    def test_two_sweeps_execute_once(self, session_factory, schedule, provider):
        action_id = schedule().id
        sweep_a = session_factory()
        sweep_b = session_factory()
        try:
            # Beide Sweeps sehen dieselbe fällige Aktion
            assert [a.id for a in delayed_actions.get_due_actions(sweep_a)] == [action_id]
            assert [a.id for a in delayed_actions.get_due_actions(sweep_b)] == [action_id]

            stats_a = delayed_actions.process_delayed_actions(sweep_a, provider_factory=_factory(provider))
            stats_b = delayed_actions.process_delayed_actions(sweep_b, provider_factory=_factory(provider))
        finally:
            sweep_a.close()
            sweep_b.close()

        assert stats_a["claimed"] == 1
        assert stats_b["claimed"] == 0
        provider.archive_thread.assert_called_once_with("thread-1")


class TestProcessDelayedActions:
    def test_executes_due_action_and_completes_rule(self, db_session, schedule, scheduled_rule, provider):
        action = schedule()

        stats = delayed_actions.process_delayed_actions(db_session, provider_factory=_factory(provider))

        assert stats == {"due": 1, "claimed": 1, "executed": 1, "failed": 0, "skipped": 0}
        provider.archive_thread.assert_called_once_with("thread-1")
        db_session.refresh(action)
        db_session.refresh(scheduled_rule)
        assert action.status == ExecutedActionStatus.EXECUTED.value
        assert action.executed_at is not None
        assert scheduled_rule.status == ExecutedRuleStatus.APPLIED.value

    def test_failure_marks_action_failed_not_rule_error(self, db_session, schedule, scheduled_rule, provider):
        sibling = schedule("LABEL", status=ExecutedActionStatus.EXECUTED, label="N")
        action = schedule("ARCHIVE")
        provider.archive_thread.side_effect = RuntimeError("Provider down")

        stats = delayed_actions.process_delayed_actions(db_session, provider_factory=_factory(provider))

        assert stats["failed"] == 1
        db_session.refresh(action)
        db_session.refresh(sibling)
        db_session.refresh(scheduled_rule)
        assert action.status == ExecutedActionStatus.FAILED.value
        assert action.error_message == "Provider down"
        assert sibling.status == ExecutedActionStatus.EXECUTED.value
        assert scheduled_rule.status != ExecutedRuleStatus.ERROR.value
        assert scheduled_rule.status == ExecutedRuleStatus.APPLIED.value

    def test_missing_message_is_skipped(self, db_session, schedule, provider):
        action = schedule()
        provider.get_message.side_effect = MessageNotFoundError("msg-1")

        stats = delayed_actions.process_delayed_actions(db_session, provider_factory=_factory(provider))

        assert stats["skipped"] == 1
        provider.archive_thread.assert_not_called()
        db_session.refresh(action)
        assert action.status == ExecutedActionStatus.SKIPPED.value

    def test_rule_stays_scheduled_while_actions_open(self, db_session, schedule, scheduled_rule, provider):
        schedule("ARCHIVE", minutes=-5)
        schedule("LABEL", minutes=60, label="N")

        delayed_actions.process_delayed_actions(db_session, provider_factory=_factory(provider))

        db_session.refresh(scheduled_rule)
        assert scheduled_rule.status == ExecutedRuleStatus.SCHEDULED.value

    def test_stored_fields_are_used(self, db_session, schedule, provider):
        schedule("LABEL", label="Später")

        delayed_actions.process_delayed_actions(db_session, provider_factory=_factory(provider))

        provider.label_thread.assert_called_once_with("thread-1", "Später")

    def test_nothing_due(self, db_session, schedule, provider):
        schedule(minutes=30)

        stats = delayed_actions.process_delayed_actions(db_session, provider_factory=_factory(provider))

        assert stats["due"] == 0
        provider.get_message.assert_not_called()


class TestCancelAndReschedule:
    def test_cancel(self, db_session, schedule, scheduled_rule, user):
        action = schedule(minutes=30)

        assert delayed_actions.cancel_scheduled_action(db_session, action.id, user_id=user.id) is True
        assert delayed_actions.cancel_scheduled_action(db_session, action.id, user_id=user.id) is False
        db_session.refresh(action)
        db_session.refresh(scheduled_rule)
        assert action.status == ExecutedActionStatus.CANCELLED.value
        assert scheduled_rule.status == ExecutedRuleStatus.APPLIED.value

    def test_cancel_other_users_action(self, db_session, schedule, user):
        action = schedule(minutes=30)

        assert delayed_actions.cancel_scheduled_action(db_session, action.id, user_id=user.id + 1) is False

    def test_cancel_after_claim_is_noop(self, db_session, schedule):
        action = schedule()
        delayed_actions.claim_scheduled_action(db_session, action.id)

        assert delayed_actions.cancel_scheduled_action(db_session, action.id) is False
        db_session.refresh(action)
        assert action.status == ExecutedActionStatus.EXECUTING.value

    def test_reschedule_moves_due_date(self, db_session, schedule):
        action = schedule(minutes=-5)

        moved = delayed_actions.reschedule_scheduled_action(
            db_session, action.id, datetime.now(UTC) + timedelta(hours=2)
        )

        assert moved is True
        assert delayed_actions.get_due_actions(db_session) == []
        db_session.refresh(action)
        assert action.status == ExecutedActionStatus.SCHEDULED.value

    def test_reschedule_cancelled_action_fails(self, db_session, schedule):
        action = schedule(minutes=30, status=ExecutedActionStatus.CANCELLED)

        assert delayed_actions.reschedule_scheduled_action(
            db_session, action.id, datetime.now(UTC) + timedelta(hours=2)
        ) is False

    def test_cancel_for_thread(self, db_session, schedule, user):
        schedule(minutes=10)
        schedule(minutes=20)
        schedule(minutes=-5, status=ExecutedActionStatus.EXECUTED)

        count = delayed_actions.cancel_scheduled_actions_for_thread(db_session, user.id, "thread-1")

        assert count == 2
        statuses = {a.status for a in db_session.query(ExecutedAction)}
        assert statuses == {ExecutedActionStatus.CANCELLED.value, ExecutedActionStatus.EXECUTED.value}
