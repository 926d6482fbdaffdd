"""
Unit Tests: Plan Store (fakeredis)
"""

from datetime import datetime, timedelta, UTC

from automail.mail_types import ActionItem
from automail.models import ActionType
from automail.services.plan_store import Plan, PlanStore


def _plan(thread_id="thread-1", function_name="label", created_at=None, label="Newsletter"):
    return Plan(
        function_name=function_name,
        function_args={"rule_number": 1},
        message_id=f"msg-{thread_id}",
        thread_id=thread_id,
        rule_id=7,
        actions=[
            ActionItem(type=ActionType.LABEL, label=label, action_id=3),
            ActionItem(type=ActionType.ARCHIVE, delay_minutes=30, action_id=4),
        ],
        reason="Werbung",
        created_at=created_at or datetime.now(UTC),
    )


class TestPlanStore:
    def test_save_and_get(self, plan_store):
        plan_store.save(1, "thread-1", _plan())

        plan = plan_store.get(1, "thread-1")

        assert plan.function_name == "label"
        assert plan.rule_id == 7
        assert plan.actions[0] == ActionItem(type=ActionType.LABEL, label="Newsletter", action_id=3)
        assert plan.actions[1].is_delayed

    def test_last_write_wins(self, plan_store, fake_redis):
        plan_store.save(1, "thread-1", _plan(label="Alt"))
        plan_store.save(1, "thread-1", _plan(function_name="archive", label="Neu"))

        plan = plan_store.get(1, "thread-1")

        assert plan.function_name == "archive"
        assert plan.actions[0].label == "Neu"
        assert fake_redis.hlen("plans:1") == 1

    def test_delete(self, plan_store):
        plan_store.save(1, "thread-1", _plan())

        assert plan_store.delete(1, "thread-1") is True
        assert plan_store.get(1, "thread-1") is None
        assert plan_store.delete(1, "thread-1") is False

    def test_users_are_isolated(self, plan_store):
        plan_store.save(1, "thread-1", _plan())

        assert plan_store.get(2, "thread-1") is None

    def test_ttl_is_set(self, plan_store, fake_redis):
        plan_store.save(1, "thread-1", _plan())

        ttl = fake_redis.ttl("plans:1")
        assert 0 < ttl <= 7 * 24 * 60 * 60

    def test_ttl_from_environment(self, fake_redis, monkeypatch):
        monkeypatch.setenv("PLAN_TTL_DAYS", "2")

        store = PlanStore(redis_client=fake_redis)

        assert store.ttl_seconds == 2 * 24 * 60 * 60

    def test_list_for_user_oldest_first(self, plan_store):
        now = datetime.now(UTC)
        plan_store.save(1, "thread-b", _plan("thread-b", created_at=now))
        plan_store.save(1, "thread-a", _plan("thread-a", created_at=now - timedelta(hours=1)))

        plans = plan_store.list_for_user(1)

        assert [plan.thread_id for plan in plans] == ["thread-a", "thread-b"]

    def test_corrupt_entry_counts_as_missing(self, plan_store, fake_redis):
        fake_redis.hset("plans:1", "thread-1", "{kaputt")

        assert plan_store.get(1, "thread-1") is None
        assert not fake_redis.hexists("plans:1", "thread-1")


class TestPlanSerialization:
    def test_json_round_trip_keeps_timestamp(self):
        plan = _plan()

        restored = Plan.from_json(plan.to_json())

        assert restored.created_at == plan.created_at
        assert restored.actions == plan.actions
