"""Tests for per-plan dunning policies."""

import dataclasses

import pytest
from pydantic import ValidationError

from app.schemas.dunning_config import DunningConfigUpdate
from app.services.dunning_config_registry import DunningConfigRegistry, DunningPolicy


class TestDunningConfigUpdate:
    def test_defaults(self):
        data = DunningConfigUpdate()

        assert data.grace_period_days == 3
        assert data.max_retry_attempts == 3
        assert data.retry_intervals == [1, 3, 7]
        assert data.suspension_delay_days == 7
        assert data.auto_cancel_days == 30
        assert data.send_email_notifications is True
        assert data.send_sms_notifications is False

    def test_extra_fields_forbidden(self):
        with pytest.raises(ValidationError):
            DunningConfigUpdate(grace_period_days=3, retry_cap=5)

    @pytest.mark.parametrize("intervals", [[1, 1, 7], [3, 2, 7], [0, 3, 7], [-1, 3, 7], []])
    def test_intervals_must_be_positive_and_increasing(self, intervals):
        with pytest.raises(ValidationError):
            DunningConfigUpdate(retry_intervals=intervals, max_retry_attempts=1)

    def test_intervals_cover_every_attempt(self):
        with pytest.raises(ValidationError, match="every retry attempt"):
            DunningConfigUpdate(max_retry_attempts=4, retry_intervals=[1, 3, 7])

    def test_more_intervals_than_attempts_allowed(self):
        data = DunningConfigUpdate(max_retry_attempts=2, retry_intervals=[1, 3, 7])
        assert data.max_retry_attempts == 2

    @pytest.mark.parametrize(
        "field,value",
        [
            ("grace_period_days", -1),
            ("max_retry_attempts", 0),
            ("suspension_delay_days", -1),
            ("auto_cancel_days", 0),
        ],
    )
    def test_bounds(self, field, value):
        with pytest.raises(ValidationError):
            DunningConfigUpdate(**{field: value})


class TestDunningConfigRegistry:
    def test_unknown_plan_gets_defaults(self, db_session):
        policy = DunningConfigRegistry(db_session).get_policy("free")

        assert policy == DunningPolicy(plan_name="free", is_default=True)
        assert policy.retry_intervals == (1, 3, 7)

    def test_stored_policy(self, db_session):
        registry = DunningConfigRegistry(db_session)
        registry.upsert(
            "pro",
            DunningConfigUpdate(
                grace_period_days=10,
                max_retry_attempts=4,
                retry_intervals=[1, 2, 4, 8],
                send_sms_notifications=True,
            ),
        )

        policy = registry.get_policy("pro")

        assert policy.is_default is False
        assert policy.grace_period_days == 10
        assert policy.retry_intervals == (1, 2, 4, 8)
        assert policy.send_sms_notifications is True

    def test_upsert_replaces_existing(self, db_session):
        registry = DunningConfigRegistry(db_session)
        first = registry.upsert("pro", DunningConfigUpdate(grace_period_days=10))
        second = registry.upsert("pro", DunningConfigUpdate(grace_period_days=2))

        assert first.id == second.id
        assert registry.get_policy("pro").grace_period_days == 2
        assert [c.plan_name for c in registry.list_configs()] == ["pro"]

    def test_list_configs_ordered_by_plan(self, db_session):
        registry = DunningConfigRegistry(db_session)
        for plan_name in ("starter", "enterprise", "basic"):
            registry.upsert(plan_name, DunningConfigUpdate())

        assert [c.plan_name for c in registry.list_configs()] == ["basic", "enterprise", "starter"]
        assert [c.plan_name for c in registry.list_configs(skip=1, limit=1)] == ["enterprise"]

    def test_policy_is_immutable(self, db_session):
        policy = DunningConfigRegistry(db_session).get_policy("free")

        with pytest.raises(dataclasses.FrozenInstanceError):
            policy.grace_period_days = 99  # type: ignore[misc]

    def test_snapshot_columns(self):
        snapshot = DunningPolicy(plan_name="basic").snapshot()

        assert snapshot == {
            "plan_name": "basic",
            "grace_period_days": 3,
            "max_retry_attempts": 3,
            "retry_intervals": [1, 3, 7],
            "suspension_delay_days": 7,
            "auto_cancel_days": 30,
            "send_email_notifications": True,
            "send_sms_notifications": False,
        }
