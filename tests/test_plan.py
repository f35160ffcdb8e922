"""Tests for release plan building blocks and the canonical plan."""

import pytest

from deployctl.config import ProxyConfig, RetryConfig, RunConfig
from deployctl.deploy.plan import ReleasePlan, RetryPolicy, Stage, Step, StepOutcome
from deployctl.deploy.stages import (
    BUILD_START,
    CONFIGURE_PROXY,
    ENSURE_RUNTIME,
    HEALTH_CHECK,
    SYNC_SOURCE,
    build_release_plan,
)


async def _ok(ctx):
    return StepOutcome.success()


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_exponential_backoff(self):
        policy = RetryPolicy(max_attempts=5, backoff=1.0, backoff_multiplier=2.0, max_backoff=30.0)
        assert [policy.delay_for(i) for i in range(1, 5)] == [1.0, 2.0, 4.0, 8.0]

    def test_backoff_is_capped(self):
        policy = RetryPolicy(backoff=10.0, backoff_multiplier=3.0, max_backoff=25.0)
        assert policy.delay_for(3) == 25.0

    def test_once(self):
        policy = RetryPolicy.once()
        assert policy.max_attempts == 1

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestStageAndPlan:
    """Tests for Stage and ReleasePlan validation."""

    def test_stage_requires_steps(self):
        with pytest.raises(ValueError):
            Stage("empty", ())

    def test_stage_rejects_duplicate_steps(self):
        with pytest.raises(ValueError):
            Stage("dup", (Step("a", _ok), Step("a", _ok)))

    def test_plan_requires_stages(self):
        with pytest.raises(ValueError):
            ReleasePlan(())

    def test_plan_rejects_duplicate_stages(self):
        stage = Stage("s", (Step("a", _ok),))
        with pytest.raises(ValueError):
            ReleasePlan((stage, stage))

    def test_describe(self):
        plan = ReleasePlan(
            (Stage("first", (Step("a", _ok, rollback=_ok, description="does a"),)),),
            name="demo",
        )
        rows = plan.describe()
        assert rows == [
            {"stage": "1. first", "step": "a", "attempts": 3, "rollback": "yes", "description": "does a"}
        ]


class TestCanonicalPlan:
    """Tests for build_release_plan."""

    def _run(self, **kwargs) -> RunConfig:
        return RunConfig(repo_url="https://github.com/acme/shop.git", **kwargs)

    def test_five_stages_in_order(self):
        plan = build_release_plan(self._run())
        assert [s.name for s in plan.stages] == [
            SYNC_SOURCE,
            ENSURE_RUNTIME,
            BUILD_START,
            CONFIGURE_PROXY,
            HEALTH_CHECK,
        ]
        assert plan.name == "shop"

    def test_local_sync_fetches_then_uploads(self):
        plan = build_release_plan(self._run(sync_mode="local"))
        assert [s.name for s in plan.stages[0].steps] == ["fetch-source", "upload-source"]

    def test_remote_sync_single_step(self):
        plan = build_release_plan(self._run(sync_mode="remote"))
        assert [s.name for s in plan.stages[0].steps] == ["sync-repository"]

    def test_proxy_disabled_drops_stage(self):
        plan = build_release_plan(self._run(proxy=ProxyConfig(enabled=False)))
        names = [s.name for s in plan.stages]
        assert CONFIGURE_PROXY not in names
        ensure = plan.stages[names.index(ENSURE_RUNTIME)]
        assert [s.name for s in ensure.steps] == ["ensure-docker"]

    def test_retry_policy_from_config(self):
        plan = build_release_plan(self._run(retry=RetryConfig(max_attempts=5, backoff=1.0)))
        step = plan.stages[2].steps[0]
        assert step.retry.max_attempts == 5
        assert step.retry.backoff == 1.0

    def test_health_check_not_retried(self):
        plan = build_release_plan(self._run())
        assert plan.stages[-1].steps[0].retry.max_attempts == 1

    def test_rollbacks_on_mutating_steps(self):
        plan = build_release_plan(self._run())
        with_rollback = {
            step.name for stage in plan.stages for step in stage.steps if step.rollback is not None
        }
        assert with_rollback == {"start-containers", "install-config"}
