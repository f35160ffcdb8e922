"""Tests for the run report."""

from rich.console import Console

from deployctl.deploy.models import (
    DeploymentState,
    DeploymentStatus,
    RollbackFailureRecord,
    StageRecord,
    StageStatus,
)
from deployctl.deploy.report import DeploymentReport


def _state(target: str, status: DeploymentStatus) -> DeploymentState:
    state = DeploymentState(
        run_id="run1",
        target=target,
        address=f"{target}.example.com",
        stages=[StageRecord(name="a"), StageRecord(name="b")],
    )
    if status == DeploymentStatus.SKIPPED:
        state.transition(status)
        return state

    state.transition(DeploymentStatus.RUNNING, stage_index=0)
    state.stages[0].status = StageStatus.SUCCEEDED
    if status == DeploymentStatus.SUCCEEDED:
        state.stages[1].status = StageStatus.SUCCEEDED
        state.transition(DeploymentStatus.RUNNING, stage_index=1)
        state.transition(DeploymentStatus.SUCCEEDED)
    else:
        state.stages[1].status = StageStatus.FAILED
        state.record_error("b", RuntimeError("boom"))
        state.transition(DeploymentStatus.STAGE_FAILED)
        state.transition(DeploymentStatus.ROLLING_BACK)
        state.rolled_back = True
        state.rollback_failures.append(RollbackFailureRecord("a", "start", "compose down failed"))
        state.transition(status)
    return state


def _report(*statuses: DeploymentStatus) -> DeploymentReport:
    states = [_state(f"web{i}", s) for i, s in enumerate(statuses, start=1)]
    return DeploymentReport.from_states("run1", "shop", "main", states)


class TestDeploymentReport:
    """Tests for DeploymentReport."""

    def test_all_succeeded(self):
        report = _report(DeploymentStatus.SUCCEEDED, DeploymentStatus.SUCCEEDED)
        assert report.succeeded
        assert report.exit_code == 0
        assert report.counts == {"succeeded": 2}
        assert report.target("web1").progress == "2/2"

    def test_any_failure_is_nonzero(self):
        report = _report(DeploymentStatus.SUCCEEDED, DeploymentStatus.FAILED, DeploymentStatus.SKIPPED)
        assert not report.succeeded
        assert report.exit_code == 1
        assert report.counts == {"succeeded": 1, "failed": 1, "skipped": 1}
        failed = report.target("web2")
        assert failed.failed_stage == "b"
        assert failed.progress == "1/2"
        assert failed.rolled_back

    def test_empty_run_is_not_success(self):
        report = DeploymentReport.from_states("run1", "shop", "main", [])
        assert report.exit_code == 1

    def test_to_dict(self):
        data = _report(DeploymentStatus.FAILED).to_dict()
        assert data["exit_code"] == 1
        target = data["targets"][0]
        assert target["status"] == "failed"
        assert target["rollback_failures"] == [
            {"stage": "a", "step": "start", "error": "compose down failed"}
        ]
        assert [s["status"] for s in target["stages"]] == ["succeeded", "failed"]

    def test_table_renders(self):
        report = _report(DeploymentStatus.SUCCEEDED, DeploymentStatus.FAILED)
        console = Console(record=True, width=200)
        console.print(report.to_table())
        text = console.export_text()
        assert "web1" in text
        assert "RuntimeError: boom" in text
        assert "rolled back" in text

    def test_summary_line(self):
        report = _report(DeploymentStatus.SUCCEEDED, DeploymentStatus.SKIPPED)
        assert report.summary_line() == "2 target(s): 1 succeeded, 1 skipped"
