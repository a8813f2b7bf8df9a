import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path

import pytest

from ralph.backends import CapabilityDeniedError, ClaudeCodeBackend, InvocationStatus
from ralph.config import RalphConfig
from ralph.controller import TaskCycleController, TaskKind, TaskOutcome
from ralph.state import SeenSet, Workspace, WorkspaceManager
from ralph.supervisor import InvocationResult, ProcessSupervisor, SupervisionConfig
from ralph.tracker import Issue, IssueTracker, PullRequest, TrackerError


class FakeTracker(IssueTracker):
    def __init__(
        self,
        *,
        prs: list[int] | None = None,
        labelled: dict[str, list[int]] | None = None,
        oldest: list[int] | None = None,
        pr_state: str = "OPEN",
        titles: dict[int, str] | None = None,
        labels: dict[int, list[str]] | None = None,
    ) -> None:
        self.prs = prs or []
        self.titles = titles or {}
        self.labels = labels or {}
        self.labelled = labelled or {}
        self.oldest = oldest or []
        self.pr_state = pr_state
        self.closed: list[tuple[int, str]] = []
        self.assigned: list[int] = []
        self.missing: set[int] = set()

    def list_open_prs(self, limit: int) -> list[int]:
        return self.prs[:limit]

    def list_issues(
        self, label: str | None = None, limit: int = 5, oldest_first: bool = False
    ) -> list[int]:
        numbers = self.oldest if oldest_first else self.labelled.get(label or "", [])
        return numbers[:limit]

    def view_issue(self, number: int) -> Issue:
        if number in self.missing:
            raise TrackerError(f"Issue #{number} not found")
        return Issue(
            number=number,
            title=self.titles.get(number, f"Fix widget {number}"),
            body="It breaks.",
            labels=self.labels.get(number, []),
        )

    def view_pr(self, number: int) -> PullRequest:
        return PullRequest(
            number=number,
            title=f"PR {number}",
            state=self.pr_state,
            head_branch=f"feature/pr-{number}",
        )

    def assign_self(self, number: int) -> None:
        self.assigned.append(number)

    def close_issue(self, number: int, comment: str) -> None:
        self.closed.append((number, comment))


class FakeWorkspaces(WorkspaceManager):
    def __init__(self, repo_root: Path) -> None:
        super().__init__(repo_root)
        self.acquired: list[str] = []
        self.reconciled: list[tuple[str, str]] = []

    def acquire(self, key: str) -> Workspace:
        self.acquired.append(key)
        return Workspace(
            key=key, path=self.path_for(key), branch=self.branch_for(key), origin="created"
        )

    def reconcile(self, branch: str, final_state: str) -> bool:
        self.reconciled.append((branch, final_state))
        return final_state in {"MERGED", "CLOSED"}


class FakeSupervisor(ProcessSupervisor):
    """Returns scripted outcomes keyed by the phase suffix of the invocation label."""

    def __init__(
        self, log_dir: Path, script: dict[str, tuple[InvocationStatus, str]] | None = None
    ) -> None:
        super().__init__(ClaudeCodeBackend(), log_dir)
        self.script = script or {}
        self.calls: list[tuple[str, SupervisionConfig]] = []
        self.active = 0
        self.peak = 0
        self.delay = 0.0
        self.active_by_cwd: dict[Path | None, int] = {}
        self.peak_by_cwd: dict[Path | None, int] = {}

    async def supervise(self, prompt: str, config: SupervisionConfig) -> InvocationResult:
        self.calls.append((prompt, config))
        self.active += 1
        self.peak = max(self.peak, self.active)
        in_cwd = self.active_by_cwd.get(config.cwd, 0) + 1
        self.active_by_cwd[config.cwd] = in_cwd
        self.peak_by_cwd[config.cwd] = max(self.peak_by_cwd.get(config.cwd, 0), in_cwd)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
            self.active_by_cwd[config.cwd] -= 1
        phase = config.label.rsplit("-", 1)[-1]
        status, text = self.script.get(phase, (InvocationStatus.COMPLETED, ""))
        self.log_dir.mkdir(parents=True, exist_ok=True)
        stdout_path = self.log_dir / f"{config.label}.out"
        stdout_path.write_text(
            json.dumps({"type": "result", "result": text}) + "\n", encoding="utf-8"
        )
        return InvocationResult(
            status=status,
            exit_code=0 if status == InvocationStatus.COMPLETED else 1,
            stdout_path=stdout_path,
            stderr_path=self.log_dir / f"{config.label}.err",
            live_path=self.log_dir / f"{config.label}.live",
            started_at=datetime.now(),
            duration_seconds=0.0,
            timeout_seconds=config.timeout_seconds,
            max_turns=config.max_turns,
            result_event={"type": "result", "result": text},
            denial_lines=["Tool call was denied"] if status == InvocationStatus.DENIED else [],
        )

    @property
    def phases(self) -> list[str]:
        return [config.label for _, config in self.calls]


def _controller(
    tmp_path: Path,
    tracker: FakeTracker,
    script: dict[str, tuple[InvocationStatus, str]] | None = None,
    **workflow: object,
) -> tuple[TaskCycleController, FakeSupervisor, FakeWorkspaces]:
    config = RalphConfig.default()
    for key, value in workflow.items():
        setattr(config.workflow, key, value)
    supervisor = FakeSupervisor(tmp_path / "logs", script)
    workspaces = FakeWorkspaces(tmp_path)
    controller = TaskCycleController(
        config,
        supervisor,
        tracker,
        workspaces,
        skip_set=SeenSet(tmp_path / ".ralph-skip"),
        reviewed_set=SeenSet(tmp_path / ".ralph-reviewed-prs"),
        echo=lambda message: None,
    )
    return controller, supervisor, workspaces


RELEVANT = json.dumps({"relevant": True, "reason": "still broken", "plan": "Patch the widget."})


def test_selection_prefers_unreviewed_prs_then_label_priority(tmp_path: Path) -> None:
    tracker = FakeTracker(prs=[8, 7], labelled={"bug": [3], "enhancement": [4]}, oldest=[1])
    controller, _, _ = _controller(tmp_path, tracker)
    controller.reviewed_set.add(8)

    assert controller.select_task() == (TaskKind.REVIEW, 7)
    assert controller.select_task(reviews=False) == (TaskKind.ISSUE, 3)

    controller.skip_set.add(3)
    assert controller.next_issue() == 4
    controller.skip_set.add(4)
    assert controller.next_issue() == 1
    controller.skip_set.add(1)
    assert controller.next_issue() is None


def test_label_filter_disables_oldest_fallback(tmp_path: Path) -> None:
    tracker = FakeTracker(labelled={"bug": [3], "urgent": []}, oldest=[1])
    controller, _, _ = _controller(tmp_path, tracker)
    controller.config.queue.label_filter = "urgent"

    assert controller.next_issue() is None


def test_relevant_issue_is_implemented_in_its_workspace(tmp_path: Path) -> None:
    tracker = FakeTracker()
    controller, supervisor, workspaces = _controller(
        tmp_path, tracker, {"triage": (InvocationStatus.COMPLETED, RELEVANT)}
    )

    task = asyncio.run(controller.run_task(TaskKind.ISSUE, 5))

    assert task.outcome == TaskOutcome.DONE
    assert task.workspace_key == "fix-widget-5"
    assert tracker.assigned == [5]
    assert workspaces.acquired == ["fix-widget-5"]
    assert supervisor.phases == ["issue-5-triage", "issue-5-implement"]
    implement_prompt, implement_config = supervisor.calls[1]
    assert "Patch the widget." in implement_prompt
    assert "feature/fix-widget-5" in implement_prompt
    assert implement_config.cwd == workspaces.path_for("fix-widget-5")
    assert supervisor.calls[0][1].cwd == workspaces.repo_root


def test_issue_labels_are_logged(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    tracker = FakeTracker(labels={5: ["bug", "ui"]})
    controller, _, _ = _controller(tmp_path, tracker, dry_run=True)

    with caplog.at_level(logging.INFO, logger="ralph.controller"):
        asyncio.run(controller.run_issue(5))

    assert "Working on issue #5: Fix widget 5 [bug, ui]" in caplog.text


def test_stale_issue_is_closed_with_reason(tmp_path: Path) -> None:
    tracker = FakeTracker()
    verdict = "Looked around.\n```json\n" + json.dumps(
        {"relevant": False, "reason": "Already fixed in v2", "plan": ""}
    ) + "\n```"
    controller, supervisor, workspaces = _controller(
        tmp_path, tracker, {"triage": (InvocationStatus.COMPLETED, verdict)}
    )

    task = asyncio.run(controller.run_issue(5))

    assert task.outcome == TaskOutcome.DONE
    assert tracker.closed == [(5, "Closing: Already fixed in v2")]
    assert supervisor.phases == ["issue-5-triage"]
    assert workspaces.acquired == []


def test_max_turns_adds_issue_to_skip_set(tmp_path: Path) -> None:
    tracker = FakeTracker()
    controller, _, _ = _controller(
        tmp_path,
        tracker,
        {
            "triage": (InvocationStatus.COMPLETED, RELEVANT),
            "implement": (InvocationStatus.MAX_TURNS, ""),
        },
    )

    task = asyncio.run(controller.run_task(TaskKind.ISSUE, 5))

    assert task.outcome == TaskOutcome.SKIPPED
    assert task.phase == "implement"
    assert 5 in controller.skip_set


def test_failed_triage_stops_the_task(tmp_path: Path) -> None:
    tracker = FakeTracker()
    controller, supervisor, _ = _controller(
        tmp_path, tracker, {"triage": (InvocationStatus.FAILED, "")}
    )

    task = asyncio.run(controller.run_task(TaskKind.ISSUE, 5))

    assert task.outcome == TaskOutcome.FAILED
    assert supervisor.phases == ["issue-5-triage"]
    assert 5 not in controller.skip_set


@pytest.mark.parametrize("phase", ["triage", "implement"])
def test_timed_out_invocation_leaves_the_task_pending(tmp_path: Path, phase: str) -> None:
    tracker = FakeTracker()
    script = {"triage": (InvocationStatus.COMPLETED, RELEVANT)}
    script[phase] = (InvocationStatus.TIMED_OUT, "")
    controller, supervisor, _ = _controller(tmp_path, tracker, script)

    task = asyncio.run(controller.run_task(TaskKind.ISSUE, 5))

    assert task.outcome == TaskOutcome.PENDING
    assert not task.terminal
    assert task.phase == phase
    assert task.reason.endswith("timed out")
    assert supervisor.phases[-1] == f"issue-5-{phase}"
    assert 5 not in controller.skip_set


def test_denial_aborts_the_run(tmp_path: Path) -> None:
    tracker = FakeTracker()
    controller, _, _ = _controller(
        tmp_path, tracker, {"triage": (InvocationStatus.DENIED, "")}
    )

    with pytest.raises(CapabilityDeniedError):
        asyncio.run(controller.run_once(issues=[5, 6]))


def test_tracker_errors_leave_the_task_pending(tmp_path: Path) -> None:
    tracker = FakeTracker()
    tracker.missing.add(5)
    controller, supervisor, _ = _controller(tmp_path, tracker)

    task = asyncio.run(controller.run_task(TaskKind.ISSUE, 5))

    assert task.outcome == TaskOutcome.PENDING
    assert not task.terminal
    assert supervisor.calls == []


def test_dry_run_invokes_nothing(tmp_path: Path) -> None:
    tracker = FakeTracker(prs=[7])
    controller, supervisor, workspaces = _controller(tmp_path, tracker, dry_run=True)

    tasks = asyncio.run(controller.run_once(issues=[5], prs=[7]))

    assert [str(task) for task in tasks] == ["PR #7", "issue #5"]
    assert all(task.reason == "dry run" for task in tasks)
    assert supervisor.calls == []
    assert tracker.assigned == []
    assert workspaces.acquired == []
    assert 7 not in controller.reviewed_set


def test_no_triage_goes_straight_to_implementation(tmp_path: Path) -> None:
    tracker = FakeTracker()
    controller, supervisor, _ = _controller(tmp_path, tracker, no_triage=True)

    task = asyncio.run(controller.run_issue(5))

    assert task.outcome == TaskOutcome.DONE
    assert supervisor.phases == ["issue-5-implement"]


def test_parallel_run_respects_the_limit(tmp_path: Path) -> None:
    tracker = FakeTracker()
    controller, supervisor, _ = _controller(tmp_path, tracker, parallel=2, no_triage=True)
    supervisor.delay = 0.05

    tasks = asyncio.run(controller.run_once(issues=[1, 2, 3, 4, 5]))

    assert sorted(task.number for task in tasks) == [1, 2, 3, 4, 5]
    assert all(task.outcome == TaskOutcome.DONE for task in tasks)
    assert supervisor.peak == 2


def test_parallel_run_serialises_tasks_sharing_a_workspace(tmp_path: Path) -> None:
    tracker = FakeTracker(titles={1: "Fix shared widget", 2: "fix shared widget"})
    controller, supervisor, workspaces = _controller(
        tmp_path, tracker, parallel=2, no_triage=True
    )
    supervisor.delay = 0.05

    tasks = asyncio.run(controller.run_once(issues=[1, 2, 3]))

    assert all(task.outcome == TaskOutcome.DONE for task in tasks)
    assert workspaces.acquired.count("fix-shared-widget") == 2
    assert supervisor.peak_by_cwd[workspaces.path_for("fix-shared-widget")] == 1
    assert supervisor.peak_by_cwd[workspaces.path_for("fix-widget-3")] == 1
    assert supervisor.peak == 2


def test_review_reconciles_workspace_and_marks_reviewed(tmp_path: Path) -> None:
    tracker = FakeTracker(pr_state="MERGED")
    controller, supervisor, workspaces = _controller(tmp_path, tracker)

    task = asyncio.run(controller.run_review(7))

    assert task.outcome == TaskOutcome.DONE
    assert supervisor.phases == ["pr-7-review"]
    assert supervisor.calls[0][1].cwd == workspaces.repo_root
    assert workspaces.reconciled == [("feature/pr-7", "MERGED")]
    assert 7 in controller.reviewed_set


def test_review_hitting_max_turns_is_not_retried(tmp_path: Path) -> None:
    tracker = FakeTracker(prs=[7])
    controller, _, _ = _controller(
        tmp_path, tracker, {"review": (InvocationStatus.MAX_TURNS, "")}
    )

    task = asyncio.run(controller.run_review(7))

    assert task.outcome == TaskOutcome.SKIPPED
    assert controller.next_review() is None


def test_watch_reviews_new_prs_until_shutdown(tmp_path: Path) -> None:
    tracker = FakeTracker(prs=[3, 2])
    controller, supervisor, _ = _controller(tmp_path, tracker, poll_interval_seconds=0.01)
    controller.reviewed_set.add(2)

    async def scenario() -> int:
        shutdown = asyncio.Event()
        watcher = asyncio.create_task(controller.watch(shutdown))
        for _ in range(100):
            if supervisor.calls:
                break
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.05)
        shutdown.set()
        return await asyncio.wait_for(watcher, timeout=5)

    handled = asyncio.run(scenario())

    assert handled == 1
    assert supervisor.phases == ["pr-3-review"]
    assert 3 in controller.reviewed_set
