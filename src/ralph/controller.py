from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

import click

from ralph.backends.base import CapabilityDeniedError, InvocationError, InvocationStatus
from ralph.config import RalphConfig
from ralph.extract import DEFAULT_PLAN, TriageVerdict
from ralph.phases import (
    CustomReviewer,
    ImplementPhase,
    PhaseRequest,
    ReviewPhase,
    TeamImplementPhase,
    TeamReviewPhase,
    TriagePhase,
)
from ralph.state import (
    RalphStateError,
    ResourceUnavailableError,
    SeenSet,
    WorkspaceManager,
    feature_name,
)
from ralph.supervisor import InvocationResult, ProcessSupervisor
from ralph.tracker import IssueTracker, TrackerError

logger = logging.getLogger(__name__)

SLEEP_SLICE_SECONDS = 5.0


class TaskKind(StrEnum):
    ISSUE = "issue"
    REVIEW = "review"


class TaskOutcome(StrEnum):
    PENDING = "pending"
    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(slots=True)
class Task:
    kind: TaskKind
    number: int
    title: str = ""
    body: str = ""
    phase: str = ""
    outcome: TaskOutcome = TaskOutcome.PENDING
    reason: str = ""
    workspace_key: str | None = None

    @property
    def terminal(self) -> bool:
        return self.outcome != TaskOutcome.PENDING

    def __str__(self) -> str:
        prefix = "PR" if self.kind == TaskKind.REVIEW else "issue"
        return f"{prefix} #{self.number}"


class TaskCycleController:
    """Selects work items and drives each one through its phases.

    Only :class:`CapabilityDeniedError` escapes: a denied tool means every later
    invocation would fail the same way, so the whole run stops. Every other
    failure is logged and contained in the task it happened to.
    """

    def __init__(
        self,
        config: RalphConfig,
        supervisor: ProcessSupervisor,
        tracker: IssueTracker,
        workspaces: WorkspaceManager,
        *,
        skip_set: SeenSet,
        reviewed_set: SeenSet,
        reviewers: list[CustomReviewer] | None = None,
        echo: Callable[[str], None] = click.echo,
    ) -> None:
        self.config = config
        self.supervisor = supervisor
        self.tracker = tracker
        self.workspaces = workspaces
        self.skip_set = skip_set
        self.reviewed_set = reviewed_set
        self.echo = echo
        worker = config.worker
        workflow = config.workflow
        self.triage = TriagePhase(worker)
        self.implement: ImplementPhase = (
            TeamImplementPhase(worker) if workflow.team else ImplementPhase(worker)
        )
        self.review: ReviewPhase = (
            TeamReviewPhase(worker, reviewers=reviewers)
            if workflow.team_review
            else ReviewPhase(worker)
        )
        self._workspace_locks: dict[str, asyncio.Lock] = {}

    # Selection

    def _seen_for(self, kind: TaskKind) -> SeenSet:
        return self.reviewed_set if kind == TaskKind.REVIEW else self.skip_set

    def next_review(self) -> int | None:
        for number in self.tracker.list_open_prs(self.config.queue.review_limit):
            if number not in self.reviewed_set:
                return number
        return None

    def next_issue(self) -> int | None:
        queue = self.config.queue
        labels = [queue.label_filter] if queue.label_filter else list(queue.label_priority)
        for label in labels:
            for number in self.tracker.list_issues(label, queue.pick_limit):
                if number not in self.skip_set:
                    return number
        if not queue.label_filter:
            for number in self.tracker.list_issues(None, queue.pick_limit, oldest_first=True):
                if number not in self.skip_set:
                    return number
        return None

    def select_task(
        self, *, reviews: bool = True, issues: bool = True
    ) -> tuple[TaskKind, int] | None:
        if reviews:
            number = self.next_review()
            if number is not None:
                return TaskKind.REVIEW, number
        if issues:
            number = self.next_issue()
            if number is not None:
                return TaskKind.ISSUE, number
        return None

    # Outcomes

    def _settle(self, task: Task, result: InvocationResult, activity: str) -> bool:
        if result.ok:
            return True
        if result.status == InvocationStatus.DENIED:
            result.raise_for_status()
        if result.status == InvocationStatus.MAX_TURNS:
            task.outcome = TaskOutcome.SKIPPED
            task.reason = f"hit max turns during {activity}"
            self._seen_for(task.kind).add(task.number, task.reason)
            logger.warning("Skipping %s: %s", task, task.reason)
            return False
        if result.status == InvocationStatus.TIMED_OUT:
            task.reason = f"{activity} timed out"
            logger.warning(
                "%s timed out for %s; left pending, see %s",
                activity.capitalize(),
                task,
                result.stdout_path,
            )
            return False
        task.outcome = TaskOutcome.FAILED
        task.reason = f"{activity} {result.status}"
        logger.warning(
            "%s failed for %s (%s, exit code %s); see %s",
            activity.capitalize(),
            task,
            result.status,
            result.exit_code,
            result.stdout_path,
        )
        return False

    async def _invoke(self, task: Task, request: PhaseRequest) -> InvocationResult:
        task.phase = request.phase
        logger.info("Phase %s for %s", request.phase, task)
        return await self.supervisor.supervise(request.prompt, request.config)

    def _workspace_lock(self, key: str) -> asyncio.Lock:
        lock = self._workspace_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._workspace_locks[key] = lock
        return lock

    # Work items

    async def run_issue(self, number: int) -> Task:
        task = Task(kind=TaskKind.ISSUE, number=number)
        issue = await asyncio.to_thread(self.tracker.view_issue, number)
        task.title, task.body = issue.title, issue.body
        task.workspace_key = feature_name(issue.title) or f"issue-{number}"
        logger.info(
            "Working on issue #%s: %s%s",
            number,
            issue.title,
            f" [{', '.join(issue.labels)}]" if issue.labels else "",
        )

        values = {
            "issue_number": number,
            "issue_title": issue.title,
            "issue_body": issue.body,
            "branch": self.workspaces.branch_for(task.workspace_key),
            "remote": self.workspaces.remote,
            "base_branch": self.workspaces.base_branch,
        }
        if self.config.workflow.dry_run:
            logger.info("[DRY RUN] Would triage and implement issue #%s", number)
            if self.config.workflow.team:
                logger.info("[DRY RUN] Team prompt:")
                self.echo(
                    self.implement.render(
                        plan=DEFAULT_PLAN,
                        worktree_path=self.workspaces.path_for(task.workspace_key),
                        **values,
                    )
                )
            task.reason = "dry run"
            return task

        try:
            await asyncio.to_thread(self.tracker.assign_self, number)
        except TrackerError as exc:
            logger.warning("Could not assign issue #%s: %s", number, exc)

        plan = DEFAULT_PLAN
        if self.config.workflow.no_triage:
            logger.info("Skipping triage; proceeding to implementation")
        else:
            request = self.triage.build(
                label=f"issue-{number}-triage", cwd=self.workspaces.repo_root, **values
            )
            result = await self._invoke(task, request)
            if not self._settle(task, result, "triage"):
                return task
            verdict = TriageVerdict.from_output(result.result_text)
            if not verdict.relevant:
                logger.info("Issue #%s is no longer relevant: %s", number, verdict.reason)
                await asyncio.to_thread(
                    self.tracker.close_issue, number, f"Closing: {verdict.reason}"
                )
                task.outcome = TaskOutcome.DONE
                task.reason = verdict.reason
                return task
            plan = verdict.plan
            logger.info("Issue #%s is relevant; proceeding to implementation", number)

        async with self._workspace_lock(task.workspace_key):
            workspace = await asyncio.to_thread(self.workspaces.acquire, task.workspace_key)
            request = self.implement.build(
                label=f"issue-{number}-implement",
                cwd=workspace.path,
                plan=plan,
                worktree_path=workspace.path,
                **values,
            )
            result = await self._invoke(task, request)
        if self._settle(task, result, "implementation"):
            task.outcome = TaskOutcome.DONE
            suffix = " (soft)" if result.soft_complete else ""
            logger.info("Issue #%s implemented%s", number, suffix)
        return task

    async def run_review(self, number: int) -> Task:
        task = Task(kind=TaskKind.REVIEW, number=number, phase="review")
        pull = await asyncio.to_thread(self.tracker.view_pr, number)
        task.title = pull.title
        logger.info("Reviewing PR #%s: %s", number, pull.title)

        values = {"pr_number": number, "pr_title": pull.title}
        if self.config.workflow.dry_run:
            logger.info("[DRY RUN] Would review PR #%s", number)
            if self.config.workflow.team_review:
                logger.info("[DRY RUN] Team prompt:")
                self.echo(self.review.render(**values))
            task.reason = "dry run"
            return task

        request = self.review.build(
            label=f"pr-{number}-review", cwd=self.workspaces.repo_root, **values
        )
        result = await self._invoke(task, request)
        completed = self._settle(task, result, "review")
        await self._reconcile(number)
        if completed:
            task.outcome = TaskOutcome.DONE
        self.reviewed_set.add(number, f"review {result.status}")
        return task

    async def _reconcile(self, number: int) -> None:
        try:
            pull = await asyncio.to_thread(self.tracker.view_pr, number)
        except TrackerError as exc:
            logger.warning("Could not read final state of PR #%s: %s", number, exc)
            return
        if await asyncio.to_thread(self.workspaces.reconcile, pull.head_branch, pull.state):
            logger.info(
                "PR #%s is %s; workspace for %s removed", number, pull.state, pull.head_branch
            )

    async def run_task(self, kind: TaskKind, number: int) -> Task:
        try:
            if kind == TaskKind.REVIEW:
                return await self.run_review(number)
            return await self.run_issue(number)
        except CapabilityDeniedError:
            raise
        except InvocationError as exc:
            logger.error("%s #%s: %s", kind, number, exc)
            return Task(kind=kind, number=number, outcome=TaskOutcome.FAILED, reason=str(exc))
        except (TrackerError, ResourceUnavailableError, RalphStateError) as exc:
            logger.error("%s #%s left pending: %s", kind, number, exc)
            return Task(kind=kind, number=number, reason=str(exc))

    # Loops

    async def run_once(
        self,
        *,
        issues: list[int] | None = None,
        prs: list[int] | None = None,
        count: int | None = None,
        reviews: bool = True,
        pick_issues: bool = True,
    ) -> list[Task]:
        queue = [(TaskKind.REVIEW, number) for number in prs or []]
        queue.extend((TaskKind.ISSUE, number) for number in issues or [])
        if count is None:
            count = len(queue) if queue else self.config.workflow.count

        if self.config.workflow.parallel > 1 and len(queue) > 1:
            logger.info(
                "Parallel mode: processing up to %d tasks simultaneously",
                self.config.workflow.parallel,
            )
            return await self.run_parallel(queue[:count])

        tasks: list[Task] = []
        for iteration in range(1, count + 1):
            logger.info("Iteration %d/%d", iteration, count)
            if queue:
                kind, number = queue.pop(0)
            else:
                try:
                    target = await asyncio.to_thread(
                        self.select_task, reviews=reviews, issues=pick_issues
                    )
                except TrackerError as exc:
                    logger.error("Could not query the tracker: %s", exc)
                    continue
                if target is None:
                    logger.info("No open work found. Nothing to do.")
                    continue
                kind, number = target
            tasks.append(await self.run_task(kind, number))
        return tasks

    async def run_parallel(self, queue: list[tuple[TaskKind, int]]) -> list[Task]:
        limit = max(1, self.config.workflow.parallel)
        waiting = list(queue)
        running: set[asyncio.Task[Task]] = set()
        finished: list[Task] = []
        try:
            while waiting or running:
                while waiting and len(running) < limit:
                    kind, number = waiting.pop(0)
                    running.add(asyncio.create_task(self.run_task(kind, number)))
                done, running = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for handle in done:
                    finished.append(handle.result())
        finally:
            for handle in running:
                handle.cancel()
            if running:
                await asyncio.gather(*running, return_exceptions=True)
        logger.info("Parallel processing complete.")
        return finished

    async def watch(self, shutdown: asyncio.Event) -> int:
        interval = self.config.workflow.poll_interval_seconds
        handled = 0
        while not shutdown.is_set():
            try:
                open_prs = await asyncio.to_thread(
                    self.tracker.list_open_prs, self.config.queue.review_limit
                )
            except TrackerError as exc:
                logger.error("Could not list open PRs: %s", exc)
                open_prs = []

            found_new = False
            for number in open_prs:
                if shutdown.is_set():
                    break
                if number in self.reviewed_set:
                    continue
                found_new = True
                handled += 1
                logger.info("Review #%d (PR #%s)", handled, number)
                await self.run_task(TaskKind.REVIEW, number)

            if not open_prs:
                logger.info("No open PRs. Sleeping %gs...", interval)
            elif not found_new:
                logger.info("All open PRs already reviewed. Sleeping %gs...", interval)
            await self._sleep(interval, shutdown)

        logger.info("Watch stopped after %d reviews.", handled)
        return handled

    @staticmethod
    async def _sleep(seconds: float, shutdown: asyncio.Event) -> None:
        remaining = seconds
        while remaining > 0 and not shutdown.is_set():
            step = min(SLEEP_SLICE_SECONDS, remaining)
            try:
                await asyncio.wait_for(shutdown.wait(), timeout=step)
            except TimeoutError:
                pass
            remaining -= step
