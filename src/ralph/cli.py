from __future__ import annotations

import asyncio
import json
import logging
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from ralph.backends import CapabilityDeniedError, ClaudeCodeBackend, WorkerBackend
from ralph.config import ConfigError, RalphConfig, load_config, save_config
from ralph.controller import Task, TaskCycleController
from ralph.phases import CustomReviewer, load_custom_reviewers, resolve_agents_dir
from ralph.roles import RoleRegistry
from ralph.state import RalphStateError, SeenSet, WorkspaceManager
from ralph.stream import render_file
from ralph.supervisor import ProcessSupervisor
from ralph.tracker import GitHubTracker, IssueTracker

logger = logging.getLogger("ralph")

LOG_FORMAT = "[%(asctime)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config: RalphConfig
    registry: RoleRegistry
    reviewers: list[CustomReviewer]
    controller: TaskCycleController


def _configure_logging(verbose: bool) -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        if handler.get_name() == "ralph":
            root.removeHandler(handler)
    handler = logging.StreamHandler(click.get_text_stream("stderr"))
    handler.set_name("ralph")
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _parse_numbers(
    ctx: click.Context, param: click.Parameter, value: str | None
) -> list[int]:
    if not value:
        return []
    numbers: list[int] = []
    for item in value.split(","):
        item = item.strip().lstrip("#")
        if not item:
            continue
        if not item.isdigit():
            raise click.BadParameter(f"not a number: {item}")
        numbers.append(int(item))
    return numbers


def _build_backend(config: RalphConfig) -> WorkerBackend:
    return ClaudeCodeBackend(binary=config.worker.binary)


def _build_tracker(repo_root: Path) -> IssueTracker:
    return GitHubTracker(repo_root)


def _record_event(event: dict[str, Any]) -> None:
    logger.debug("event %s", json.dumps(event, ensure_ascii=False, default=str))


def _read_config(config_path: Path) -> RalphConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


def _load_registry(
    repo_root: Path, config: RalphConfig
) -> tuple[RoleRegistry, list[CustomReviewer]]:
    registry = RoleRegistry()
    try:
        agents_dir = resolve_agents_dir(config.workflow.agents_dir, repo_root)
    except FileNotFoundError as exc:
        raise click.ClickException(str(exc)) from exc
    return registry, load_custom_reviewers(agents_dir, registry)


def _load_runtime(repo_root: Path, config: RalphConfig) -> Runtime:
    registry, reviewers = _load_registry(repo_root, config)
    supervisor = ProcessSupervisor(
        _build_backend(config),
        repo_root / config.repo.log_dir,
        registry=registry,
        event_hook=_record_event,
        echo=config.workflow.live,
    )
    workspaces = WorkspaceManager(
        repo_root,
        worktrees_dir=config.repo.worktrees_dir,
        remote=config.repo.remote,
        base_branch=config.repo.base_branch,
        branch_prefix=config.repo.branch_prefix,
    )
    controller = TaskCycleController(
        config,
        supervisor,
        _build_tracker(repo_root),
        workspaces,
        skip_set=SeenSet(repo_root / config.queue.skip_file),
        reviewed_set=SeenSet(repo_root / config.queue.reviewed_file),
        reviewers=reviewers,
    )
    return Runtime(
        repo_root=repo_root,
        config=config,
        registry=registry,
        reviewers=reviewers,
        controller=controller,
    )


def _apply_worker_overrides(
    config: RalphConfig,
    *,
    model: str | None,
    max_turns: int | None,
    timeout: float | None,
) -> None:
    if model:
        config.worker.model = model
    if max_turns:
        config.worker.max_turns = max_turns
    if timeout:
        config.worker.timeout_seconds = timeout


def _denial_message(exc: CapabilityDeniedError) -> str:
    lines = [str(exc), *(f"  {line}" for line in exc.matched_lines)]
    if exc.output_path is not None:
        lines.append(f"Output: {exc.output_path}")
    return "\n".join(lines)


def _echo_summary(tasks: list[Task]) -> None:
    for task in tasks:
        line = f"{task}: {task.outcome}"
        if task.reason:
            line += f" ({task.reason})"
        click.echo(line)


async def _watch(controller: TaskCycleController) -> int:
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _request_shutdown() -> None:
        if not shutdown.is_set():
            logger.info("Shutdown requested; finishing current review then exiting...")
            shutdown.set()

    installed: list[signal.Signals] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, _request_shutdown)
        except (NotImplementedError, RuntimeError):
            logger.debug("Cannot install handler for %s", signum.name)
            continue
        installed.append(signum)
    try:
        return await controller.watch(shutdown)
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)


@click.group()
def cli() -> None:
    """Ralph: supervised headless coding-agent loop."""


@cli.command("init")
@click.option("--config", "config_value", default="ralph.toml", show_default=True)
def init_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = _read_config(config_path)
    save_config(config_path, config)
    (repo_root / config.repo.log_dir).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized ralph in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Model: {config.worker.model}")


@cli.command("run")
@click.option("--count", type=int, default=None, help="Iterations (defaults to the issue list size).")
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--model", default=None)
@click.option("--max-turns", type=int, default=None)
@click.option("--timeout", type=float, default=None, help="Per-invocation timeout in seconds.")
@click.option("--label", default=None, help="Only pick issues with this label.")
@click.option("--issues", callback=_parse_numbers, default=None, help="Comma-separated issue numbers.")
@click.option("--parallel", type=click.IntRange(min=1), default=None)
@click.option("--no-triage", is_flag=True, default=False)
@click.option("--team", is_flag=True, default=False)
@click.option("--live/--no-live", default=None)
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default="ralph.toml", show_default=True)
def run_command(
    count: int | None,
    dry_run: bool,
    model: str | None,
    max_turns: int | None,
    timeout: float | None,
    label: str | None,
    issues: list[int],
    parallel: int | None,
    no_triage: bool,
    team: bool,
    live: bool | None,
    verbose: bool,
    config_value: str,
) -> None:
    _configure_logging(verbose)
    repo_root = Path.cwd().resolve()
    config = _read_config(_resolve_config_path(repo_root, config_value))
    _apply_worker_overrides(config, model=model, max_turns=max_turns, timeout=timeout)
    if label:
        config.queue.label_filter = label
    if parallel:
        config.workflow.parallel = parallel
    if live is not None:
        config.workflow.live = live
    config.workflow.dry_run = config.workflow.dry_run or dry_run
    config.workflow.no_triage = config.workflow.no_triage or no_triage
    config.workflow.team = config.workflow.team or team

    runtime = _load_runtime(repo_root, config)
    logger.info(
        "Ralph loop starting: count=%s, model=%s, max-turns=%s, timeout=%gs, dry-run=%s",
        count or (len(issues) if issues else config.workflow.count),
        config.worker.model,
        config.worker.max_turns,
        config.worker.timeout_seconds,
        config.workflow.dry_run,
    )
    try:
        tasks = asyncio.run(runtime.controller.run_once(issues=issues, count=count))
    except CapabilityDeniedError as exc:
        raise click.ClickException(_denial_message(exc)) from exc
    _echo_summary(tasks)
    logger.info("Ralph loop complete.")


@cli.command("review")
@click.option("--count", type=int, default=None, help="Reviews (defaults to the PR list size).")
@click.option("--prs", callback=_parse_numbers, default=None, help="Comma-separated PR numbers.")
@click.option("--team-review", is_flag=True, default=False)
@click.option("--watch", is_flag=True, default=False, help="Poll for new PRs until interrupted.")
@click.option("--poll-interval", type=float, default=None, help="Seconds between polls.")
@click.option("--agents-dir", default=None, help="Directory of custom reviewer definitions.")
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--model", default=None)
@click.option("--max-turns", type=int, default=None)
@click.option("--timeout", type=float, default=None)
@click.option("--live/--no-live", default=None)
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default="ralph.toml", show_default=True)
def review_command(
    count: int | None,
    prs: list[int],
    team_review: bool,
    watch: bool,
    poll_interval: float | None,
    agents_dir: str | None,
    dry_run: bool,
    model: str | None,
    max_turns: int | None,
    timeout: float | None,
    live: bool | None,
    verbose: bool,
    config_value: str,
) -> None:
    _configure_logging(verbose)
    repo_root = Path.cwd().resolve()
    config = _read_config(_resolve_config_path(repo_root, config_value))
    _apply_worker_overrides(config, model=model, max_turns=max_turns, timeout=timeout)
    if poll_interval:
        config.workflow.poll_interval_seconds = poll_interval
    if agents_dir:
        config.workflow.agents_dir = agents_dir
    if live is not None:
        config.workflow.live = live
    config.workflow.dry_run = config.workflow.dry_run or dry_run
    config.workflow.team_review = config.workflow.team_review or team_review
    config.workflow.watch = config.workflow.watch or watch

    runtime = _load_runtime(repo_root, config)
    try:
        if config.workflow.watch:
            logger.info(
                "Review loop starting in watch mode: poll=%gs, team-review=%s, reviewers=%d",
                config.workflow.poll_interval_seconds,
                config.workflow.team_review,
                len(runtime.reviewers),
            )
            handled = asyncio.run(_watch(runtime.controller))
            click.echo(f"Reviewed {handled} PR(s)")
            return
        tasks = asyncio.run(
            runtime.controller.run_once(prs=prs, count=count, reviews=True, pick_issues=False)
        )
    except CapabilityDeniedError as exc:
        raise click.ClickException(_denial_message(exc)) from exc
    _echo_summary(tasks)


@cli.group("seen")
def seen_group() -> None:
    """Inspect or edit the skip list and the reviewed-PR list."""


def _seen_set(config_value: str, reviewed: bool) -> SeenSet:
    repo_root = Path.cwd().resolve()
    config = _read_config(_resolve_config_path(repo_root, config_value))
    filename = config.queue.reviewed_file if reviewed else config.queue.skip_file
    return SeenSet(repo_root / filename)


@seen_group.command("list")
@click.option("--reviewed", is_flag=True, default=False, help="Use the reviewed-PR list.")
@click.option("--config", "config_value", default="ralph.toml", show_default=True)
def seen_list_command(reviewed: bool, config_value: str) -> None:
    seen = _seen_set(config_value, reviewed)
    try:
        members = seen.members()
    except RalphStateError as exc:
        raise click.ClickException(str(exc)) from exc
    if not members:
        click.echo(f"{seen.path.name} is empty")
        return
    for member in members:
        click.echo(member)


@seen_group.command("add")
@click.argument("identifier")
@click.option("--reason", default="", help="Logged alongside the entry.")
@click.option("--reviewed", is_flag=True, default=False)
@click.option("--config", "config_value", default="ralph.toml", show_default=True)
def seen_add_command(identifier: str, reason: str, reviewed: bool, config_value: str) -> None:
    seen = _seen_set(config_value, reviewed)
    try:
        added = seen.add(identifier, reason)
    except RalphStateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Added {identifier}" if added else f"{identifier} already present")


@seen_group.command("remove")
@click.argument("identifier")
@click.option("--reviewed", is_flag=True, default=False)
@click.option("--config", "config_value", default="ralph.toml", show_default=True)
def seen_remove_command(identifier: str, reviewed: bool, config_value: str) -> None:
    seen = _seen_set(config_value, reviewed)
    try:
        removed = seen.remove(identifier)
    except RalphStateError as exc:
        raise click.ClickException(str(exc)) from exc
    if not removed:
        raise click.ClickException(f"{identifier} not found in {seen.path.name}")
    click.echo(f"Removed {identifier}")


@cli.command("render")
@click.argument("output_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--agents-dir", default=None, help="Directory of custom reviewer definitions.")
@click.option("--color/--no-color", default=True)
@click.option("--config", "config_value", default="ralph.toml", show_default=True)
def render_command(
    output_file: Path, agents_dir: str | None, color: bool, config_value: str
) -> None:
    repo_root = Path.cwd().resolve()
    config = _read_config(_resolve_config_path(repo_root, config_value))
    if agents_dir:
        config.workflow.agents_dir = agents_dir
    registry, _ = _load_registry(repo_root, config)
    for line in render_file(output_file, registry=registry):
        click.echo(line.format(color=color), color=color)

