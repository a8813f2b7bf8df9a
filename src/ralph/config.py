from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path

DEFAULT_ALLOWED_TOOLS = [
    "Read",
    "Edit",
    "Write",
    "Grep",
    "Glob",
    "Bash(git *)",
    "Bash(gh *)",
    "Bash(npm *)",
    "Bash(npx *)",
    "Bash(cmake *)",
    "Bash(cd *)",
    "Bash(ls *)",
    "Bash(mkdir *)",
    "Bash(rm *)",
]
DEFAULT_TEAM_TOOLS = ["Task", "TaskCreate", "TaskUpdate", "TaskList", "TaskGet"]
DEFAULT_DENIAL_PATTERNS = [
    "Tool call was denied",
    "tool use was rejected",
    "allowedTools.*not available",
    "tool is not allowed",
    "rejected tool call",
    "tool was blocked by policy",
]
DEFAULT_MAX_TURNS_PATTERNS = [
    "reached the maximum number of turns",
    "max_turns_reached",
    r"Maximum turns \([0-9]+\) reached",
]


@dataclass(slots=True)
class WorkerConfig:
    binary: str = "claude"
    model: str = "opus"
    max_turns: int = 75
    timeout_seconds: float = 1800.0
    poll_interval_seconds: float = 2.0
    kill_grace_seconds: float = 5.0
    teammate_mode: str = "in-process"
    allowed_tools: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_TOOLS))
    team_tools: list[str] = field(default_factory=lambda: list(DEFAULT_TEAM_TOOLS))
    denial_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_DENIAL_PATTERNS))
    max_turns_patterns: list[str] = field(
        default_factory=lambda: list(DEFAULT_MAX_TURNS_PATTERNS)
    )


@dataclass(slots=True)
class QueueConfig:
    label_priority: list[str] = field(
        default_factory=lambda: ["bug", "testing", "enhancement", "documentation"]
    )
    label_filter: str = ""
    pick_limit: int = 5
    review_limit: int = 20
    skip_file: str = ".ralph-skip"
    reviewed_file: str = ".ralph-reviewed-prs"


@dataclass(slots=True)
class WorkflowConfig:
    count: int = 1
    dry_run: bool = False
    parallel: int = 1
    no_triage: bool = False
    team: bool = False
    team_review: bool = False
    watch: bool = False
    poll_interval_seconds: float = 60.0
    agents_dir: str = ""
    live: bool = True


@dataclass(slots=True)
class RepoConfig:
    remote: str = "origin"
    base_branch: str = "main"
    branch_prefix: str = "feature/"
    worktrees_dir: str = ".worktrees"
    log_dir: str = ".ralph-logs"


class ConfigError(ValueError):
    """Raised when a config file holds sections or keys ralph does not know."""


SECTIONS = {
    "worker": WorkerConfig,
    "queue": QueueConfig,
    "workflow": WorkflowConfig,
    "repo": RepoConfig,
}


def _section(name: str, section_cls: type, values: object) -> object:
    if not isinstance(values, dict):
        raise ConfigError(f"Config section [{name}] must be a table")
    known = {item.name for item in fields(section_cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigError(f"Unknown key(s) in [{name}]: {', '.join(unknown)}")
    return section_cls(**values)


@dataclass(slots=True)
class RalphConfig:
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    repo: RepoConfig = field(default_factory=RepoConfig)

    @classmethod
    def default(cls) -> RalphConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> RalphConfig:
        unknown = sorted(set(data) - set(SECTIONS))
        if unknown:
            raise ConfigError(f"Unknown config section(s): {', '.join(unknown)}")
        return cls(
            **{
                name: _section(name, section_cls, data.get(name, {}))
                for name, section_cls in SECTIONS.items()
            }
        )

    def to_dict(self) -> dict:
        return {
            "worker": {
                "binary": self.worker.binary,
                "model": self.worker.model,
                "max_turns": self.worker.max_turns,
                "timeout_seconds": self.worker.timeout_seconds,
                "poll_interval_seconds": self.worker.poll_interval_seconds,
                "kill_grace_seconds": self.worker.kill_grace_seconds,
                "teammate_mode": self.worker.teammate_mode,
                "allowed_tools": list(self.worker.allowed_tools),
                "team_tools": list(self.worker.team_tools),
                "denial_patterns": list(self.worker.denial_patterns),
                "max_turns_patterns": list(self.worker.max_turns_patterns),
            },
            "queue": {
                "label_priority": list(self.queue.label_priority),
                "label_filter": self.queue.label_filter,
                "pick_limit": self.queue.pick_limit,
                "review_limit": self.queue.review_limit,
                "skip_file": self.queue.skip_file,
                "reviewed_file": self.queue.reviewed_file,
            },
            "workflow": {
                "count": self.workflow.count,
                "dry_run": self.workflow.dry_run,
                "parallel": self.workflow.parallel,
                "no_triage": self.workflow.no_triage,
                "team": self.workflow.team,
                "team_review": self.workflow.team_review,
                "watch": self.workflow.watch,
                "poll_interval_seconds": self.workflow.poll_interval_seconds,
                "agents_dir": self.workflow.agents_dir,
                "live": self.workflow.live,
            },
            "repo": {
                "remote": self.repo.remote,
                "base_branch": self.repo.base_branch,
                "branch_prefix": self.repo.branch_prefix,
                "worktrees_dir": self.repo.worktrees_dir,
                "log_dir": self.repo.log_dir,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: RalphConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["worker", "queue", "workflow", "repo"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> RalphConfig:
    if not path.exists():
        return RalphConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"{path}: {exc}") from exc
    try:
        return RalphConfig.from_dict(data)
    except ConfigError as exc:
        raise ConfigError(f"{path}: {exc}") from exc


def save_config(path: Path, config: RalphConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
