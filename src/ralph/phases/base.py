from __future__ import annotations

from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from string import Template
from typing import Any

from ralph.config import WorkerConfig
from ralph.roles import AgentRole, Role
from ralph.supervisor import SupervisionConfig

PR_URL_PATTERN = r"github\.com/.*/pull/[0-9]"
REVIEW_DONE_PATTERN = (
    r"gh pr merge|gh pr close|Approved by|--approve|successfully merged|pull request.*closed"
)


def load_prompt(filename: str, fallback: str = "") -> str:
    try:
        prompt_path = resources.files("ralph.prompts").joinpath(filename)
        return prompt_path.read_text(encoding="utf-8").strip()
    except (FileNotFoundError, ModuleNotFoundError):
        return fallback.strip()


@dataclass(slots=True)
class PhaseRequest:
    phase: str
    prompt: str
    config: SupervisionConfig


class PhaseAgent:
    """One kind of worker invocation: its instructions, tools and completion signal."""

    phase: str = "phase"
    role: Role = AgentRole.LEAD
    prompt_file: str | None = None
    fallback_prompt: str = ""
    done_pattern: str | None = None
    done_grace_seconds: float = 0.0
    team: bool = False

    def __init__(
        self,
        worker: WorkerConfig,
        *,
        model: str | None = None,
        max_turns: int | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.worker = worker
        self.model = model or worker.model
        self.max_turns = max_turns or worker.max_turns
        self.timeout_seconds = timeout_seconds or worker.timeout_seconds
        self.template = Template(self._load_prompt())

    def _load_prompt(self) -> str:
        if not self.prompt_file:
            return self.fallback_prompt.strip()
        return load_prompt(self.prompt_file, self.fallback_prompt)

    def template_values(self) -> dict[str, Any]:
        values: dict[str, Any] = {
            "headless": load_prompt("headless.md"),
            "model_title": self.model[:1].upper() + self.model[1:],
        }
        if self.team:
            values["team_rules"] = load_prompt("team_rules.md")
        return values

    def render(self, **values: Any) -> str:
        fields = self.template_values()
        fields.update({key: "" if value is None else value for key, value in values.items()})
        return self.template.safe_substitute(fields).strip()

    def allowed_tools(self) -> list[str]:
        tools = list(self.worker.allowed_tools)
        if self.team:
            tools.extend(tool for tool in self.worker.team_tools if tool not in tools)
        return tools

    def extra_args(self) -> list[str]:
        if self.team and self.worker.teammate_mode:
            return ["--teammate-mode", self.worker.teammate_mode]
        return []

    def supervision(self, *, label: str, cwd: Path | None = None) -> SupervisionConfig:
        return SupervisionConfig.from_worker(
            self.worker,
            model=self.model,
            max_turns=self.max_turns,
            timeout_seconds=self.timeout_seconds,
            allowed_tools=self.allowed_tools(),
            done_pattern=self.done_pattern,
            done_grace_seconds=self.done_grace_seconds,
            extra_args=self.extra_args(),
            cwd=cwd,
            label=label,
        )

    def build(self, *, label: str, cwd: Path | None = None, **values: Any) -> PhaseRequest:
        return PhaseRequest(
            phase=self.phase,
            prompt=self.render(**values),
            config=self.supervision(label=label, cwd=cwd),
        )
