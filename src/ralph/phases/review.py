from __future__ import annotations

from typing import Any

from ralph.config import WorkerConfig
from ralph.phases.base import REVIEW_DONE_PATTERN, PhaseAgent, load_prompt
from ralph.phases.reviewers import CustomReviewer
from ralph.roles import AgentRole


class ReviewPhase(PhaseAgent):
    phase = "review"
    role = AgentRole.REVIEWER
    prompt_file = "review.md"
    fallback_prompt = """
Review pull request #$pr_number. Approve and merge it with
`gh pr merge $pr_number --squash --delete-branch` if it is good, fix it first if
you can, or close it with an explanation if it is fundamentally broken.
"""
    done_pattern = REVIEW_DONE_PATTERN
    done_grace_seconds = 90.0


class TeamReviewPhase(ReviewPhase):
    role = AgentRole.LEAD
    prompt_file = "team_review.md"
    done_grace_seconds = 120.0
    team = True

    def __init__(
        self,
        worker: WorkerConfig,
        *,
        reviewers: list[CustomReviewer] | None = None,
        model: str | None = None,
        max_turns: int | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        super().__init__(
            worker, model=model, max_turns=max_turns, timeout_seconds=timeout_seconds
        )
        self.reviewers = list(reviewers or [])

    def reviewer_section(self, model_title: str) -> str:
        if not self.reviewers:
            return load_prompt("default_reviewers.md").replace("$model_title", model_title)
        lines = ["## Teammates to Spawn", ""]
        for index, reviewer in enumerate(self.reviewers, start=1):
            model = reviewer.model[:1].upper() + reviewer.model[1:]
            lines.extend(
                [
                    f"### {index}. {reviewer.name} ({model})",
                    "",
                    "<agent-instructions>",
                    reviewer.instructions,
                    "</agent-instructions>",
                    "",
                ]
            )
        return "\n".join(lines).rstrip()

    def template_values(self) -> dict[str, Any]:
        values = super().template_values()
        values["reviewers"] = self.reviewer_section(values["model_title"])
        return values
