from __future__ import annotations

from ralph.phases.base import PR_URL_PATTERN, PhaseAgent
from ralph.roles import AgentRole


class TriagePhase(PhaseAgent):
    phase = "triage"
    role = AgentRole.RESEARCHER
    prompt_file = "triage.md"
    fallback_prompt = """
You are triaging GitHub issue #$issue_number: $issue_title

$issue_body

Output ONLY a JSON object: {"relevant": <bool>, "reason": "<why>", "plan": "<implementation plan>"}
"""


class ImplementPhase(PhaseAgent):
    phase = "implement"
    role = AgentRole.IMPLEMENTER
    prompt_file = "implement.md"
    fallback_prompt = """
Implement GitHub issue #$issue_number ($issue_title) in the worktree at $worktree_path
on branch $branch, following this plan:

$plan

Push the branch and open a pull request whose body contains "Closes #$issue_number".
"""
    done_pattern = PR_URL_PATTERN
    done_grace_seconds = 120.0


class TeamImplementPhase(ImplementPhase):
    role = AgentRole.LEAD
    prompt_file = "team_implement.md"
    done_grace_seconds = 180.0
    team = True
