from ralph.phases.base import (
    PR_URL_PATTERN,
    REVIEW_DONE_PATTERN,
    PhaseAgent,
    PhaseRequest,
    load_prompt,
)
from ralph.phases.issue import ImplementPhase, TeamImplementPhase, TriagePhase
from ralph.phases.review import ReviewPhase, TeamReviewPhase
from ralph.phases.reviewers import (
    CustomReviewer,
    load_custom_reviewers,
    parse_frontmatter,
    resolve_agents_dir,
)

__all__ = [
    "PR_URL_PATTERN",
    "REVIEW_DONE_PATTERN",
    "CustomReviewer",
    "ImplementPhase",
    "PhaseAgent",
    "PhaseRequest",
    "ReviewPhase",
    "TeamImplementPhase",
    "TeamReviewPhase",
    "TriagePhase",
    "load_custom_reviewers",
    "load_prompt",
    "parse_frontmatter",
    "resolve_agents_dir",
]
