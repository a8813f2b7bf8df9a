from ralph.state.seen import RalphStateError, SeenSet
from ralph.state.worktrees import (
    ResourceUnavailableError,
    Workspace,
    WorkspaceManager,
    feature_name,
)

__all__ = [
    "RalphStateError",
    "ResourceUnavailableError",
    "SeenSet",
    "Workspace",
    "WorkspaceManager",
    "feature_name",
]
