from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from ralph.roles import CustomRole, RoleRegistry

logger = logging.getLogger(__name__)

DEFAULT_AGENTS_DIR = Path(".claude") / "agents"


@dataclass(slots=True)
class CustomReviewer:
    name: str
    model: str = "opus"
    color: str = "cyan"
    instructions: str = ""
    source: Path | None = None

    @property
    def role(self) -> CustomRole:
        return CustomRole.from_name(self.name, self.color)


def parse_frontmatter(content: str) -> tuple[dict[str, Any], str]:
    """Split a ``---`` delimited YAML header from a markdown body."""
    if not content.startswith("---"):
        return {}, content
    parts = content.split("---", 2)
    if len(parts) < 3:
        return {}, content
    try:
        metadata = yaml.safe_load(parts[1]) or {}
    except yaml.YAMLError as exc:
        logger.warning("Ignoring malformed frontmatter: %s", exc)
        return {}, parts[2].lstrip("\n")
    if not isinstance(metadata, dict):
        metadata = {}
    return metadata, parts[2].lstrip("\n")


def _field(metadata: dict[str, Any], key: str, default: str) -> str:
    value = metadata.get(key)
    if value is None or not str(value).strip():
        return default
    return str(value).strip()


def load_reviewer(path: Path) -> CustomReviewer:
    metadata, body = parse_frontmatter(path.read_text(encoding="utf-8"))
    return CustomReviewer(
        name=_field(metadata, "name", path.stem),
        model=_field(metadata, "model", "opus"),
        color=_field(metadata, "color", "cyan"),
        instructions=body.strip(),
        source=path,
    )


def resolve_agents_dir(agents_dir: str | Path | None, cwd: Path) -> Path | None:
    """Explicit directory, else ``<cwd>/.claude/agents`` when it exists."""
    if agents_dir:
        path = Path(agents_dir).expanduser()
        if not path.is_absolute():
            path = cwd / path
        if not path.is_dir():
            raise FileNotFoundError(f"Agents directory not found: {path}")
        return path
    discovered = cwd / DEFAULT_AGENTS_DIR
    if discovered.is_dir():
        logger.info("Auto-discovered agents directory: %s", discovered)
        return discovered
    return None


def load_custom_reviewers(
    directory: Path | None, registry: RoleRegistry | None = None
) -> list[CustomReviewer]:
    if directory is None:
        return []
    reviewers: list[CustomReviewer] = []
    for path in sorted(directory.glob("*.md")):
        if not path.is_file():
            continue
        reviewer = load_reviewer(path)
        reviewers.append(reviewer)
        if registry is not None:
            registry.register(reviewer.role)
        logger.info(
            "Loaded agent: %s (model=%s, color=%s)", reviewer.name, reviewer.model, reviewer.color
        )
    if not reviewers:
        logger.warning("No .md files found in %s", directory)
    else:
        logger.info("Loaded %d custom agent(s) from %s", len(reviewers), directory)
    return reviewers
