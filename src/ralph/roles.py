from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class AgentRole(StrEnum):
    LEAD = "lead"
    RESEARCHER = "researcher"
    IMPLEMENTER = "implementer"
    TESTER = "tester"
    SECURITY = "security"
    QUALITY = "quality"
    ARCHITECT = "architect"
    REVIEWER = "reviewer"
    UNKNOWN = "unknown"


# Frontmatter colour names accepted for custom reviewers, mapped onto click colours.
CUSTOM_COLORS = {
    "yellow": "yellow",
    "orange": "yellow",
    "pink": "magenta",
    "magenta": "magenta",
    "red": "red",
    "blue": "blue",
    "green": "green",
    "cyan": "cyan",
    "white": "white",
}


@dataclass(frozen=True, slots=True)
class CustomRole:
    name: str
    color: str = "cyan"
    keywords: tuple[str, ...] = ()

    @classmethod
    def from_name(cls, name: str, color: str = "cyan") -> CustomRole:
        lowered = name.strip().lower()
        key = lowered.replace("-", "_")
        keywords = tuple(dict.fromkeys([lowered, key, lowered.replace("-", " ")]))
        return cls(name=name.strip(), color=color.strip().lower(), keywords=keywords)

    @property
    def key(self) -> str:
        return self.name.lower().replace("-", "_")


Role = AgentRole | CustomRole

BUILTIN_KEYWORDS: tuple[tuple[AgentRole, tuple[str, ...]], ...] = (
    (AgentRole.SECURITY, ("security",)),
    (AgentRole.QUALITY, ("quality",)),
    (AgentRole.ARCHITECT, ("architect",)),
    (AgentRole.RESEARCHER, ("research",)),
    (AgentRole.IMPLEMENTER, ("implement",)),
    (AgentRole.TESTER, ("tester", "test-runner", "test_runner")),
    (AgentRole.REVIEWER, ("review",)),
)

ROLE_STYLES: dict[AgentRole, dict[str, Any]] = {
    AgentRole.LEAD: {"fg": "white", "bold": True},
    AgentRole.RESEARCHER: {"fg": "cyan"},
    AgentRole.IMPLEMENTER: {"fg": "green"},
    AgentRole.TESTER: {"fg": "yellow"},
    AgentRole.SECURITY: {"fg": "red"},
    AgentRole.QUALITY: {"fg": "blue"},
    AgentRole.ARCHITECT: {"fg": "magenta"},
    AgentRole.REVIEWER: {"fg": "bright_blue"},
    AgentRole.UNKNOWN: {"fg": "white", "dim": True},
}


def role_label(role: Role) -> str:
    if isinstance(role, CustomRole):
        return role.name
    return role.value.capitalize()


def role_style(role: Role) -> dict[str, Any]:
    if isinstance(role, CustomRole):
        color = CUSTOM_COLORS.get(role.color)
        if color is None:
            return dict(ROLE_STYLES[AgentRole.UNKNOWN])
        return {"fg": color}
    return dict(ROLE_STYLES[role])


class RoleRegistry:
    """Ordered keyword table used to infer a role from a free-text agent name.

    Built-in roles come first; custom roles are appended in registration order.
    Matching is case-insensitive substring search and the first hit wins.
    """

    def __init__(self, custom_roles: Iterable[CustomRole] = ()) -> None:
        self._entries: list[tuple[Role, tuple[str, ...]]] = list(BUILTIN_KEYWORDS)
        for role in custom_roles:
            self.register(role)

    def register(self, role: CustomRole) -> None:
        keywords = role.keywords or CustomRole.from_name(role.name).keywords
        self._entries.append((role, tuple(keyword.lower() for keyword in keywords)))

    @property
    def custom_roles(self) -> list[CustomRole]:
        return [role for role, _ in self._entries if isinstance(role, CustomRole)]

    def detect(self, text: str | None) -> Role | None:
        if not text:
            return None
        lowered = text.lower()
        for role, keywords in self._entries:
            if any(keyword in lowered for keyword in keywords):
                return role
        return None

    def resolve(self, text: str | None) -> Role:
        return self.detect(text) or AgentRole.UNKNOWN


class SessionRoles:
    """Session/agent name to role binding for one invocation.

    Bindings only grow: once a name is bound it keeps its role.
    """

    def __init__(self, registry: RoleRegistry) -> None:
        self.registry = registry
        self._bindings: dict[str, Role] = {}

    def bind(self, name: str, hint: str | None = None) -> Role:
        existing = self._bindings.get(name)
        if existing is not None:
            return existing
        role = self.registry.detect(name) or self.registry.resolve(hint)
        self._bindings[name] = role
        return role

    def get(self, name: str) -> Role | None:
        return self._bindings.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._bindings

    def __len__(self) -> int:
        return len(self._bindings)

    def __iter__(self) -> Iterator[str]:
        return iter(self._bindings)
