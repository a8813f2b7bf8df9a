"""Recover a structured verdict from free-form worker output.

The worker is asked to answer with a JSON object but frequently wraps it in prose
or a fenced block. Extraction tries progressively looser strategies and never
raises: an unusable answer is ``None`` and callers fall back to a safe default.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

Strategy = Callable[[str, str | None], dict[str, Any] | None]

FENCE_RE = re.compile(r"```json\s*\n(.*?)```", re.DOTALL)
NOT_RELEVANT_RE = re.compile(r'"relevant"\s*:\s*false')

DEFAULT_PLAN = "Implement the issue as described."
DEFAULT_CLOSE_REASON = "Issue appears to be no longer relevant based on codebase analysis."


def _as_object(raw: str, required_key: str | None = None) -> dict[str, Any] | None:
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, ValueError):
        return None
    if not isinstance(value, dict):
        return None
    if required_key is not None and required_key not in value:
        return None
    return value


def parse_whole(text: str, required_key: str | None = None) -> dict[str, Any] | None:
    return _as_object(text.strip(), required_key)


def parse_fenced(text: str, required_key: str | None = None) -> dict[str, Any] | None:
    for match in FENCE_RE.finditer(text):
        value = _as_object(match.group(1).strip(), required_key)
        if value is not None:
            return value
    return None


def _brace_pairs(text: str) -> dict[int, int]:
    """Map each balanced ``{`` to the index of its closing ``}`` in one pass."""
    pairs: dict[int, int] = {}
    opened: list[int] = []
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            # Quotes only open strings inside an object.
            in_string = bool(opened)
        elif char == "{":
            opened.append(index)
        elif char == "}" and opened:
            pairs[opened.pop()] = index
    return pairs


def scan_balanced(text: str, required_key: str | None = None) -> dict[str, Any] | None:
    pairs = _brace_pairs(text)
    for start in sorted(pairs):
        value = _as_object(text[start : pairs[start] + 1], required_key)
        if value is not None:
            return value
    return None


STRATEGIES: tuple[Strategy, ...] = (parse_whole, parse_fenced, scan_balanced)


def extract_result(text: str, required_key: str | None = "relevant") -> dict[str, Any] | None:
    if not text:
        return None
    for strategy in STRATEGIES:
        value = strategy(text, required_key)
        if value is not None:
            return value
    return None


@dataclass(frozen=True, slots=True)
class TriageVerdict:
    relevant: bool
    plan: str = DEFAULT_PLAN
    reason: str = ""
    extracted: bool = False

    @classmethod
    def from_output(cls, text: str) -> TriageVerdict:
        data = extract_result(text, required_key="relevant")
        if data is None:
            if NOT_RELEVANT_RE.search(text or ""):
                return cls(relevant=False, reason=DEFAULT_CLOSE_REASON)
            return cls(relevant=True)

        relevant = data.get("relevant", True) is not False
        plan = data.get("plan")
        reason = data.get("reason")
        return cls(
            relevant=relevant,
            plan=plan if isinstance(plan, str) and plan.strip() else DEFAULT_PLAN,
            reason=(
                reason
                if isinstance(reason, str) and reason.strip()
                else ("" if relevant else DEFAULT_CLOSE_REASON)
            ),
            extracted=True,
        )
