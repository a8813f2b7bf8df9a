"""Classify the worker's stream-json output into role-attributed display lines.

The worker writes one JSON event per line to its stdout sink while this module
reads the same file concurrently, so a trailing line may be incomplete and any
line may be garbage. Both are skipped rather than treated as errors.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import IO, Any

import click

from ralph.roles import AgentRole, Role, RoleRegistry, SessionRoles, role_label, role_style

logger = logging.getLogger(__name__)

ROLE_WIDTH = 14
ICON_STYLES: dict[str, dict[str, Any]] = {
    "=": {"bold": True},
    "i": {"dim": True},
    ">": {"fg": "bright_cyan"},
    "+": {"bold": True},
    "#": {"bold": True},
    "$": {"dim": True},
    "@": {"dim": True},
    "*": {"bold": True},
    "~": {"dim": True},
    "!": {"fg": "red"},
}
TASK_TOOLS = {"TaskCreate", "TaskUpdate", "TaskList", "TaskGet"}
SEARCH_TOOLS = {"Read", "Glob", "Grep"}
EDIT_TOOLS = {"Edit", "MultiEdit", "Write"}


class EventKind(StrEnum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL_RESULT = "tool_result"
    DELTA = "delta"
    RESULT = "result"
    OTHER = "other"


@dataclass(frozen=True, slots=True)
class StreamEvent:
    kind: EventKind
    payload: dict[str, Any]

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> StreamEvent:
        event_type = str(payload.get("type", ""))
        if event_type == "stream_event" and isinstance(payload.get("event"), dict):
            inner = payload["event"]
            if inner.get("type") == "content_block_delta":
                return cls(EventKind.DELTA, inner)
            return cls(EventKind.OTHER, inner)
        kinds = {
            "result": EventKind.RESULT,
            "system": EventKind.SYSTEM,
            "assistant": EventKind.ASSISTANT,
            "user": EventKind.USER,
            "tool_result": EventKind.TOOL_RESULT,
            "tool": EventKind.TOOL_RESULT,
            "content_block_delta": EventKind.DELTA,
        }
        return cls(kinds.get(event_type, EventKind.OTHER), payload)


def parse_event(line: str) -> StreamEvent | None:
    line = line.strip()
    if not line:
        return None
    try:
        payload = json.loads(line)
    except (json.JSONDecodeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    return StreamEvent.from_payload(payload)


def truncate(text: str, maxlen: int = 120) -> str:
    text = text.replace("\n", " ").strip()
    return text[:maxlen] + "..." if len(text) > maxlen else text


@dataclass(frozen=True, slots=True)
class RenderedLine:
    role: Role
    icon: str
    text: str
    accent: Role | None = None
    at: datetime = field(default_factory=datetime.now)

    def format(self, *, color: bool = True) -> str:
        stamp = self.at.strftime("%H:%M:%S")
        label = role_label(self.role).ljust(ROLE_WIDTH)
        if not color:
            return f"{stamp} {label} {self.icon} {self.text}"
        text = self.text
        if self.accent is not None:
            text = click.style(text, **role_style(self.accent))
        icon = click.style(self.icon, **ICON_STYLES.get(self.icon, {}))
        return (
            f"{click.style(stamp, dim=True)} "
            f"{click.style(label, **role_style(self.role))} {icon} {text}"
        )


def _content_text(content: Any) -> str:
    if isinstance(content, list):
        return " ".join(
            str(block.get("text", ""))
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        )
    return str(content)


def _looks_failed(text: str) -> bool:
    lowered = text.lower()
    return "error" in lowered or "failed" in lowered


class EventClassifier:
    """Stateful event → display line mapping for one invocation.

    Role attribution depends on earlier events (a named assistant message switches
    the current role for the unnamed content that follows), so events must be fed
    in arrival order and a fresh classifier is used per invocation.
    """

    TEXT_LINES = 3
    TEXT_WIDTH = 120
    COMMAND_WIDTH = 100
    ERROR_WIDTH = 200
    MIN_DELTA_LENGTH = 40

    def __init__(self, registry: RoleRegistry | None = None) -> None:
        self.registry = registry or RoleRegistry()
        self.sessions = SessionRoles(self.registry)
        self.current_role: Role = AgentRole.LEAD

    def classify(self, event: StreamEvent) -> list[RenderedLine]:
        handlers: dict[EventKind, Callable[[dict[str, Any]], list[RenderedLine]]] = {
            EventKind.RESULT: self._on_result,
            EventKind.SYSTEM: self._on_system,
            EventKind.ASSISTANT: self._on_assistant,
            EventKind.USER: self._on_user,
            EventKind.TOOL_RESULT: self._on_tool_result,
            EventKind.DELTA: self._on_delta,
        }
        handler = handlers.get(event.kind)
        if handler is None:
            return []
        return handler(event.payload)

    def _line(self, icon: str, text: str, *, accent: Role | None = None) -> RenderedLine:
        return RenderedLine(role=self.current_role, icon=icon, text=text, accent=accent)

    def _on_result(self, payload: dict[str, Any]) -> list[RenderedLine]:
        stop_reason = payload.get("stop_reason") or "end_turn"
        return [RenderedLine(AgentRole.LEAD, "=", f"Session ended (reason: {stop_reason})")]

    def _on_system(self, payload: dict[str, Any]) -> list[RenderedLine]:
        text = payload.get("text") or payload.get("message") or payload.get("subtype")
        if not text:
            return []
        return [RenderedLine(AgentRole.LEAD, "i", truncate(str(text), self.TEXT_WIDTH))]

    def _on_assistant(self, payload: dict[str, Any]) -> list[RenderedLine]:
        message = payload.get("message")
        if not isinstance(message, dict):
            message = payload
        agent_name = (
            payload.get("agent_name")
            or payload.get("agent")
            or payload.get("session_name")
            or message.get("agent_name")
            or message.get("agent")
        )
        if isinstance(agent_name, str) and agent_name:
            self.current_role = self.sessions.bind(agent_name)

        content = message.get("content", [])
        if isinstance(content, str):
            content = [content]
        if not isinstance(content, list):
            return []
        lines: list[RenderedLine] = []
        for block in content:
            lines.extend(self._render_block(block))
        return lines

    def _render_block(self, block: Any) -> list[RenderedLine]:
        if isinstance(block, str):
            return [self._line(" ", truncate(block, self.TEXT_WIDTH))] if block.strip() else []
        if not isinstance(block, dict):
            return []
        block_type = block.get("type")
        if block_type == "text":
            return self._render_text(str(block.get("text", "")))
        if block_type == "tool_use":
            tool_input = block.get("input")
            if not isinstance(tool_input, dict):
                tool_input = {}
            return [self._render_tool(str(block.get("name", "?")), tool_input)]
        return []

    def _render_text(self, text: str) -> list[RenderedLine]:
        text = text.strip()
        if not text:
            return []
        if "SendMessage" in text or "sending message" in text.lower():
            return [self._line(">", truncate(text, self.TEXT_WIDTH))]
        lines = [line for line in text.splitlines() if line.strip()][: self.TEXT_LINES]
        return [self._line(" ", truncate(line, self.TEXT_WIDTH)) for line in lines]

    def _render_tool(self, name: str, tool_input: dict[str, Any]) -> RenderedLine:
        if name == "Task":
            description = str(tool_input.get("description", ""))
            spawned = str(tool_input.get("name", ""))
            if spawned:
                role = self.sessions.bind(spawned, hint=description)
            else:
                role = self.registry.resolve(description)
            return self._line("+", f"Spawning teammate: {spawned or description}", accent=role)
        if name == "SendMessage":
            recipient = tool_input.get("recipient", "?")
            summary = str(tool_input.get("summary", ""))
            kind = tool_input.get("type", "message")
            sender = role_label(self.current_role)
            return self._line(">", f"{sender} -> {recipient} ({kind}): {truncate(summary)}")
        if name in TASK_TOOLS:
            detail = str(tool_input.get("subject") or tool_input.get("status") or "")
            return self._line("#", f"{name}: {truncate(detail)}" if detail else name)
        if name == "Bash":
            command = str(tool_input.get("command", ""))
            return self._line("$", truncate(command, self.COMMAND_WIDTH))
        if name in SEARCH_TOOLS:
            target = (
                tool_input.get("file_path")
                or tool_input.get("pattern")
                or tool_input.get("path")
                or ""
            )
            return self._line("@", f"{name}: {target}")
        if name in EDIT_TOOLS:
            return self._line("*", f"{name}: {tool_input.get('file_path', '')}")
        return self._line("~", name)

    def _on_tool_result(self, payload: dict[str, Any]) -> list[RenderedLine]:
        text = _content_text(payload.get("content", payload.get("result", "")))
        if not _looks_failed(text):
            return []
        return [self._line("!", truncate(text, self.ERROR_WIDTH))]

    def _on_user(self, payload: dict[str, Any]) -> list[RenderedLine]:
        message = payload.get("message")
        if not isinstance(message, dict) or not isinstance(message.get("content"), list):
            return []
        lines: list[RenderedLine] = []
        for block in message["content"]:
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            text = _content_text(block.get("content", ""))
            if block.get("is_error") or _looks_failed(text):
                lines.append(self._line("!", truncate(text, self.ERROR_WIDTH)))
        return lines

    def _on_delta(self, payload: dict[str, Any]) -> list[RenderedLine]:
        delta = payload.get("delta")
        text = delta.get("text", "") if isinstance(delta, dict) else ""
        if not isinstance(text, str) or len(text) <= self.MIN_DELTA_LENGTH:
            return []
        return [self._line(" ", truncate(text, self.TEXT_WIDTH))]


class LineTail:
    """Incremental reader of complete lines appended to a file.

    A missing or unreadable file reads as empty. The trailing partial line is held
    back until its newline arrives, or until ``final=True``.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.offset = 0
        self._partial = b""

    def read_lines(self, *, final: bool = False) -> list[str]:
        try:
            with self.path.open("rb") as handle:
                handle.seek(self.offset)
                chunk = handle.read()
        except OSError:
            chunk = b""
        self.offset += len(chunk)
        pieces = (self._partial + chunk).split(b"\n")
        self._partial = pieces.pop()
        if final and self._partial:
            pieces.append(self._partial)
            self._partial = b""
        return [piece.decode("utf-8", errors="replace").rstrip("\r") for piece in pieces]


def follow_lines(
    path: Path,
    stop: Callable[[], bool],
    *,
    poll_interval: float = 0.25,
) -> Iterator[str]:
    tail = LineTail(path)
    while True:
        lines = tail.read_lines()
        yield from lines
        if stop():
            yield from tail.read_lines(final=True)
            return
        if not lines:
            time.sleep(poll_interval)


def render_lines(
    lines: Iterable[str], classifier: EventClassifier
) -> Iterator[RenderedLine]:
    for line in lines:
        event = parse_event(line)
        if event is None:
            continue
        yield from classifier.classify(event)


class LiveRenderer:
    """Tails an invocation's raw output and writes the rendered live view."""

    def __init__(
        self,
        source: Path,
        target: Path | None = None,
        *,
        registry: RoleRegistry | None = None,
        echo: bool = False,
        poll_interval: float = 0.25,
    ) -> None:
        self.source = source
        self.target = target
        self.classifier = EventClassifier(registry)
        self.echo = echo
        self.poll_interval = poll_interval
        self.lines_written = 0

    async def run(self, stop: asyncio.Event) -> int:
        tail = LineTail(self.source)
        sink = self._open_target()
        try:
            while True:
                stopping = stop.is_set()
                self._emit(tail.read_lines(final=stopping), sink)
                if stopping:
                    return self.lines_written
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
                except TimeoutError:
                    pass
        finally:
            if sink is not None:
                sink.close()

    def _open_target(self) -> IO[str] | None:
        if self.target is None:
            return None
        try:
            return self.target.open("w", encoding="utf-8", buffering=1)
        except OSError as exc:
            logger.warning("Live view unavailable (%s): %s", self.target, exc)
            return None

    def _emit(self, raw_lines: list[str], sink: IO[str] | None) -> None:
        for rendered in render_lines(raw_lines, self.classifier):
            formatted = rendered.format(color=True)
            if sink is not None:
                sink.write(formatted + "\n")
            if self.echo:
                click.echo(formatted, err=True)
            self.lines_written += 1


def render_file(
    path: Path,
    *,
    registry: RoleRegistry | None = None,
    stop: Callable[[], bool] | None = None,
) -> Iterator[RenderedLine]:
    """Replay a raw output file, or keep tailing it until ``stop()`` is true."""
    return render_lines(follow_lines(path, stop or (lambda: True)), EventClassifier(registry))
