from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
import signal
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from ralph.backends.base import (
    CapabilityDeniedError,
    InvocationFailedError,
    InvocationStatus,
    InvocationTimeoutError,
    MaxTurnsReachedError,
    WorkerBackend,
)
from ralph.config import DEFAULT_DENIAL_PATTERNS, DEFAULT_MAX_TURNS_PATTERNS, WorkerConfig
from ralph.roles import RoleRegistry
from ralph.stream import EventKind, LineTail, LiveRenderer, parse_event

logger = logging.getLogger(__name__)

InvocationEventHook = Callable[[dict[str, Any]], None]

MAX_DENIAL_LINES = 5


@dataclass(slots=True)
class SupervisionConfig:
    model: str | None = None
    max_turns: int | None = None
    timeout_seconds: float = 1800.0
    allowed_tools: list[str] = field(default_factory=list)
    done_pattern: str | None = None
    done_grace_seconds: float = 0.0
    poll_interval_seconds: float = 2.0
    kill_grace_seconds: float = 5.0
    cwd: Path | None = None
    extra_args: list[str] = field(default_factory=list)
    label: str = "worker"
    denial_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_DENIAL_PATTERNS))
    max_turns_patterns: list[str] = field(
        default_factory=lambda: list(DEFAULT_MAX_TURNS_PATTERNS)
    )

    @classmethod
    def from_worker(cls, worker: WorkerConfig, **overrides: Any) -> SupervisionConfig:
        values: dict[str, Any] = {
            "model": worker.model,
            "max_turns": worker.max_turns,
            "timeout_seconds": worker.timeout_seconds,
            "allowed_tools": list(worker.allowed_tools),
            "poll_interval_seconds": worker.poll_interval_seconds,
            "kill_grace_seconds": worker.kill_grace_seconds,
            "denial_patterns": list(worker.denial_patterns),
            "max_turns_patterns": list(worker.max_turns_patterns),
        }
        values.update(overrides)
        return cls(**values)


@dataclass(slots=True)
class InvocationResult:
    status: InvocationStatus
    exit_code: int | None
    stdout_path: Path
    stderr_path: Path
    live_path: Path
    started_at: datetime
    duration_seconds: float
    timeout_seconds: float
    max_turns: int | None = None
    allowed_tools: list[str] = field(default_factory=list)
    result_event: dict[str, Any] | None = None
    denial_lines: list[str] = field(default_factory=list)
    soft_complete: bool = False

    @property
    def ok(self) -> bool:
        return self.status == InvocationStatus.COMPLETED

    @property
    def result_text(self) -> str:
        if self.result_event is not None and isinstance(self.result_event.get("result"), str):
            return self.result_event["result"]
        try:
            return self.stdout_path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return ""

    def raise_for_status(self) -> None:
        if self.status == InvocationStatus.COMPLETED:
            return
        if self.status == InvocationStatus.DENIED:
            raise CapabilityDeniedError(
                "Worker requested a tool outside the allowlist; "
                "update the allowed tools and re-run.",
                matched_lines=self.denial_lines,
                exit_code=self.exit_code,
                output_path=self.stdout_path,
            )
        if self.status == InvocationStatus.TIMED_OUT:
            raise InvocationTimeoutError(
                f"Worker timed out after {self.timeout_seconds:g}s",
                exit_code=self.exit_code,
                output_path=self.stdout_path,
            )
        if self.status == InvocationStatus.MAX_TURNS:
            raise MaxTurnsReachedError(
                f"Worker reached its turn budget ({self.max_turns})",
                exit_code=self.exit_code,
                output_path=self.stdout_path,
                retriable=False,
            )
        raise InvocationFailedError(
            f"Worker exited with code {self.exit_code}",
            exit_code=self.exit_code,
            output_path=self.stdout_path,
        )


def _compile_any(patterns: list[str]) -> re.Pattern[str] | None:
    if not patterns:
        return None
    return re.compile("|".join(f"(?:{pattern})" for pattern in patterns))


def _is_max_turns_event(event: dict[str, Any]) -> bool:
    return event.get("stop_reason") == "max_turns" or event.get("subtype") == "error_max_turns"


class _OutputScanner:
    """Single-pass scan of both sinks for the signals the supervisor acts on."""

    def __init__(self, stdout_path: Path, stderr_path: Path, config: SupervisionConfig) -> None:
        self.stdout = LineTail(stdout_path)
        self.stderr = LineTail(stderr_path)
        self.denial = _compile_any(config.denial_patterns)
        self.max_turns = _compile_any(config.max_turns_patterns)
        self.done = re.compile(config.done_pattern) if config.done_pattern else None
        self.denial_lines: list[str] = []
        self.denied = False
        self.max_turns_hit = False
        self.done_seen = False
        self.result_event: dict[str, Any] | None = None

    def poll(self, *, final: bool = False) -> None:
        for line in self.stdout.read_lines(final=final):
            self._scan(line)
            if self.done is not None and self.done.search(line):
                self.done_seen = True
            event = parse_event(line)
            if event is not None and event.kind == EventKind.RESULT:
                self.result_event = event.payload
                if _is_max_turns_event(event.payload):
                    self.max_turns_hit = True
        for line in self.stderr.read_lines(final=final):
            self._scan(line)

    def _scan(self, line: str) -> None:
        if self.denial is not None and self.denial.search(line):
            self.denied = True
            if len(self.denial_lines) < MAX_DENIAL_LINES:
                self.denial_lines.append(line.strip())
        if self.max_turns is not None and self.max_turns.search(line):
            self.max_turns_hit = True


class ProcessSupervisor:
    """Runs one worker invocation at a time under a deadline and output watchdogs.

    Each call to :meth:`supervise` owns a child process group, its two output sinks
    and a live renderer task; all three are released before the call returns,
    whatever the outcome.
    """

    def __init__(
        self,
        backend: WorkerBackend,
        log_dir: Path,
        *,
        registry: RoleRegistry | None = None,
        event_hook: InvocationEventHook | None = None,
        echo: bool = False,
    ) -> None:
        self.backend = backend
        self.log_dir = log_dir
        self.registry = registry
        self.event_hook = event_hook
        self.echo = echo

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)

    def _log_paths(self, label: str) -> tuple[Path, Path, Path]:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
        slug = re.sub(r"[^A-Za-z0-9_.-]+", "-", label).strip("-") or "worker"
        base = f"{stamp}-{slug}"
        return (
            self.log_dir / f"{base}.out",
            self.log_dir / f"{base}.err",
            self.log_dir / f"{base}.live",
        )

    async def supervise(self, prompt: str, config: SupervisionConfig) -> InvocationResult:
        command = self.backend.build_command(
            prompt,
            model=config.model,
            max_turns=config.max_turns,
            allowed_tools=config.allowed_tools,
            extra_args=config.extra_args,
        )
        stdout_path, stderr_path, live_path = self._log_paths(config.label)
        started_at = datetime.now()
        started = time.monotonic()
        deadline = started + config.timeout_seconds
        scanner = _OutputScanner(stdout_path, stderr_path, config)
        status = InvocationStatus.RUNNING
        soft_complete = False
        exit_code: int | None = None

        logger.info("Starting %s invocation (%s)", self.backend.name, config.label)
        logger.debug("Output: %s", stdout_path)
        self._emit(
            {
                "event": "invocation_start",
                "label": config.label,
                "stdout": str(stdout_path),
                "timeout_seconds": config.timeout_seconds,
            }
        )

        renderer = LiveRenderer(stdout_path, live_path, registry=self.registry, echo=self.echo)
        stop_rendering = asyncio.Event()
        process: asyncio.subprocess.Process | None = None
        render_task: asyncio.Task[int] | None = None

        with stdout_path.open("wb") as stdout_file, stderr_path.open("wb") as stderr_file:
            try:
                try:
                    process = await asyncio.create_subprocess_exec(
                        *command,
                        cwd=str(config.cwd) if config.cwd else None,
                        stdin=asyncio.subprocess.DEVNULL,
                        stdout=stdout_file,
                        stderr=stderr_file,
                        start_new_session=True,
                    )
                except FileNotFoundError as exc:
                    raise InvocationFailedError(
                        f"Worker binary not found: {command[0]}",
                        output_path=stdout_path,
                        retriable=False,
                    ) from exc
                render_task = asyncio.create_task(renderer.run(stop_rendering))

                done_at: float | None = None
                while True:
                    now = time.monotonic()
                    remaining = deadline - now
                    if remaining <= 0:
                        status = InvocationStatus.TIMED_OUT
                        logger.warning("Worker timed out after %gs", config.timeout_seconds)
                        self._emit({"event": "invocation_timeout", "label": config.label})
                        break
                    try:
                        await asyncio.wait_for(
                            process.wait(), timeout=min(config.poll_interval_seconds, remaining)
                        )
                    except TimeoutError:
                        pass
                    else:
                        break

                    scanner.poll()
                    if scanner.denied:
                        status = InvocationStatus.DENIED
                        self._report_denial(config, scanner.denial_lines)
                        break
                    if scanner.done_seen and done_at is None:
                        done_at = time.monotonic()
                        logger.info(
                            "Completion signal detected; allowing %gs grace period",
                            config.done_grace_seconds,
                        )
                        self._emit({"event": "invocation_done_detected", "label": config.label})
                    elapsed = time.monotonic() - done_at if done_at is not None else None
                    if elapsed is not None and elapsed >= config.done_grace_seconds:
                        status = InvocationStatus.COMPLETED
                        soft_complete = True
                        logger.info("Grace period elapsed; stopping worker")
                        break
            finally:
                if process is not None:
                    exit_code = await self._terminate(process, config.kill_grace_seconds)
                stop_rendering.set()
                if render_task is not None:
                    await self._finish_renderer(render_task)

        if status == InvocationStatus.RUNNING:
            status = self._classify_exit(scanner, exit_code, config)

        duration = time.monotonic() - started
        self._emit(
            {
                "event": "invocation_exit",
                "label": config.label,
                "status": status.value,
                "exit_code": exit_code,
                "duration_seconds": round(duration, 3),
            }
        )
        logger.info("Invocation %s finished: %s (%.0fs)", config.label, status, duration)
        return InvocationResult(
            status=status,
            exit_code=exit_code,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
            live_path=live_path,
            started_at=started_at,
            duration_seconds=duration,
            timeout_seconds=config.timeout_seconds,
            max_turns=config.max_turns,
            allowed_tools=list(config.allowed_tools),
            result_event=scanner.result_event,
            denial_lines=list(scanner.denial_lines),
            soft_complete=soft_complete,
        )

    def _classify_exit(
        self, scanner: _OutputScanner, exit_code: int | None, config: SupervisionConfig
    ) -> InvocationStatus:
        scanner.poll(final=True)
        if scanner.denied:
            self._report_denial(config, scanner.denial_lines)
            return InvocationStatus.DENIED
        if scanner.max_turns_hit:
            logger.warning("Worker hit max turns (%s)", config.max_turns)
            self._emit({"event": "invocation_max_turns", "label": config.label})
            return InvocationStatus.MAX_TURNS
        if exit_code == 0:
            return InvocationStatus.COMPLETED
        logger.warning("Worker exited with code %s", exit_code)
        return InvocationStatus.FAILED

    def _report_denial(self, config: SupervisionConfig, lines: list[str]) -> None:
        logger.error("Tool permission denied; add the missing tool to the allowlist")
        for line in lines:
            logger.error("  %s", line[:300])
        self._emit({"event": "invocation_denied", "label": config.label, "lines": list(lines)})

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process, kill_grace: float) -> int | None:
        if process.returncode is not None:
            return process.returncode
        with contextlib.suppress(ProcessLookupError):
            os.killpg(process.pid, signal.SIGTERM)
        try:
            return await asyncio.wait_for(process.wait(), timeout=kill_grace)
        except TimeoutError:
            logger.warning("Worker ignored SIGTERM; sending SIGKILL")
        with contextlib.suppress(ProcessLookupError):
            os.killpg(process.pid, signal.SIGKILL)
        return await process.wait()

    @staticmethod
    async def _finish_renderer(task: asyncio.Task[int]) -> None:
        try:
            await task
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("Live renderer stopped with an error", exc_info=True)
