from __future__ import annotations

from abc import ABC, abstractmethod
from enum import StrEnum
from pathlib import Path


class InvocationStatus(StrEnum):
    RUNNING = "running"
    TIMED_OUT = "timed-out"
    DENIED = "denied"
    MAX_TURNS = "max-turns"
    COMPLETED = "completed"
    FAILED = "failed"


class InvocationError(RuntimeError):
    """Raised when a worker invocation ends in a non-success classification."""

    status: InvocationStatus = InvocationStatus.FAILED

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        output_path: Path | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.output_path = output_path
        self.retriable = retriable


class InvocationTimeoutError(InvocationError):
    """Raised when the worker exceeds its wall-clock deadline."""

    status = InvocationStatus.TIMED_OUT


class CapabilityDeniedError(InvocationError):
    """Raised when the worker asked for a tool outside its allowlist.

    This is a configuration problem, not a task problem: the whole run stops.
    """

    status = InvocationStatus.DENIED

    def __init__(
        self,
        message: str,
        *,
        matched_lines: list[str] | None = None,
        exit_code: int | None = None,
        output_path: Path | None = None,
    ) -> None:
        super().__init__(message, exit_code=exit_code, output_path=output_path, retriable=False)
        self.matched_lines = list(matched_lines or [])


class MaxTurnsReachedError(InvocationError):
    """Raised when the worker ran out of agentic turns before finishing."""

    status = InvocationStatus.MAX_TURNS


class InvocationFailedError(InvocationError):
    """Raised when the worker exited non-zero without a more specific signal."""


class WorkerBackend(ABC):
    name: str = "worker"

    @abstractmethod
    def build_command(
        self,
        prompt: str,
        *,
        model: str | None = None,
        max_turns: int | None = None,
        allowed_tools: list[str] | None = None,
        extra_args: list[str] | None = None,
    ) -> list[str]:
        """Return the argv that launches one worker invocation."""
