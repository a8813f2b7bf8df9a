from __future__ import annotations

from ralph.backends.base import WorkerBackend


class ClaudeCodeBackend(WorkerBackend):
    name = "claude"

    def __init__(self, binary: str = "claude") -> None:
        self.binary = binary

    def build_command(
        self,
        prompt: str,
        *,
        model: str | None = None,
        max_turns: int | None = None,
        allowed_tools: list[str] | None = None,
        extra_args: list[str] | None = None,
    ) -> list[str]:
        command = [self.binary, "-p", prompt]
        if model:
            command.extend(["--model", model])
        if max_turns:
            command.extend(["--max-turns", str(max_turns)])
        if allowed_tools:
            command.extend(["--allowedTools", ",".join(allowed_tools)])
        command.extend(extra_args or [])
        # stream-json needs --verbose under --print; events are flushed one per line.
        command.extend(["--verbose", "--output-format", "stream-json"])
        return command
