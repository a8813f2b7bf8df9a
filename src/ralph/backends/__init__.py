from ralph.backends.base import (
    CapabilityDeniedError,
    InvocationError,
    InvocationFailedError,
    InvocationStatus,
    InvocationTimeoutError,
    MaxTurnsReachedError,
    WorkerBackend,
)
from ralph.backends.claude import ClaudeCodeBackend

__all__ = [
    "CapabilityDeniedError",
    "ClaudeCodeBackend",
    "InvocationError",
    "InvocationFailedError",
    "InvocationStatus",
    "InvocationTimeoutError",
    "MaxTurnsReachedError",
    "WorkerBackend",
]
