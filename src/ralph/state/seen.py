from __future__ import annotations

import logging
import os
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)


class RalphStateError(RuntimeError):
    """Raised when a persisted state file cannot be read or updated."""


class SeenSet:
    """Newline-delimited identifiers persisted in a plain text file.

    The file is the only source of truth: every query re-reads it so entries
    added or removed by hand, or by another loop, take effect immediately.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.lock_file = path.with_name(path.name + ".lock")

    def members(self) -> list[str]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise RalphStateError(f"Cannot read {self.path}: {exc}") from exc
        return [line.strip() for line in text.splitlines() if line.strip()]

    def __contains__(self, identifier: object) -> bool:
        return str(identifier).strip() in self.members()

    def __len__(self) -> int:
        return len(set(self.members()))

    def add(self, identifier: str | int, reason: str = "") -> bool:
        entry = str(identifier).strip()
        if not entry:
            raise RalphStateError("Cannot record an empty identifier.")
        with self._lock():
            if entry in self.members():
                return False
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(entry + "\n")
        if reason:
            logger.info("Recorded %s in %s: %s", entry, self.path.name, reason)
        else:
            logger.info("Recorded %s in %s", entry, self.path.name)
        return True

    def remove(self, identifier: str | int) -> bool:
        entry = str(identifier).strip()
        with self._lock():
            current = self.members()
            if entry not in current:
                return False
            remaining = "".join(f"{item}\n" for item in current if item != entry)
            fd, temp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(remaining)
            os.replace(temp_path, self.path)
        logger.info("Removed %s from %s", entry, self.path.name)
        return True

    @contextmanager
    def _lock(self, timeout_seconds: float = 3.0):
        start = time.monotonic()
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise RalphStateError(f"Timed out waiting for {self.lock_file}.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass
