from __future__ import annotations

import json
import logging
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class TrackerError(RuntimeError):
    """Raised when the issue tracker cannot be queried or updated."""


@dataclass(slots=True)
class Issue:
    number: int
    title: str = ""
    body: str = ""
    labels: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PullRequest:
    number: int
    title: str = ""
    state: str = "OPEN"
    head_branch: str = ""


class IssueTracker(ABC):
    @abstractmethod
    def list_open_prs(self, limit: int) -> list[int]:
        """Open pull request numbers, newest first."""

    @abstractmethod
    def list_issues(
        self, label: str | None = None, limit: int = 5, oldest_first: bool = False
    ) -> list[int]:
        """Open, unassigned issue numbers, optionally restricted to one label."""

    @abstractmethod
    def view_issue(self, number: int) -> Issue: ...

    @abstractmethod
    def view_pr(self, number: int) -> PullRequest: ...

    @abstractmethod
    def assign_self(self, number: int) -> None: ...

    @abstractmethod
    def close_issue(self, number: int, comment: str) -> None: ...


class GitHubTracker(IssueTracker):
    """Issue and pull request access through the ``gh`` command line client."""

    def __init__(self, repo_root: Path, binary: str = "gh") -> None:
        self.repo_root = repo_root
        self.binary = binary

    def _run_gh(self, args: list[str]) -> str:
        try:
            proc = subprocess.run(
                [self.binary, *args],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise TrackerError(f"GitHub CLI not found: {self.binary}") from exc
        if proc.returncode != 0:
            raise TrackerError(proc.stderr.strip() or f"gh {' '.join(args[:2])} failed")
        return proc.stdout

    def _run_gh_json(self, args: list[str]) -> Any:
        output = self._run_gh(args)
        try:
            return json.loads(output or "null")
        except json.JSONDecodeError as exc:
            raise TrackerError(f"Unexpected gh output: {output[:200]}") from exc

    @staticmethod
    def _numbers(payload: Any) -> list[int]:
        if not isinstance(payload, list):
            return []
        return [
            int(item["number"]) for item in payload if isinstance(item, dict) and "number" in item
        ]

    def list_open_prs(self, limit: int) -> list[int]:
        payload = self._run_gh_json(
            ["pr", "list", "--state", "open", "--limit", str(limit), "--json", "number"]
        )
        return self._numbers(payload)

    def list_issues(
        self, label: str | None = None, limit: int = 5, oldest_first: bool = False
    ) -> list[int]:
        search = "no:assignee sort:created-asc" if oldest_first else "no:assignee"
        args = ["issue", "list", "--state", "open", "--search", search, "--limit", str(limit)]
        if label:
            args.extend(["--label", label])
        return self._numbers(self._run_gh_json([*args, "--json", "number"]))

    def view_issue(self, number: int) -> Issue:
        payload = self._run_gh_json(
            ["issue", "view", str(number), "--json", "number,title,body,labels"]
        )
        if not isinstance(payload, dict):
            raise TrackerError(f"Issue #{number} not found")
        labels = [
            str(label.get("name", ""))
            for label in payload.get("labels") or []
            if isinstance(label, dict)
        ]
        return Issue(
            number=number,
            title=str(payload.get("title") or ""),
            body=str(payload.get("body") or ""),
            labels=labels,
        )

    def view_pr(self, number: int) -> PullRequest:
        payload = self._run_gh_json(
            ["pr", "view", str(number), "--json", "number,title,state,headRefName"]
        )
        if not isinstance(payload, dict):
            raise TrackerError(f"Pull request #{number} not found")
        return PullRequest(
            number=number,
            title=str(payload.get("title") or ""),
            state=str(payload.get("state") or "").upper(),
            head_branch=str(payload.get("headRefName") or ""),
        )

    def assign_self(self, number: int) -> None:
        self._run_gh(["issue", "edit", str(number), "--add-assignee", "@me"])

    def close_issue(self, number: int, comment: str) -> None:
        self._run_gh(["issue", "close", str(number), "--comment", comment])
        logger.info("Closed issue #%s", number)
