from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

STATUS_FILTERS = ("all", "open", "resolved")


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Scope:
    """Partition key for review data: one repository checkout plus one branch."""

    repo_path: str
    branch: str

    def label(self) -> str:
        return f"{self.repo_path}@{self.branch}"


@dataclass(frozen=True)
class Reply:
    id: int
    comment_id: int
    body: str
    author: str
    created_at: int

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "author": self.author,
            "body": self.body,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class Comment:
    id: int
    scope: Scope
    file_path: str
    start_line: int
    end_line: int
    body: str
    author: str
    created_at: int
    resolved: bool = False
    resolved_at: int | None = None

    def covers(self, line: int) -> bool:
        return self.start_line <= line <= self.end_line

    def line_range_display(self) -> str:
        if self.start_line == self.end_line:
            return f"L{self.start_line}"
        return f"L{self.start_line}-{self.end_line}"


@dataclass(frozen=True)
class Thread:
    """A comment with its replies, oldest reply first."""

    comment: Comment
    replies: tuple[Reply, ...] = field(default_factory=tuple)

    @property
    def id(self) -> int:
        return self.comment.id

    @property
    def resolved(self) -> bool:
        return self.comment.resolved

    def to_record(self) -> dict[str, Any]:
        comment = self.comment
        return {
            "id": comment.id,
            "file_path": comment.file_path,
            "start_line": comment.start_line,
            "end_line": comment.end_line,
            "body": comment.body,
            "author": comment.author,
            "created_at": comment.created_at,
            "resolved": comment.resolved,
            "replies": [reply.to_record() for reply in self.replies],
        }


def matches_status(thread: Thread, status_filter: str) -> bool:
    if status_filter == "open":
        return not thread.resolved
    if status_filter == "resolved":
        return thread.resolved
    return True
