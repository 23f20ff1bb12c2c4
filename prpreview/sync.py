"""Thread cache kept fresh by polling the shared review store.

There is no push channel between processes: a viewer sees writes made by
command invocations on its next ``poll()``, and every poll replaces the
cached thread list wholesale. The viewer's own writes are committed first
and then applied to the cache immediately, so a later poll can only confirm
them.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from .errors import StoreUnavailableError, ValidationError
from .review_store import ReviewStore
from .review_types import STATUS_FILTERS, Comment, Reply, Scope, Thread, matches_status

logger = logging.getLogger(__name__)


class ThreadCache:
    def __init__(self, store: ReviewStore, scope: Scope, status_filter: str = "all") -> None:
        if status_filter not in STATUS_FILTERS:
            raise ValidationError(f"Invalid status filter: {status_filter}")
        self.store = store
        self.scope = scope
        self.status_filter = status_filter
        self.threads: list[Thread] = []
        self.poll_count = 0
        self.last_error: str | None = None

    def poll(self) -> bool:
        """Replace the cache with one fresh list call; False when the store was unavailable."""
        try:
            threads = self.store.list_threads(self.scope, self.status_filter)
        except StoreUnavailableError as error:
            self.last_error = str(error)
            logger.warning("poll skipped for %s: %s", self.scope.label(), error)
            return False
        self.threads = threads
        self.poll_count += 1
        self.last_error = None
        return True

    def rescope(self, scope: Scope) -> None:
        if scope == self.scope:
            return
        self.scope = scope
        self.threads = []
        self.poll()

    def thread(self, comment_id: int) -> Thread | None:
        return next((item for item in self.threads if item.id == comment_id), None)

    def _store_local(self, thread: Thread) -> None:
        kept = [item for item in self.threads if item.id != thread.id]
        if matches_status(thread, self.status_filter):
            kept.append(thread)
        self.threads = sorted(kept, key=lambda item: item.id)

    def add_comment(self, file_path: str, start_line: int, end_line: int, body: str, author: str) -> Comment:
        comment = self.store.create_comment(self.scope, file_path, start_line, end_line, body, author)
        self._store_local(Thread(comment=comment))
        return comment

    def add_reply(self, comment_id: int, body: str, author: str) -> Reply:
        reply = self.store.reply(comment_id, body, author)
        current = self.thread(comment_id)
        if current is not None:
            self._store_local(replace(current, replies=(*current.replies, reply)))
        return reply

    def edit_comment(self, comment_id: int, body: str) -> Comment:
        comment = self.store.update_comment(comment_id, body)
        current = self.thread(comment_id)
        if current is not None:
            self._store_local(replace(current, comment=comment))
        return comment

    def set_resolved(self, comment_id: int, resolved: bool) -> None:
        self.store.set_resolved(comment_id, resolved)
        current = self.thread(comment_id)
        if current is not None:
            comment = current.comment
            if comment.resolved != resolved:
                comment = replace(comment, resolved=resolved, resolved_at=None)
            self._store_local(replace(current, comment=comment))

    def toggle_resolved(self, comment_id: int) -> bool:
        current = self.thread(comment_id)
        resolved = not current.resolved if current is not None else True
        self.set_resolved(comment_id, resolved)
        return resolved

    def delete_comment(self, comment_id: int) -> None:
        self.store.delete(comment_id)
        self.threads = [item for item in self.threads if item.id != comment_id]
