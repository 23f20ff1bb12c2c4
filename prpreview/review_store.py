"""SQLite-backed review store shared by the viewer and command invocations.

Every public operation runs in exactly one transaction. Writers open it with
``BEGIN IMMEDIATE`` so they queue on the database write lock (bounded by
``lock_timeout``); readers use a deferred transaction and, with the WAL
journal, only ever observe committed state.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path, PurePosixPath
from typing import Iterator

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text, create_engine, event, inspect, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DatabaseError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, selectinload, sessionmaker

from .errors import NotFoundError, StoreUnavailableError, ValidationError
from .review_types import STATUS_FILTERS, Comment, Reply, Scope, Thread, now_ms

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 5.0
SQLITE_MAX_INT = 2**63 - 1


class Base(DeclarativeBase):
    pass


class CommentRow(Base):
    __tablename__ = "comments"
    __table_args__ = (
        Index("idx_comments_repo_branch", "repo_path", "branch"),
        Index("idx_comments_file", "repo_path", "branch", "file_path"),
        {"sqlite_autoincrement": True},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    repo_path: Mapped[str] = mapped_column(String, nullable=False)
    branch: Mapped[str] = mapped_column(String, nullable=False)
    file_path: Mapped[str] = mapped_column(String, nullable=False)
    start_line: Mapped[int] = mapped_column(Integer, nullable=False)
    end_line: Mapped[int] = mapped_column(Integer, nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    author: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_at: Mapped[int | None] = mapped_column(Integer, nullable=True)

    replies: Mapped[list["ReplyRow"]] = relationship(
        back_populates="comment",
        cascade="all, delete-orphan",
        order_by="ReplyRow.created_at",
    )


class ReplyRow(Base):
    __tablename__ = "replies"
    __table_args__ = (
        Index("idx_replies_comment", "comment_id"),
        {"sqlite_autoincrement": True},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    comment_id: Mapped[int] = mapped_column(ForeignKey("comments.id", ondelete="CASCADE"), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    author: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)

    comment: Mapped[CommentRow] = relationship(back_populates="replies")


class ViewedFileRow(Base):
    __tablename__ = "viewed_files"
    __table_args__ = (
        Index("idx_viewed_files_unique", "repo_path", "branch", "file_path", unique=True),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    repo_path: Mapped[str] = mapped_column(String, nullable=False)
    branch: Mapped[str] = mapped_column(String, nullable=False)
    file_path: Mapped[str] = mapped_column(String, nullable=False)
    viewed_at: Mapped[int] = mapped_column(Integer, nullable=False)


def _to_reply(row: ReplyRow) -> Reply:
    return Reply(
        id=row.id,
        comment_id=row.comment_id,
        body=row.body,
        author=row.author,
        created_at=row.created_at,
    )


def _to_comment(row: CommentRow) -> Comment:
    return Comment(
        id=row.id,
        scope=Scope(repo_path=row.repo_path, branch=row.branch),
        file_path=row.file_path,
        start_line=row.start_line,
        end_line=row.end_line,
        body=row.body,
        author=row.author,
        created_at=row.created_at,
        resolved=bool(row.resolved),
        resolved_at=row.resolved_at,
    )


def _to_thread(row: CommentRow) -> Thread:
    replies = sorted(row.replies, key=lambda item: (item.created_at, item.id))
    return Thread(comment=_to_comment(row), replies=tuple(_to_reply(item) for item in replies))


def normalize_file_path(raw: str) -> str:
    value = str(raw or "").strip().replace("\\", "/")
    while value.startswith("./"):
        value = value[2:]
    if not value:
        raise ValidationError("file path must not be empty")
    if value.startswith("/") or PurePosixPath(value).is_absolute():
        raise ValidationError(f"file path must be repository-relative: {raw}")
    return value


def _require_text(value: str, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} must not be empty")
    return value


def validate_line_range(start_line: int, end_line: int) -> None:
    for name, value in (("start line", start_line), ("end line", end_line)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"{name} must be an integer: {value!r}")
        if value < 1:
            raise ValidationError(f"{name} must be >= 1: {value}")
        if value > SQLITE_MAX_INT:
            raise ValidationError(f"{name} is too large: {value}")
    if start_line > end_line:
        raise ValidationError(f"start line {start_line} is after end line {end_line}")


def storable_id(value: int) -> bool:
    """False for ids SQLite cannot bind; no such row can exist."""
    return isinstance(value, int) and not isinstance(value, bool) and -SQLITE_MAX_INT - 1 <= value <= SQLITE_MAX_INT


class ReviewStore:
    """Durable comments, replies and viewed-file marks, partitioned by Scope."""

    def __init__(self, path: Path | str, *, lock_timeout: float = DEFAULT_LOCK_TIMEOUT) -> None:
        self.path = Path(path).expanduser()
        self.lock_timeout = lock_timeout
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise StoreUnavailableError(f"Cannot create store directory {self.path.parent}: {error}") from error

        self._engine = create_engine(
            f"sqlite:///{self.path}",
            connect_args={"timeout": lock_timeout},
        )
        busy_ms = int(lock_timeout * 1000)

        @event.listens_for(self._engine, "connect")
        def _on_connect(dbapi_connection, _record) -> None:  # noqa: ANN001
            # let the "begin" hook below emit BEGIN itself
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute(f"PRAGMA busy_timeout={busy_ms}")
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

        @event.listens_for(self._engine, "begin")
        def _on_begin(connection) -> None:  # noqa: ANN001
            mode = connection.get_execution_options().get("sqlite_begin", "DEFERRED")
            connection.exec_driver_sql(f"BEGIN {mode}")

        self._write_sessions = sessionmaker(
            bind=self._engine.execution_options(sqlite_begin="IMMEDIATE"),
            expire_on_commit=False,
        )
        self._read_sessions = sessionmaker(
            bind=self._engine.execution_options(sqlite_begin="DEFERRED"),
            expire_on_commit=False,
        )
        with self._guard("initialize schema"):
            # only a missing schema needs the write lock
            with self._engine.execution_options(sqlite_begin="DEFERRED").begin() as connection:
                existing = set(inspect(connection).get_table_names())
            if not set(Base.metadata.tables) <= existing:
                with self._engine.execution_options(sqlite_begin="IMMEDIATE").begin() as connection:
                    Base.metadata.create_all(connection)
        logger.debug("opened review store %s", self.path)

    def close(self) -> None:
        self._engine.dispose()

    def __enter__(self) -> "ReviewStore":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    @contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        try:
            yield
        except DatabaseError as error:
            logger.warning("review store %s failed during %s: %s", self.path, action, error.orig)
            raise StoreUnavailableError(f"Review store unavailable during {action}: {error.orig}") from error

    @contextmanager
    def _write(self, action: str) -> Iterator[Session]:
        with self._guard(action):
            with self._write_sessions.begin() as session:
                yield session

    @contextmanager
    def _read(self, action: str) -> Iterator[Session]:
        with self._guard(action):
            with self._read_sessions.begin() as session:
                yield session

    @staticmethod
    def _comment_row(session: Session, comment_id: int) -> CommentRow:
        row = session.get(CommentRow, comment_id) if storable_id(comment_id) else None
        if row is None:
            raise NotFoundError(f"Comment #{comment_id} not found")
        return row

    @staticmethod
    def _reply_row(session: Session, reply_id: int) -> ReplyRow:
        row = session.get(ReplyRow, reply_id) if storable_id(reply_id) else None
        if row is None:
            raise NotFoundError(f"Reply #{reply_id} not found")
        return row

    # comments

    def create_comment(
        self,
        scope: Scope,
        file_path: str,
        start_line: int,
        end_line: int,
        body: str,
        author: str,
    ) -> Comment:
        validate_line_range(start_line, end_line)
        path = normalize_file_path(file_path)
        _require_text(body, "comment body")
        _require_text(author, "author")
        with self._write("create_comment") as session:
            row = CommentRow(
                repo_path=scope.repo_path,
                branch=scope.branch,
                file_path=path,
                start_line=start_line,
                end_line=end_line,
                body=body,
                author=author,
                created_at=now_ms(),
                resolved=False,
                resolved_at=None,
            )
            session.add(row)
            session.flush()
            comment = _to_comment(row)
        logger.info("created comment #%d on %s %s", comment.id, path, comment.line_range_display())
        return comment

    def update_comment(self, comment_id: int, body: str) -> Comment:
        _require_text(body, "comment body")
        with self._write("update_comment") as session:
            row = self._comment_row(session, comment_id)
            row.body = body
            comment = _to_comment(row)
        logger.info("edited comment #%d", comment_id)
        return comment

    def resolve(self, comment_id: int) -> None:
        with self._write("resolve") as session:
            row = self._comment_row(session, comment_id)
            if not row.resolved:
                row.resolved = True
                row.resolved_at = now_ms()

    def unresolve(self, comment_id: int) -> None:
        with self._write("unresolve") as session:
            row = self._comment_row(session, comment_id)
            row.resolved = False
            row.resolved_at = None

    def set_resolved(self, comment_id: int, resolved: bool) -> None:
        if resolved:
            self.resolve(comment_id)
        else:
            self.unresolve(comment_id)

    def delete(self, comment_id: int) -> None:
        with self._write("delete") as session:
            row = self._comment_row(session, comment_id)
            session.delete(row)
        logger.info("deleted comment #%d", comment_id)

    # replies

    def reply(self, comment_id: int, body: str, author: str) -> Reply:
        _require_text(body, "reply body")
        _require_text(author, "author")
        with self._write("reply") as session:
            self._comment_row(session, comment_id)
            # write lock is held from here, so timestamps follow commit order
            row = ReplyRow(comment_id=comment_id, body=body, author=author, created_at=now_ms())
            session.add(row)
            session.flush()
            return _to_reply(row)

    def get_reply(self, reply_id: int) -> Reply:
        with self._read("get_reply") as session:
            return _to_reply(self._reply_row(session, reply_id))

    def delete_reply(self, reply_id: int) -> Reply:
        with self._write("delete_reply") as session:
            row = self._reply_row(session, reply_id)
            reply = _to_reply(row)
            session.delete(row)
        logger.info("deleted reply #%d from comment #%d", reply.id, reply.comment_id)
        return reply

    # threads

    def get_thread(self, comment_id: int) -> Thread:
        if not storable_id(comment_id):
            raise NotFoundError(f"Comment #{comment_id} not found")
        with self._read("get_thread") as session:
            row = session.scalars(
                select(CommentRow).where(CommentRow.id == comment_id).options(selectinload(CommentRow.replies))
            ).first()
            if row is None:
                raise NotFoundError(f"Comment #{comment_id} not found")
            return _to_thread(row)

    def list_threads(self, scope: Scope, status_filter: str = "all") -> list[Thread]:
        if status_filter not in STATUS_FILTERS:
            raise ValidationError(
                f"Invalid status filter: {status_filter} (expected one of {', '.join(STATUS_FILTERS)})"
            )
        query = (
            select(CommentRow)
            .where(CommentRow.repo_path == scope.repo_path, CommentRow.branch == scope.branch)
            .options(selectinload(CommentRow.replies))
            .order_by(CommentRow.id)
        )
        if status_filter == "open":
            query = query.where(CommentRow.resolved.is_(False))
        elif status_filter == "resolved":
            query = query.where(CommentRow.resolved.is_(True))
        with self._read("list_threads") as session:
            return [_to_thread(row) for row in session.scalars(query)]

    # viewed files

    def mark_viewed(self, scope: Scope, file_path: str) -> int:
        path = normalize_file_path(file_path)
        viewed_at = now_ms()
        statement = sqlite_insert(ViewedFileRow).values(
            repo_path=scope.repo_path,
            branch=scope.branch,
            file_path=path,
            viewed_at=viewed_at,
        )
        statement = statement.on_conflict_do_update(
            index_elements=["repo_path", "branch", "file_path"],
            set_={"viewed_at": viewed_at},
        )
        with self._write("mark_viewed") as session:
            session.execute(statement)
        return viewed_at

    def unmark_viewed(self, scope: Scope, file_path: str) -> None:
        path = normalize_file_path(file_path)
        with self._write("unmark_viewed") as session:
            row = session.scalars(
                select(ViewedFileRow).where(
                    ViewedFileRow.repo_path == scope.repo_path,
                    ViewedFileRow.branch == scope.branch,
                    ViewedFileRow.file_path == path,
                )
            ).first()
            if row is not None:
                session.delete(row)

    def viewed_files(self, scope: Scope) -> dict[str, int]:
        with self._read("viewed_files") as session:
            rows = session.scalars(
                select(ViewedFileRow).where(
                    ViewedFileRow.repo_path == scope.repo_path,
                    ViewedFileRow.branch == scope.branch,
                )
            )
            return {row.file_path: row.viewed_at for row in rows}

    def clear_viewed(self, scope: Scope) -> None:
        with self._write("clear_viewed") as session:
            rows = session.scalars(
                select(ViewedFileRow).where(
                    ViewedFileRow.repo_path == scope.repo_path,
                    ViewedFileRow.branch == scope.branch,
                )
            ).all()
            for row in rows:
                session.delete(row)
