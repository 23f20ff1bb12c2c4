from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

from rich.markup import escape
from rich.text import Text
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.screen import ModalScreen
from textual.widgets import Button, DataTable, Footer, Header, Input, Static

from .anchors import ORPHANED, ReviewRow, build_review_rows, selection_to_line_range, threads_at_line
from .errors import ReviewError, ValidationError
from .git_diff import (
    DIFF_MODES,
    Commit,
    FileDiff,
    RepoContext,
    commits_since,
    compute_diff,
    total_stats,
    uncommitted_paths,
    worktree_fingerprint,
)
from .render import file_label, kind_style, relative_time, status_icon, status_label, status_style, thread_text
from .review_store import ReviewStore
from .review_types import Thread
from .sync import ThreadCache

logger = logging.getLogger(__name__)

DiffLoader = Callable[[RepoContext, str], list[FileDiff]]
CommitsLoader = Callable[[RepoContext], list[Commit]]
PathsLoader = Callable[[Path], set[str]]
WorktreeReader = Callable[[Path], tuple]

FILE_KIND_STYLES = {"added": "green", "deleted": "red", "renamed": "yellow", "binary": "dim", "mode": "dim"}


def summarize_body(body: str, max_width: int = 72) -> str:
    first = body.strip().splitlines()[0] if body.strip() else ""
    if len(first) > max_width:
        return first[: max_width - 1] + "…"
    return first


class TextModal(ModalScreen[str | None]):
    CSS = """
    TextModal {
        align: center middle;
    }
    #dialog {
        width: 70%;
        max-width: 90;
        border: round #8338ec;
        padding: 1 2;
        background: #0b0f19;
    }
    #buttons {
        height: auto;
        layout: horizontal;
        align: right middle;
        padding-top: 1;
    }
    """

    def __init__(self, title: str, placeholder: str, initial: str = "", *, allow_empty: bool = False) -> None:
        super().__init__()
        self.dialog_title = title
        self.placeholder = placeholder
        self.initial = initial
        self.allow_empty = allow_empty

    def compose(self) -> ComposeResult:
        with Vertical(id="dialog"):
            yield Static(Text(self.dialog_title, style="bold"))
            yield Input(value=self.initial, placeholder=self.placeholder, id="text_input")
            with Horizontal(id="buttons"):
                yield Button("Cancel", id="cancel")
                yield Button("OK", id="ok", variant="primary")

    def on_mount(self) -> None:
        self.query_one("#text_input", Input).focus()

    def _submit(self) -> None:
        stripped = self.query_one("#text_input", Input).value.strip()
        self.dismiss(stripped if stripped or self.allow_empty else None)

    def on_input_submitted(self, _event: Input.Submitted) -> None:
        self._submit()

    def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "cancel":
            self.dismiss(None)
            return
        self._submit()

    def key_escape(self) -> None:
        self.dismiss(None)


class PrPreviewApp(App[None]):
    CSS = """
    Screen { layout: vertical; }
    #topbar { height: 3; border: round #3a86ff; padding: 0 1; }
    #main { height: 1fr; }
    #left { width: 32%; border: round #4cc9f0; }
    #right { width: 68%; border: round #f72585; }
    #files { height: 1fr; }
    #rows { height: 1fr; }
    #detail { height: 10; border: round #8338ec; padding: 0 1; }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("v", "toggle_selection", "Select"),
        Binding("c", "add_comment", "Comment"),
        Binding("r", "reply", "Reply"),
        Binding("x", "toggle_resolved", "Resolve"),
        Binding("D", "delete_thread", "Delete"),
        Binding("t", "toggle_threads", "Comments"),
        Binding("m", "cycle_mode", "Mode"),
        Binding("R", "recompute", "Refresh"),
        Binding("V", "toggle_viewed", "Viewed"),
        Binding("U", "clear_viewed", "Unview All", show=False),
        Binding("e", "edit_comment", "Edit"),
        Binding("slash", "filter_files", "Filter"),
        Binding("escape", "clear_selection", "Clear Selection", show=False),
    ]

    def __init__(
        self,
        context: RepoContext,
        store: ReviewStore,
        *,
        mode: str = "against-base",
        author: str = "Agent",
        poll_interval: float = 2.0,
        theme: str = "dark",
        diff_loader: DiffLoader = compute_diff,
        commits_loader: CommitsLoader = commits_since,
        uncommitted_loader: PathsLoader = uncommitted_paths,
        worktree_reader: WorktreeReader = worktree_fingerprint,
    ) -> None:
        super().__init__()
        if mode not in DIFF_MODES:
            raise ValidationError(f"Unknown diff mode: {mode}")
        self.context = context
        self.store = store
        self.mode = mode
        self.author = author
        self.poll_interval = poll_interval
        self.theme_name = theme
        self.diff_loader = diff_loader
        self.commits_loader = commits_loader
        self.uncommitted_loader = uncommitted_loader
        self.worktree_reader = worktree_reader
        self.cache = ThreadCache(store, context.scope)

        self.files: list[FileDiff] = []
        self.commits: list[Commit] = []
        self.uncommitted: set[str] = set()
        self.rows: list[ReviewRow] = []
        self.viewed: dict[str, int] = {}
        self.show_threads = True
        self.file_filter = ""
        self.selection_anchor: int | None = None
        self.diff_error: str | None = None
        self.has_pending_changes = False
        self._thread_signature: tuple = ()
        self._worktree_signature: tuple | None = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        yield Static("", id="topbar")
        with Horizontal(id="main"):
            with Vertical(id="left"):
                yield DataTable(id="files", cursor_type="row")
            with Vertical(id="right"):
                yield DataTable(id="rows", cursor_type="row")
                yield Static("", id="detail")
        yield Footer()

    def on_mount(self) -> None:
        self.theme = "textual-light" if self.theme_name == "light" else "textual-dark"
        self.query_one("#files", DataTable).add_columns("viewed", "kind", "file", "+", "-", "notes", "wt")
        self.query_one("#rows", DataTable).add_columns("sel", "old", "new", "content")
        self._load_diff()
        self.cache.poll()
        self._refresh_viewed()
        self._thread_signature = self._signature(self.cache.threads)
        self._render_all()
        self.query_one("#rows", DataTable).focus()
        self.set_interval(self.poll_interval, self._poll_tick)

    # data

    @staticmethod
    def _signature(threads: list[Thread]) -> tuple:
        return tuple((item.id, item.resolved, len(item.replies), item.comment.body) for item in threads)

    def _load_diff(self) -> None:
        try:
            self.files = self.diff_loader(self.context, self.mode)
            self.diff_error = None
        except ReviewError as error:
            self.diff_error = str(error)
            logger.warning("diff failed for %s: %s", self.context.scope.label(), error)
            self.notify(escape(str(error)), severity="error")
        self.commits = []
        if self.mode != "uncommitted":
            try:
                self.commits = self.commits_loader(self.context)
            except ReviewError as error:
                logger.warning("commits unavailable: %s", error)
        self.uncommitted = set()
        if self.mode == "against-base":
            try:
                self.uncommitted = self.uncommitted_loader(self.context.repo_root)
            except ReviewError as error:
                logger.warning("uncommitted files unavailable: %s", error)
        self._worktree_signature = self._read_worktree()
        self.has_pending_changes = False

    def _read_worktree(self) -> tuple | None:
        try:
            return self.worktree_reader(self.context.repo_root)
        except ReviewError as error:
            logger.debug("working tree fingerprint failed: %s", error)
            return None

    def _check_worktree(self) -> None:
        if self.has_pending_changes or self._worktree_signature is None:
            return
        signature = self._read_worktree()
        if signature is not None and signature != self._worktree_signature:
            logger.info("working tree changed under %s", self.context.repo_root)
            self.has_pending_changes = True

    def _refresh_viewed(self) -> None:
        try:
            self.viewed = self.store.viewed_files(self.context.scope)
        except ReviewError as error:
            logger.warning("viewed files unavailable: %s", error)

    def _poll_tick(self) -> None:
        self._check_worktree()
        if self.cache.poll():
            signature = self._signature(self.cache.threads)
            if signature != self._thread_signature:
                self._thread_signature = signature
                self._render_rows()
                self._render_files()
        self._render_topbar()

    # rendering

    def _render_all(self) -> None:
        self._render_topbar()
        self._render_files()
        self._render_rows()

    def _render_topbar(self) -> None:
        additions, deletions = total_stats(self.files)
        threads = self.cache.threads
        open_count = sum(1 for item in threads if not item.resolved)
        viewed_count = sum(1 for item in self.files if item.path in self.viewed)
        # branch names and error messages are plain text, not markup
        parts: list[tuple[str, str]] = [
            (f"{self.context.branch} -> {self.context.base_ref}", "bold"),
            (f"mode={self.mode}", ""),
            (f"commits={len(self.commits)} files={len(self.files)} viewed={viewed_count}", ""),
            (f"+{additions} -{deletions}", ""),
            (f"comments={len(threads)} open={open_count}", ""),
        ]
        if self.file_filter:
            parts.append((f"filter={self.file_filter}", "cyan"))
        if not self.show_threads:
            parts.append(("comments hidden", ""))
        if self.selection_anchor is not None:
            parts.append(("selecting", "yellow"))
        if self.has_pending_changes:
            parts.append(("changes on disk, R to refresh", "bold yellow"))
        if self.diff_error:
            parts.append((f"diff: {self.diff_error}", "red"))
        if self.cache.last_error:
            parts.append((f"store: {self.cache.last_error}", "red"))
        bar = Text()
        for index, (value, style) in enumerate(parts):
            if index:
                bar.append(" | ")
            bar.append(value, style=style)
        self.query_one("#topbar", Static).update(bar)

    def visible_files(self) -> list[FileDiff]:
        needle = self.file_filter.casefold()
        if not needle:
            return list(self.files)
        return [item for item in self.files if needle in file_label(item).casefold()]

    def _render_files(self) -> None:
        table = self.query_one("#files", DataTable)
        table.clear()
        counts: dict[str, int] = {}
        for thread in self.cache.threads:
            counts[thread.comment.file_path] = counts.get(thread.comment.file_path, 0) + 1
        for item in self.visible_files():
            table.add_row(
                "[✓]" if item.path in self.viewed else "[ ]",
                Text(item.kind, style=FILE_KIND_STYLES.get(item.kind, "white")),
                Text(file_label(item)),
                str(item.additions),
                str(item.deletions),
                str(counts.get(item.path, 0) or ""),
                Text("●", style="yellow") if item.path in self.uncommitted else "",
                key=item.path,
            )

    def _selected_range(self) -> tuple[int, int] | None:
        if self.selection_anchor is None:
            return None
        cursor = self._cursor_index()
        return min(self.selection_anchor, cursor), max(self.selection_anchor, cursor)

    def _row_cells(self, row: ReviewRow, selected: bool) -> tuple[str, str, str, Text]:
        marker = "▌" if selected else ""
        if row.kind == "file":
            content = Text(row.path, style="bold cyan")
            if row.path in self.uncommitted:
                content.append(" (uncommitted)", style="yellow")
            if row.path in self.viewed:
                content.append(" (viewed)", style="dim")
            return marker, "", "", content
        if row.kind == "hunk" and row.hunk is not None:
            return marker, "", "", Text(row.hunk.header_line(), style="magenta")
        if row.kind == "line" and row.line is not None:
            line = row.line
            old = "" if line.old_line is None else str(line.old_line)
            new = "" if line.new_line is None else str(line.new_line)
            return marker, old, new, Text(f"{line.prefix}{line.text}", style=kind_style(line.kind))
        if row.kind == "orphans":
            return marker, "", "", Text("Comments on files outside this diff", style="bold yellow")
        if row.kind == "thread" and row.anchor is not None:
            thread = row.anchor.thread
            comment = thread.comment
            content = Text("  ")
            content.append(f"{status_icon(thread)} #{comment.id} [{status_label(thread)}]", style=status_style(thread.resolved))
            if row.anchor.status == ORPHANED:
                content.append(" [orphaned]", style="bold red")
            content.append(f" {comment.line_range_display()} {comment.author}: ", style="dim")
            content.append(summarize_body(comment.body))
            if thread.replies:
                content.append(f" ({len(thread.replies)} replies)", style="dim")
            return marker, "", "", content
        return marker, "", "", Text("")

    def _render_rows(self) -> None:
        table = self.query_one("#rows", DataTable)
        cursor = table.cursor_row if table.row_count else 0
        self.rows = build_review_rows(self.files, self.cache.threads, show_threads=self.show_threads)
        selected = self._selected_range()
        table.clear()
        for index, row in enumerate(self.rows):
            is_selected = selected is not None and selected[0] <= index <= selected[1]
            table.add_row(*self._row_cells(row, is_selected), key=str(index))
        if self.rows:
            table.move_cursor(row=min(cursor, len(self.rows) - 1))
        self._render_detail()

    def _refresh_selection_markers(self) -> None:
        table = self.query_one("#rows", DataTable)
        selected = self._selected_range()
        for index in range(min(table.row_count, len(self.rows))):
            is_selected = selected is not None and selected[0] <= index <= selected[1]
            table.update_cell_at((index, 0), "▌" if is_selected else "", update_width=False)

    def _render_detail(self) -> None:
        detail = self.query_one("#detail", Static)
        thread = self._thread_under_cursor()
        if thread is not None:
            detail.update(thread_text(thread))
            return
        row = self._current_row()
        if row is None:
            detail.update("No changes." if not self.files else "")
            return
        lines = [row.path] if row.path else []
        if row.file_index is not None:
            item = self.files[row.file_index]
            lines.append(f"{item.kind}  +{item.additions} -{item.deletions}")
            if item.path in self.uncommitted:
                lines.append("has uncommitted changes")
            if item.path in self.viewed:
                lines.append(f"viewed {relative_time(self.viewed[item.path])}")
        detail.update(Text("\n".join(lines)))

    # cursor helpers

    def _cursor_index(self) -> int:
        table = self.query_one("#rows", DataTable)
        return table.cursor_row if table.row_count else 0

    def _current_row(self) -> ReviewRow | None:
        if not self.rows:
            return None
        index = self._cursor_index()
        if 0 <= index < len(self.rows):
            return self.rows[index]
        return None

    def _thread_under_cursor(self) -> Thread | None:
        row = self._current_row()
        if row is None:
            return None
        if row.kind == "thread" and row.anchor is not None:
            return self.cache.thread(row.anchor.thread.id) or row.anchor.thread
        if row.kind == "line" and row.new_line is not None:
            found = threads_at_line(self.cache.threads, row.path, row.new_line)
            return found[0] if found else None
        return None

    def _current_file_path(self) -> str | None:
        row = self._current_row()
        if row is not None and row.file_index is not None:
            return row.path
        return None

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        if event.data_table.id == "rows":
            self._render_detail()
            if self.selection_anchor is not None:
                self._refresh_selection_markers()

    def on_data_table_row_selected(self, event: DataTable.RowSelected) -> None:
        if event.data_table.id != "files" or event.row_key.value is None:
            return
        path = event.row_key.value
        index = next((i for i, row in enumerate(self.rows) if row.kind == "file" and row.path == path), None)
        if index is not None:
            rows_table = self.query_one("#rows", DataTable)
            rows_table.move_cursor(row=index)
            rows_table.focus()

    # actions

    def action_toggle_selection(self) -> None:
        if self.selection_anchor is None:
            self.selection_anchor = self._cursor_index()
        else:
            self.selection_anchor = None
        self._render_rows()
        self._render_topbar()

    def action_clear_selection(self) -> None:
        if self.selection_anchor is not None:
            self.selection_anchor = None
            self._render_rows()
            self._render_topbar()

    def action_add_comment(self) -> None:
        cursor = self._cursor_index()
        start = self.selection_anchor if self.selection_anchor is not None else cursor
        target = selection_to_line_range(self.rows, start, cursor)
        if target is None:
            self.notify("Select lines on the new side of the diff to comment on.", severity="warning")
            return
        path, start_line, end_line = target
        label = f"L{start_line}" if start_line == end_line else f"L{start_line}-{end_line}"

        def _on_dismiss(result: str | None) -> None:
            if result is None:
                return
            try:
                comment = self.cache.add_comment(path, start_line, end_line, result, self.author)
            except ReviewError as error:
                self.notify(escape(str(error)), severity="error")
                return
            self.selection_anchor = None
            self._after_thread_change()
            self.notify(f"Added comment #{comment.id}")

        self.push_screen(TextModal(f"Comment on {path} {label}", "Write a comment..."), callback=_on_dismiss)

    def action_reply(self) -> None:
        thread = self._thread_under_cursor()
        if thread is None:
            self.notify("No comment thread under the cursor.", severity="warning")
            return

        def _on_dismiss(result: str | None) -> None:
            if result is None:
                return
            try:
                self.cache.add_reply(thread.id, result, self.author)
            except ReviewError as error:
                self.notify(escape(str(error)), severity="error")
                return
            self._after_thread_change()

        self.push_screen(TextModal(f"Reply to #{thread.id}", "Write a reply..."), callback=_on_dismiss)

    def action_toggle_resolved(self) -> None:
        thread = self._thread_under_cursor()
        if thread is None:
            self.notify("No comment thread under the cursor.", severity="warning")
            return
        try:
            resolved = self.cache.toggle_resolved(thread.id)
        except ReviewError as error:
            self.notify(escape(str(error)), severity="error")
            return
        self._after_thread_change()
        self.notify(f"{'Resolved' if resolved else 'Reopened'} #{thread.id}")

    def action_delete_thread(self) -> None:
        thread = self._thread_under_cursor()
        if thread is None:
            self.notify("No comment thread under the cursor.", severity="warning")
            return
        try:
            self.cache.delete_comment(thread.id)
        except ReviewError as error:
            self.notify(escape(str(error)), severity="error")
            return
        self._after_thread_change()
        self.notify(f"Deleted #{thread.id}")

    def action_toggle_threads(self) -> None:
        self.show_threads = not self.show_threads
        self.selection_anchor = None
        self._render_rows()
        self._render_topbar()

    def action_cycle_mode(self) -> None:
        index = DIFF_MODES.index(self.mode)
        self.mode = DIFF_MODES[(index + 1) % len(DIFF_MODES)]
        self.action_recompute()

    def action_recompute(self) -> None:
        try:
            context = self.context.refreshed()
        except ReviewError as error:
            self.notify(escape(str(error)), severity="error")
            context = self.context
        if context != self.context:
            logger.info("branch changed: %s -> %s", self.context.branch, context.branch)
            self.context = context
            self.cache.rescope(context.scope)
            self._refresh_viewed()
        self.selection_anchor = None
        self._load_diff()
        self.cache.poll()
        self._thread_signature = self._signature(self.cache.threads)
        self._render_all()

    def action_toggle_viewed(self) -> None:
        path = self._current_file_path()
        if path is None:
            self.notify("Move the cursor onto a file first.", severity="warning")
            return
        try:
            if path in self.viewed:
                self.store.unmark_viewed(self.context.scope, path)
            else:
                self.store.mark_viewed(self.context.scope, path)
        except ReviewError as error:
            self.notify(escape(str(error)), severity="error")
            return
        self._refresh_viewed()
        self._render_all()

    def action_clear_viewed(self) -> None:
        try:
            self.store.clear_viewed(self.context.scope)
        except ReviewError as error:
            self.notify(escape(str(error)), severity="error")
            return
        self._refresh_viewed()
        self._render_all()
        self.notify("Cleared viewed marks")

    def action_edit_comment(self) -> None:
        thread = self._thread_under_cursor()
        if thread is None:
            self.notify("No comment thread under the cursor.", severity="warning")
            return

        def _on_dismiss(result: str | None) -> None:
            if result is None or result == thread.comment.body:
                return
            try:
                self.cache.edit_comment(thread.id, result)
            except ReviewError as error:
                self.notify(escape(str(error)), severity="error")
                return
            self._after_thread_change()

        self.push_screen(
            TextModal(f"Edit #{thread.id}", "Comment body...", thread.comment.body),
            callback=_on_dismiss,
        )

    def action_filter_files(self) -> None:
        def _on_dismiss(result: str | None) -> None:
            if result is None:
                return
            self.file_filter = result
            self._render_files()
            self._render_topbar()

        self.push_screen(
            TextModal("Filter files", "Path contains... (empty clears)", self.file_filter, allow_empty=True),
            callback=_on_dismiss,
        )

    def _after_thread_change(self) -> None:
        self._thread_signature = self._signature(self.cache.threads)
        self._render_rows()
        self._render_files()
        self._render_topbar()


def launch_textual_viewer(
    context: RepoContext,
    store: ReviewStore,
    *,
    mode: str = "against-base",
    author: str = "Agent",
    poll_interval: float = 2.0,
    theme: str = "dark",
) -> int:
    app = PrPreviewApp(
        context,
        store,
        mode=mode,
        author=author,
        poll_interval=poll_interval,
        theme=theme,
    )
    app.run()
    return 0
