from __future__ import annotations

import time

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .anchors import ORPHANED, ReviewRow
from .git_diff import Commit, FileDiff, RepoContext, total_stats
from .review_types import Thread

RULE = "─" * 38


def relative_time(epoch_ms: int, now_ms: int | None = None) -> str:
    now = now_ms if now_ms is not None else int(time.time() * 1000)
    seconds = max(0, (now - epoch_ms) // 1000)
    steps = [
        (2592000, "month"),
        (604800, "week"),
        (86400, "day"),
        (3600, "hour"),
        (60, "minute"),
    ]
    for size, unit in steps:
        if seconds >= size:
            count = seconds // size
            return f"{count} {unit}{'' if count == 1 else 's'} ago"
    return "just now"


def status_style(resolved: bool) -> str:
    return "green" if resolved else "yellow"


def status_icon(thread: Thread) -> str:
    return "✓" if thread.resolved else "○"


def status_label(thread: Thread) -> str:
    return "RESOLVED" if thread.resolved else "OPEN"


def kind_style(kind: str) -> str:
    if kind == "added":
        return "green"
    if kind == "removed":
        return "red"
    return "white"


def file_label(item: FileDiff) -> str:
    return item.path if not item.old_path else f"{item.old_path} -> {item.path}"


def render_summary(
    console: Console,
    context: RepoContext,
    files: list[FileDiff],
    mode: str,
    threads: list[Thread],
    commits: list[Commit] | None = None,
) -> None:
    additions, deletions = total_stats(files)
    open_count = sum(1 for item in threads if not item.resolved)
    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()
    # repository paths and branch names are data, never markup
    table.add_row("Repository", Text(str(context.repo_root)))
    table.add_row("Branch", Text(f"{context.branch} -> {context.base_ref}"))
    table.add_row("Mode", mode)
    if commits is not None:
        table.add_row("Commits", str(len(commits)))
    table.add_row("Files", str(len(files)))
    table.add_row("Changes", f"+{additions} -{deletions}")
    table.add_row("Comments", f"{len(threads)} ({open_count} open)")
    console.print(Panel(table, title="Branch Review", border_style="blue"))


def render_commits(console: Console, commits: list[Commit], *, now_ms: int | None = None) -> None:
    if not commits:
        console.print("No commits since the merge base.")
        return
    table = Table(title=f"Commits ({len(commits)})", header_style="bold magenta")
    table.add_column("hash", style="yellow", no_wrap=True)
    table.add_column("message", overflow="ellipsis")
    table.add_column("author")
    table.add_column("time", style="dim", no_wrap=True)
    for commit in commits:
        table.add_row(
            commit.short_hash,
            Text(commit.subject),
            Text(commit.author),
            relative_time(commit.timestamp * 1000, now_ms),
        )
    console.print(table)


def render_files(console: Console, files: list[FileDiff]) -> None:
    table = Table(title=f"Files ({len(files)})", header_style="bold magenta")
    table.add_column("kind", no_wrap=True)
    table.add_column("path", overflow="ellipsis")
    table.add_column("+", justify="right", style="green")
    table.add_column("-", justify="right", style="red")
    for item in files:
        table.add_row(item.kind, Text(file_label(item)), str(item.additions), str(item.deletions))
    console.print(table)


def thread_text(thread: Thread, *, now_ms: int | None = None) -> Text:
    comment = thread.comment
    text = Text()
    text.append(f"{status_icon(thread)} #{comment.id} [{status_label(thread)}]\n", style=status_style(thread.resolved))
    text.append(f"  File: {comment.file_path} {comment.line_range_display()}\n", style="cyan")
    text.append(f"  Author: {comment.author} ({relative_time(comment.created_at, now_ms)})\n", style="dim")
    text.append("\n".join(f"  {line}" for line in comment.body.splitlines()))
    for reply in thread.replies:
        text.append(f"\n\n    ↳ {reply.author} ({relative_time(reply.created_at, now_ms)})", style="dim")
        for line in reply.body.splitlines():
            text.append(f"\n      {line}")
    return text


def render_thread(console: Console, thread: Thread) -> None:
    console.print(Panel(thread_text(thread), border_style=status_style(thread.resolved)))


def render_threads(console: Console, threads: list[Thread]) -> None:
    if not threads:
        console.print("No comments found.")
        return
    for thread in threads:
        console.print(RULE)
        console.print(thread_text(thread))
    console.print(RULE)
    console.print(f"\nTotal: {len(threads)} comment(s)")


def render_review_rows(console: Console, rows: list[ReviewRow], *, max_lines: int | None = None) -> None:
    shown = 0
    body: list[Text | Panel] = []
    for row in rows:
        if row.kind == "file":
            body.append(Text(f"\n{row.path}", style="bold cyan"))
        elif row.kind == "hunk" and row.hunk is not None:
            body.append(Text(row.hunk.header_line(), style="magenta"))
        elif row.kind == "line" and row.line is not None:
            if max_lines is not None and shown >= max_lines:
                continue
            shown += 1
            line = row.line
            old = "" if line.old_line is None else str(line.old_line)
            new = "" if line.new_line is None else str(line.new_line)
            body.append(Text(f"{old:>5} {new:>5} {line.prefix}{line.text}", style=kind_style(line.kind)))
        elif row.kind == "orphans":
            body.append(Text("\nComments on files outside this diff", style="bold yellow"))
        elif row.kind == "thread" and row.anchor is not None:
            title = "orphaned" if row.anchor.status == ORPHANED else row.anchor.status
            body.append(
                Panel(
                    thread_text(row.anchor.thread),
                    title=title,
                    title_align="left",
                    border_style=status_style(row.anchor.thread.resolved),
                )
            )
    console.print(Group(*body))
