"""Placement of stored comment threads onto a freshly computed diff.

Stored line ranges are facts about the comment and are never rewritten here.
A thread whose whole range is still on the new side of the diff is
``anchored``; one whose range is only partly present is ``clipped`` to what
remains; one with nothing left is ``orphaned`` and shown next to the closest
hunk (or the file header) instead of disappearing.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from .git_diff import DiffLine, FileDiff, Hunk
from .review_types import Thread

ANCHORED = "anchored"
CLIPPED = "clipped"
ORPHANED = "orphaned"


@dataclass(frozen=True)
class Anchor:
    thread: Thread
    status: str
    file_index: int | None = None
    hunk_index: int | None = None
    line: int | None = None
    visible_start: int | None = None
    visible_end: int | None = None
    before_hunk: bool = False


@dataclass(frozen=True)
class ReviewRow:
    kind: str  # file|hunk|line|thread|orphans
    path: str = ""
    file_index: int | None = None
    hunk: Hunk | None = None
    line: DiffLine | None = None
    anchor: Anchor | None = None

    @property
    def new_line(self) -> int | None:
        return self.line.new_line if self.line is not None else None


def _nearest_hunk(file_diff: FileDiff, start: int, end: int) -> tuple[int, bool] | None:
    best: tuple[int, int, bool] | None = None
    for index, hunk in enumerate(file_diff.hunks):
        if end < hunk.new_start:
            distance, before = hunk.new_start - end, True
        elif start > hunk.new_end:
            distance, before = start - hunk.new_end, False
        else:
            distance, before = 0, False
        if best is None or distance < best[0]:
            best = (distance, index, before)
    if best is None:
        return None
    return best[1], best[2]


def anchor_thread(files: list[FileDiff], thread: Thread) -> Anchor:
    comment = thread.comment
    file_index = next((index for index, item in enumerate(files) if item.path == comment.file_path), None)
    if file_index is None:
        return Anchor(thread=thread, status=ORPHANED)

    file_diff = files[file_index]
    new_lines = file_diff.new_side_lines()
    wanted = range(comment.start_line, comment.end_line + 1)
    present = [number for number in wanted if number in new_lines]
    if present and len(present) == len(wanted):
        return Anchor(
            thread=thread,
            status=ANCHORED,
            file_index=file_index,
            line=comment.end_line,
            visible_start=comment.start_line,
            visible_end=comment.end_line,
        )
    if present:
        return Anchor(
            thread=thread,
            status=CLIPPED,
            file_index=file_index,
            line=present[-1],
            visible_start=present[0],
            visible_end=present[-1],
        )

    nearest = _nearest_hunk(file_diff, comment.start_line, comment.end_line)
    if nearest is None:
        return Anchor(thread=thread, status=ORPHANED, file_index=file_index)
    hunk_index, before = nearest
    return Anchor(
        thread=thread,
        status=ORPHANED,
        file_index=file_index,
        hunk_index=hunk_index,
        before_hunk=before,
    )


def place_threads(files: list[FileDiff], threads: Iterable[Thread]) -> list[Anchor]:
    return [anchor_thread(files, thread) for thread in threads]


def build_review_rows(
    files: list[FileDiff],
    threads: Iterable[Thread],
    *,
    show_threads: bool = True,
) -> list[ReviewRow]:
    """Flatten the diff into display rows with thread rows inserted at their anchors."""
    anchors = place_threads(files, threads) if show_threads else []
    after_line: dict[tuple[int, int], list[Anchor]] = {}
    after_header: dict[int, list[Anchor]] = {}
    before_hunk: dict[tuple[int, int], list[Anchor]] = {}
    after_hunk: dict[tuple[int, int], list[Anchor]] = {}
    detached: list[Anchor] = []
    for anchor in anchors:
        if anchor.file_index is None:
            detached.append(anchor)
        elif anchor.line is not None:
            after_line.setdefault((anchor.file_index, anchor.line), []).append(anchor)
        elif anchor.hunk_index is None:
            after_header.setdefault(anchor.file_index, []).append(anchor)
        elif anchor.before_hunk:
            before_hunk.setdefault((anchor.file_index, anchor.hunk_index), []).append(anchor)
        else:
            after_hunk.setdefault((anchor.file_index, anchor.hunk_index), []).append(anchor)

    def thread_rows(items: list[Anchor], path: str, file_index: int | None) -> list[ReviewRow]:
        return [ReviewRow(kind="thread", path=path, file_index=file_index, anchor=item) for item in items]

    rows: list[ReviewRow] = []
    for file_index, file_diff in enumerate(files):
        path = file_diff.path
        rows.append(ReviewRow(kind="file", path=path, file_index=file_index))
        rows.extend(thread_rows(after_header.get(file_index, []), path, file_index))
        emitted: set[int] = set()
        for hunk_index, hunk in enumerate(file_diff.hunks):
            rows.extend(thread_rows(before_hunk.get((file_index, hunk_index), []), path, file_index))
            rows.append(ReviewRow(kind="hunk", path=path, file_index=file_index, hunk=hunk))
            for line in hunk.lines:
                rows.append(ReviewRow(kind="line", path=path, file_index=file_index, hunk=hunk, line=line))
                if line.new_line is not None and line.new_line not in emitted:
                    emitted.add(line.new_line)
                    rows.extend(thread_rows(after_line.get((file_index, line.new_line), []), path, file_index))
            rows.extend(thread_rows(after_hunk.get((file_index, hunk_index), []), path, file_index))

    if detached:
        rows.append(ReviewRow(kind="orphans"))
        for anchor in detached:
            rows.append(ReviewRow(kind="thread", path=anchor.thread.comment.file_path, anchor=anchor))
    return rows


def selection_to_line_range(rows: list[ReviewRow], start_idx: int, end_idx: int) -> tuple[str, int, int] | None:
    """Map a selection of display rows to a (path, start, end) range in new-file lines."""
    low, high = sorted((start_idx, end_idx))
    low = max(low, 0)
    high = min(high, len(rows) - 1)
    if low > high:
        return None
    path = rows[low].path
    numbered = [
        row.new_line
        for row in rows[low : high + 1]
        if row.kind == "line" and row.path == path and row.new_line is not None
    ]
    if not numbered:
        return None
    return path, min(numbered), max(numbered)


def threads_at_line(threads: Iterable[Thread], path: str, line: int) -> list[Thread]:
    return [thread for thread in threads if thread.comment.file_path == path and thread.comment.covers(line)]
