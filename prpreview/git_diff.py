from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .errors import RepositoryStateError, ValidationError
from .review_types import Scope

logger = logging.getLogger(__name__)

HUNK_HEADER_RE = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? "
    r"\+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@(?P<header>.*)$"
)

DIFF_MODES = ("against-base", "committed", "uncommitted")
BASE_BRANCH_CANDIDATES = ("main", "master", "develop", "dev")


@dataclass(frozen=True)
class DiffLine:
    kind: str  # context|added|removed
    text: str
    old_line: int | None = None
    new_line: int | None = None

    @property
    def prefix(self) -> str:
        return {"context": " ", "added": "+", "removed": "-"}.get(self.kind, "?")


@dataclass(frozen=True)
class Hunk:
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: tuple[DiffLine, ...] = ()
    header: str = ""

    def header_line(self) -> str:
        suffix = f" {self.header}" if self.header else ""
        return f"@@ -{self.old_start},{self.old_count} +{self.new_start},{self.new_count} @@{suffix}"

    @property
    def new_end(self) -> int:
        return self.new_start + max(self.new_count, 1) - 1


@dataclass(frozen=True)
class FileDiff:
    path: str
    kind: str
    hunks: tuple[Hunk, ...] = ()
    old_path: str | None = None

    @property
    def additions(self) -> int:
        return sum(1 for hunk in self.hunks for line in hunk.lines if line.kind == "added")

    @property
    def deletions(self) -> int:
        return sum(1 for hunk in self.hunks for line in hunk.lines if line.kind == "removed")

    def new_side_lines(self) -> set[int]:
        return {
            line.new_line
            for hunk in self.hunks
            for line in hunk.lines
            if line.new_line is not None
        }

    def to_record(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "old_path": self.old_path,
            "kind": self.kind,
            "additions": self.additions,
            "deletions": self.deletions,
            "hunks": [
                {
                    "old_start": hunk.old_start,
                    "old_count": hunk.old_count,
                    "new_start": hunk.new_start,
                    "new_count": hunk.new_count,
                    "header": hunk.header,
                    "lines": [
                        {
                            "kind": line.kind,
                            "text": line.text,
                            "old_line": line.old_line,
                            "new_line": line.new_line,
                        }
                        for line in hunk.lines
                    ],
                }
                for hunk in self.hunks
            ],
        }


@dataclass(frozen=True)
class Commit:
    hash: str
    short_hash: str
    author: str
    email: str
    timestamp: int
    subject: str

    def to_record(self) -> dict[str, Any]:
        return {
            "hash": self.hash,
            "short_hash": self.short_hash,
            "author": self.author,
            "email": self.email,
            "timestamp": self.timestamp,
            "subject": self.subject,
        }


@dataclass(frozen=True)
class RepoContext:
    """Repository root, current branch and the base reference the review diffs against."""

    repo_root: Path
    branch: str
    base_ref: str

    @property
    def scope(self) -> Scope:
        return Scope(repo_path=str(self.repo_root), branch=self.branch)

    @classmethod
    def discover(cls, path: Path | str = ".", base_ref: str | None = None) -> "RepoContext":
        repo_root = find_repo_root(Path(path))
        ensure_has_commits(repo_root)
        branch = current_branch(repo_root)
        base = resolve_base_ref(repo_root, base_ref) if base_ref else detect_base_branch(repo_root)
        return cls(repo_root=repo_root, branch=branch, base_ref=base)

    def refreshed(self) -> "RepoContext":
        """Re-derive the context; the branch may have changed under the same checkout."""
        branch = current_branch(self.repo_root)
        if branch == self.branch:
            return self
        return RepoContext(repo_root=self.repo_root, branch=branch, base_ref=self.base_ref)


def run_git(repo: Path, args: list[str]) -> str:
    logger.debug("git %s (in %s)", " ".join(args), repo)
    try:
        # bytes, so carriage returns in file content survive decoding
        process = subprocess.run(
            ["git", "-C", str(repo), *args],
            capture_output=True,
            check=False,
        )
    except FileNotFoundError as error:
        raise RepositoryStateError("git executable not found on PATH") from error
    stdout = process.stdout.decode("utf-8", errors="replace")
    if process.returncode != 0:
        stderr = process.stderr.decode("utf-8", errors="replace")
        message = stderr.strip() or stdout.strip()
        raise RepositoryStateError(f"git {' '.join(args)} failed: {message}")
    return stdout


def git_succeeds(repo: Path, args: list[str]) -> bool:
    try:
        run_git(repo, args)
    except RepositoryStateError:
        return False
    return True


def find_repo_root(path: Path) -> Path:
    start = path if path.is_dir() else path.parent
    if not start.exists():
        raise RepositoryStateError(f"Path does not exist: {path}")
    try:
        top = run_git(start, ["rev-parse", "--show-toplevel"]).strip()
    except RepositoryStateError as error:
        raise RepositoryStateError(f"Not inside a git repository: {start}") from error
    return Path(top).resolve()


def ensure_has_commits(repo: Path) -> None:
    if not git_succeeds(repo, ["rev-parse", "--verify", "--quiet", "HEAD^{commit}"]):
        raise RepositoryStateError(f"Repository has no commits yet: {repo}")


def current_branch(repo: Path) -> str:
    try:
        name = run_git(repo, ["symbolic-ref", "--short", "-q", "HEAD"]).strip()
    except RepositoryStateError:
        name = ""
    if name:
        return name
    # detached HEAD
    return run_git(repo, ["rev-parse", "--short=7", "HEAD"]).strip()


def resolve_base_ref(repo: Path, name: str) -> str:
    if git_succeeds(repo, ["rev-parse", "--verify", "--quiet", f"refs/heads/{name}"]):
        return name
    if git_succeeds(repo, ["rev-parse", "--verify", "--quiet", f"refs/remotes/origin/{name}"]):
        return f"origin/{name}"
    if git_succeeds(repo, ["rev-parse", "--verify", "--quiet", f"{name}^{{commit}}"]):
        return name
    raise RepositoryStateError(f"Base reference not found: {name}")


def detect_base_branch(repo: Path) -> str:
    for candidate in BASE_BRANCH_CANDIDATES:
        if git_succeeds(repo, ["rev-parse", "--verify", "--quiet", f"refs/heads/{candidate}"]):
            return candidate
        if git_succeeds(repo, ["rev-parse", "--verify", "--quiet", f"refs/remotes/origin/{candidate}"]):
            return f"origin/{candidate}"
    raise RepositoryStateError(
        f"Could not detect base branch. Tried: {', '.join(BASE_BRANCH_CANDIDATES)}"
    )


def discover_scope(path: Path | str = ".") -> Scope:
    """Scope of the checkout containing ``path``; needs no base reference."""
    repo_root = find_repo_root(Path(path))
    return Scope(repo_path=str(repo_root), branch=current_branch(repo_root))


def merge_base(context: RepoContext) -> str:
    try:
        return run_git(context.repo_root, ["merge-base", context.base_ref, "HEAD"]).strip()
    except RepositoryStateError as error:
        raise RepositoryStateError(
            f"No common ancestor between HEAD and {context.base_ref}"
        ) from error


def git_user_name(repo: Path, default: str = "Agent") -> str:
    try:
        name = run_git(repo, ["config", "user.name"]).strip()
    except RepositoryStateError:
        return default
    return name or default


def commits_since(context: RepoContext) -> list[Commit]:
    base = merge_base(context)
    raw = run_git(
        context.repo_root,
        ["log", "--no-color", "--format=%H%x1f%h%x1f%an%x1f%ae%x1f%at%x1f%s%x1e", f"{base}..HEAD"],
    )
    commits: list[Commit] = []
    for record in raw.split("\x1e"):
        record = record.strip()
        if not record:
            continue
        parts = record.split("\x1f")
        if len(parts) != 6:
            continue
        commits.append(
            Commit(
                hash=parts[0],
                short_hash=parts[1],
                author=parts[2],
                email=parts[3],
                timestamp=int(parts[4] or 0),
                subject=parts[5],
            )
        )
    return commits


def unquote_diff_path(raw: str) -> str:
    value = raw.strip()
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        inner = value[1:-1]
        decoded = inner.encode("latin-1", "backslashreplace").decode("unicode_escape")
        return decoded.encode("latin-1", "replace").decode("utf-8", "replace")
    return value


def normalize_diff_path(raw: str) -> str | None:
    value = unquote_diff_path(raw.split("\t", 1)[0])
    if value == "/dev/null":
        return None
    if value.startswith("a/") or value.startswith("b/"):
        return value[2:]
    return value


def _split_git_header(line: str) -> tuple[str | None, str | None]:
    rest = line[len("diff --git "):]
    if rest.startswith('"'):
        parts = rest.split('" ', 1)
        if len(parts) == 2:
            return normalize_diff_path(parts[0] + '"'), normalize_diff_path(parts[1])
    candidates = [match.start() for match in re.finditer(r" b/", rest)]
    for index in candidates:
        left, right = rest[:index], rest[index + 1:]
        if left[2:] == right[2:]:
            return normalize_diff_path(left), normalize_diff_path(right)
    if candidates:
        index = candidates[0]
        return normalize_diff_path(rest[:index]), normalize_diff_path(rest[index + 1:])
    return None, None


def _classify_file(entry: dict[str, Any]) -> str:
    if entry["binary"]:
        return "binary"
    if entry["added"]:
        return "added"
    if entry["deleted"]:
        return "deleted"
    if entry["renamed"]:
        return "renamed"
    if entry["mode_changed"] and not entry["hunks"]:
        return "mode"
    return "modified"


def _finish_file(entry: dict[str, Any]) -> FileDiff:
    path = entry["b_path"] or entry["a_path"] or "UNKNOWN"
    old_path = entry["a_path"] if entry["a_path"] and entry["a_path"] != path else None
    kind = _classify_file(entry)
    hunks = tuple(entry["hunks"]) if kind != "binary" else ()
    return FileDiff(path=path, kind=kind, hunks=hunks, old_path=old_path)


def split_diff_lines(diff_text: str) -> list[str]:
    """Split on LF only; form feeds and other separators are file content."""
    lines = diff_text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def parse_unified_diff(diff_text: str) -> list[FileDiff]:
    lines = split_diff_lines(diff_text)
    files: list[FileDiff] = []
    current_file: dict[str, Any] | None = None
    hunk_head: dict[str, Any] | None = None
    hunk_lines: list[DiffLine] = []
    old_cursor = new_cursor = 0
    old_left = new_left = 0

    def close_hunk() -> None:
        nonlocal hunk_head, hunk_lines
        if current_file is not None and hunk_head is not None:
            current_file["hunks"].append(Hunk(lines=tuple(hunk_lines), **hunk_head))
        hunk_head = None
        hunk_lines = []

    for line in lines:
        if hunk_head is not None and (old_left > 0 or new_left > 0):
            marker = line[:1]
            if marker == " " or (line == "" and old_left > 0 and new_left > 0):
                hunk_lines.append(DiffLine("context", line[1:], old_cursor, new_cursor))
                old_cursor += 1
                new_cursor += 1
                old_left -= 1
                new_left -= 1
                continue
            if marker == "-" and old_left > 0:
                hunk_lines.append(DiffLine("removed", line[1:], old_cursor, None))
                old_cursor += 1
                old_left -= 1
                continue
            if marker == "+" and new_left > 0:
                hunk_lines.append(DiffLine("added", line[1:], None, new_cursor))
                new_cursor += 1
                new_left -= 1
                continue
            if marker == "\\":
                continue

        if line.startswith("\\ "):
            # "\ No newline at end of file" is not a row
            continue

        if line.startswith("diff --git "):
            close_hunk()
            if current_file is not None:
                files.append(_finish_file(current_file))
            a_path, b_path = _split_git_header(line)
            current_file = {
                "a_path": a_path,
                "b_path": b_path,
                "hunks": [],
                "binary": False,
                "added": False,
                "deleted": False,
                "renamed": False,
                "mode_changed": False,
            }
            continue

        if current_file is None:
            continue

        if line.startswith("@@ "):
            close_hunk()
            match = HUNK_HEADER_RE.match(line)
            if not match:
                raise RepositoryStateError(f"Unsupported hunk header: {line}")
            old_start = int(match.group("old_start"))
            old_count = int(match.group("old_count") or "1")
            new_start = int(match.group("new_start"))
            new_count = int(match.group("new_count") or "1")
            hunk_head = {
                "old_start": old_start,
                "old_count": old_count,
                "new_start": new_start,
                "new_count": new_count,
                "header": match.group("header").strip(),
            }
            old_cursor, new_cursor = old_start, new_start
            old_left, new_left = old_count, new_count
            continue

        close_hunk()
        if line.startswith("--- "):
            current_file["a_path"] = normalize_diff_path(line[4:])
            if current_file["a_path"] is None:
                current_file["added"] = True
        elif line.startswith("+++ "):
            current_file["b_path"] = normalize_diff_path(line[4:])
            if current_file["b_path"] is None:
                current_file["deleted"] = True
        elif line.startswith("new file mode"):
            current_file["added"] = True
        elif line.startswith("deleted file mode"):
            current_file["deleted"] = True
        elif line.startswith("rename from "):
            current_file["renamed"] = True
            current_file["a_path"] = unquote_diff_path(line[len("rename from "):])
        elif line.startswith("rename to "):
            current_file["renamed"] = True
            current_file["b_path"] = unquote_diff_path(line[len("rename to "):])
        elif line.startswith("old mode") or line.startswith("new mode"):
            current_file["mode_changed"] = True
        elif line.startswith("Binary files ") or line.startswith("GIT binary patch"):
            current_file["binary"] = True

    close_hunk()
    if current_file is not None:
        files.append(_finish_file(current_file))
    return files


def diff_args_for_mode(context: RepoContext, mode: str) -> list[str]:
    # explicit prefixes override diff.noprefix / diff.mnemonicPrefix from user config
    base_args = [
        "diff",
        "--no-color",
        "--no-ext-diff",
        "--src-prefix=a/",
        "--dst-prefix=b/",
        "--find-renames=50%",
        "-U3",
    ]
    if mode == "uncommitted":
        # index vs working tree: staged changes are excluded
        return base_args
    base = merge_base(context)
    if mode == "committed":
        return [*base_args, base, "HEAD"]
    if mode == "against-base":
        return [*base_args, base]
    raise ValidationError(f"Unknown diff mode: {mode}")


def compute_diff(context: RepoContext, mode: str = "against-base") -> list[FileDiff]:
    """Return the line-classified diff for ``context`` in the requested mode.

    ``against-base`` compares the merge-base of the base reference and HEAD with the
    working tree, ``committed`` stops at HEAD, and ``uncommitted`` compares the index
    with the working tree. Raises RepositoryStateError before any output is produced
    when the repository cannot answer.
    """
    if mode not in DIFF_MODES:
        raise ValidationError(f"Unknown diff mode: {mode} (expected one of {', '.join(DIFF_MODES)})")
    ensure_has_commits(context.repo_root)
    if mode != "uncommitted":
        resolve_base_ref(context.repo_root, context.base_ref)
    diff_text = run_git(context.repo_root, diff_args_for_mode(context, mode))
    files = parse_unified_diff(diff_text)
    logger.debug("computed %s diff for %s: %d file(s)", mode, context.scope.label(), len(files))
    return files


def uncommitted_paths(repo: Path) -> set[str]:
    """Paths the ``uncommitted`` mode would show (index vs working tree)."""
    raw = run_git(repo, ["diff", "--no-ext-diff", "--name-only", "-z"])
    return {item for item in raw.split("\0") if item}


def worktree_fingerprint(repo: Path) -> tuple:
    """Cheap snapshot of HEAD plus dirty tracked files; it changes when a recompute would."""
    head = run_git(repo, ["rev-parse", "HEAD"]).strip()
    raw = run_git(repo, ["status", "--porcelain=v1", "-z", "--untracked-files=no"])
    entries: list[tuple[str, int, int]] = []
    records = iter(raw.split("\0"))
    for record in records:
        if len(record) < 4:
            continue
        if record[0] in "RC":
            # the rename source follows as a bare path
            next(records, None)
        path = record[3:]
        try:
            stat = (repo / path).stat()
        except OSError:
            entries.append((record, -1, -1))
            continue
        entries.append((record, stat.st_mtime_ns, stat.st_size))
    return head, current_branch(repo), tuple(sorted(entries))


def total_stats(files: list[FileDiff]) -> tuple[int, int]:
    return sum(item.additions for item in files), sum(item.deletions for item in files)


def files_by_churn(files: list[FileDiff]) -> list[FileDiff]:
    return sorted(files, key=lambda item: item.additions + item.deletions, reverse=True)
