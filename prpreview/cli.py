from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable

from rich.console import Console
from rich.markup import escape

from .anchors import build_review_rows
from .config import ReviewConfig, load_config
from .errors import NotFoundError, RepositoryStateError, ReviewError, StoreUnavailableError, ValidationError
from .git_diff import (
    DIFF_MODES,
    RepoContext,
    commits_since,
    compute_diff,
    discover_scope,
    files_by_churn,
    find_repo_root,
    git_user_name,
)
from .log import configure_logging
from .render import render_commits, render_files, render_review_rows, render_summary, render_thread, render_threads
from .review_store import ReviewStore
from .review_types import STATUS_FILTERS

logger = logging.getLogger(__name__)


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="prpreview",
        description="Preview the current branch as a pull request and manage review comments.",
    )
    parser.add_argument("--path", default=".", help="Path inside the git repository (default: current directory).")
    parser.add_argument("--base", help="Base branch to compare against (default: auto-detect main/master).")
    parser.add_argument("--store", help="Review store database path (default: from config).")
    parser.add_argument("--config", help="Config TOML path (default: $PRPREVIEW_CONFIG or ~/.config/prpreview/config.toml).")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging on stderr.")
    sub = parser.add_subparsers(dest="command")

    comments = sub.add_parser("comments", help="List comment threads for the current branch.")
    comments.add_argument("--format", "-f", choices=["text", "json"], default="text")
    comments.add_argument("--status", "-s", choices=list(STATUS_FILTERS), default="all")

    show = sub.add_parser("show", help="Show one comment thread.")
    show.add_argument("id", type=int)
    show.add_argument("--format", "-f", choices=["text", "json"], default="text")

    comment = sub.add_parser("comment", help="Add a comment on new-file lines START..END of FILE.")
    comment.add_argument("file")
    comment.add_argument("start", type=int)
    comment.add_argument("end", type=int)
    comment.add_argument("--message", "-m", required=True)
    comment.add_argument("--author", "-a")

    reply = sub.add_parser("reply", help="Reply to a comment thread.")
    reply.add_argument("id", type=int)
    reply.add_argument("--message", "-m", required=True)
    reply.add_argument("--author", "-a")

    edit = sub.add_parser("edit", help="Replace the body of a comment.")
    edit.add_argument("id", type=int)
    edit.add_argument("--message", "-m", required=True)

    for name, text in (
        ("resolve", "Mark a comment as resolved."),
        ("unresolve", "Reopen a resolved comment."),
        ("delete", "Delete a comment and its replies."),
        ("delete-reply", "Delete a single reply by its id."),
    ):
        command = sub.add_parser(name, help=text)
        command.add_argument("id", type=int)

    commits = sub.add_parser("commits", help="List commits on the branch since the merge base.")
    commits.add_argument("--format", "-f", choices=["text", "json"], default="text")

    diff = sub.add_parser("diff", help="Print the branch diff with comment threads inline.")
    diff.add_argument("--mode", choices=list(DIFF_MODES), default="against-base")
    diff.add_argument("--format", "-f", choices=["text", "json"], default="text")
    diff.add_argument("--no-comments", action="store_true", help="Hide comment threads.")
    diff.add_argument("--max-lines", type=int, help="Limit the number of diff lines printed.")
    diff.add_argument("--sort", choices=["path", "churn"], default="path", help="File order (default: path).")

    view = sub.add_parser("view", help="Open the interactive viewer (default).")
    view.add_argument("--mode", choices=list(DIFF_MODES), default="against-base")
    return parser.parse_args(argv)


def print_json(value: Any) -> None:
    print(json.dumps(value, ensure_ascii=False, indent=2))


def open_store(args: argparse.Namespace, config: ReviewConfig) -> ReviewStore:
    path = Path(args.store).expanduser() if args.store else config.store_path
    return ReviewStore(path, lock_timeout=config.lock_timeout)


def resolve_author(args: argparse.Namespace, config: ReviewConfig) -> str:
    if args.author:
        return args.author
    try:
        repo_root = find_repo_root(Path(args.path))
    except RepositoryStateError:
        return config.default_author
    return git_user_name(repo_root, default=config.default_author)


def cmd_comments(args: argparse.Namespace, config: ReviewConfig, console: Console) -> int:
    scope = discover_scope(args.path)
    with open_store(args, config) as store:
        threads = store.list_threads(scope, args.status)
    if args.format == "json":
        print_json([thread.to_record() for thread in threads])
    else:
        render_threads(console, threads)
    return 0


def cmd_show(args: argparse.Namespace, config: ReviewConfig, console: Console) -> int:
    with open_store(args, config) as store:
        thread = store.get_thread(args.id)
    if args.format == "json":
        print_json(thread.to_record())
    else:
        render_thread(console, thread)
    return 0


def cmd_comment(args: argparse.Namespace, config: ReviewConfig, console: Console) -> int:
    scope = discover_scope(args.path)
    author = resolve_author(args, config)
    with open_store(args, config) as store:
        comment = store.create_comment(scope, args.file, args.start, args.end, args.message, author)
    console.print(
        f"Added comment #{comment.id} on {escape(comment.file_path)} lines {comment.start_line}-{comment.end_line}"
    )
    return 0


def cmd_edit(args: argparse.Namespace, config: ReviewConfig, console: Console) -> int:
    with open_store(args, config) as store:
        store.update_comment(args.id, args.message)
    console.print(f"Updated comment #{args.id}")
    return 0


def cmd_reply(args: argparse.Namespace, config: ReviewConfig, console: Console) -> int:
    author = resolve_author(args, config)
    with open_store(args, config) as store:
        reply = store.reply(args.id, args.message, author)
    console.print(f"Added reply #{reply.id} to comment #{args.id}")
    return 0


def cmd_resolve(args: argparse.Namespace, config: ReviewConfig, console: Console) -> int:
    with open_store(args, config) as store:
        store.resolve(args.id)
    console.print(f"Resolved comment #{args.id}")
    return 0


def cmd_unresolve(args: argparse.Namespace, config: ReviewConfig, console: Console) -> int:
    with open_store(args, config) as store:
        store.unresolve(args.id)
    console.print(f"Unresolved comment #{args.id}")
    return 0


def cmd_delete(args: argparse.Namespace, config: ReviewConfig, console: Console) -> int:
    with open_store(args, config) as store:
        store.delete(args.id)
    console.print(f"Deleted comment #{args.id}")
    return 0


def cmd_delete_reply(args: argparse.Namespace, config: ReviewConfig, console: Console) -> int:
    with open_store(args, config) as store:
        reply = store.delete_reply(args.id)
    console.print(f"Deleted reply #{reply.id} from comment #{reply.comment_id}")
    return 0


def cmd_commits(args: argparse.Namespace, config: ReviewConfig, console: Console) -> int:
    context = RepoContext.discover(args.path, args.base or config.base_branch)
    commits = commits_since(context)
    if args.format == "json":
        print_json([commit.to_record() for commit in commits])
    else:
        render_commits(console, commits)
    return 0


def cmd_diff(args: argparse.Namespace, config: ReviewConfig, console: Console) -> int:
    context = RepoContext.discover(args.path, args.base or config.base_branch)
    files = compute_diff(context, args.mode)
    if args.sort == "churn":
        files = files_by_churn(files)
    # the uncommitted mode never looks at the base, so it has no commit range
    commits = commits_since(context) if args.mode != "uncommitted" else None
    threads = []
    if not args.no_comments:
        with open_store(args, config) as store:
            threads = store.list_threads(context.scope, "all")
    if args.format == "json":
        print_json(
            {
                "repo": str(context.repo_root),
                "branch": context.branch,
                "base": context.base_ref,
                "mode": args.mode,
                "commits": [commit.to_record() for commit in commits or []],
                "files": [item.to_record() for item in files],
                "threads": [thread.to_record() for thread in threads],
            }
        )
        return 0
    render_summary(console, context, files, args.mode, threads, commits)
    render_files(console, files)
    render_review_rows(console, build_review_rows(files, threads), max_lines=args.max_lines)
    return 0


def cmd_view(args: argparse.Namespace, config: ReviewConfig, console: Console) -> int:
    context = RepoContext.discover(args.path, args.base or config.base_branch)
    try:
        from .viewer_textual import launch_textual_viewer
    except ImportError as error:
        print(f"[error] textual UI is unavailable: {error}. Install dependencies: python -m pip install -e .", file=sys.stderr)
        return 1
    author = git_user_name(context.repo_root, default=config.default_author)
    with open_store(args, config) as store:
        return launch_textual_viewer(
            context,
            store,
            mode=getattr(args, "mode", "against-base"),
            author=author,
            poll_interval=config.poll_interval,
            theme=config.theme,
        )


HANDLERS: dict[str, Callable[[argparse.Namespace, ReviewConfig, Console], int]] = {
    "comments": cmd_comments,
    "show": cmd_show,
    "comment": cmd_comment,
    "reply": cmd_reply,
    "edit": cmd_edit,
    "resolve": cmd_resolve,
    "unresolve": cmd_unresolve,
    "delete": cmd_delete,
    "delete-reply": cmd_delete_reply,
    "commits": cmd_commits,
    "diff": cmd_diff,
    "view": cmd_view,
}


def run(argv: list[str], *, console: Console | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.verbose)
    console = console or Console()
    command = args.command or "view"
    try:
        config = load_config(Path(args.config) if args.config else None)
        return HANDLERS[command](args, config, console)
    except (ValidationError, NotFoundError) as error:
        print(f"[error] {error}", file=sys.stderr)
        return 2
    except (RepositoryStateError, StoreUnavailableError) as error:
        print(f"[error] {error}", file=sys.stderr)
        return 1
    except ReviewError as error:
        logger.debug("unclassified review error", exc_info=True)
        print(f"[error] {error}", file=sys.stderr)
        return 1


def main() -> int:
    return run(sys.argv[1:])


if __name__ == "__main__":
    raise SystemExit(main())
