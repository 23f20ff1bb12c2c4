import contextlib
import importlib.util
import io
import json
import logging
import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from rich.console import Console

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from prpreview import cli
from prpreview.git_diff import run_git
from prpreview.log import configure_logging
from prpreview.review_store import ReviewStore
from prpreview.review_types import Scope


class CliTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name).resolve()
        self.store_path = self.tmp / "state.db"
        self._env = mock.patch.dict(os.environ, {"XDG_CONFIG_HOME": str(self.tmp / "config")})
        self._env.start()
        os.environ.pop("PRPREVIEW_CONFIG", None)
        os.environ.pop("PRPREVIEW_STORE", None)

    def tearDown(self):
        self._env.stop()
        self._tmp.cleanup()

    def run_cli(self, *argv: str) -> tuple[int, str, str]:
        stdout = io.StringIO()
        stderr = io.StringIO()
        console = Console(file=stdout, width=160, color_system=None)
        with contextlib.redirect_stdout(stdout), contextlib.redirect_stderr(stderr):
            code = cli.run(["--store", str(self.store_path), *argv], console=console)
        return code, stdout.getvalue(), stderr.getvalue()

    def seed_comment(self, scope: Scope) -> int:
        with ReviewStore(self.store_path) as store:
            return store.create_comment(scope, "src/app.rs", 10, 12, "Consider a guard here", "agent").id


class TestThreadCommands(CliTestCase):
    def test_show_resolve_reply_delete(self):
        comment_id = self.seed_comment(Scope(repo_path="/elsewhere", branch="feature"))

        code, out, _ = self.run_cli("show", str(comment_id), "--format", "json")
        self.assertEqual(code, 0)
        record = json.loads(out)
        self.assertEqual(record["id"], comment_id)
        self.assertEqual(record["resolved"], False)
        self.assertEqual((record["start_line"], record["end_line"]), (10, 12))

        code, out, _ = self.run_cli("reply", str(comment_id), "-m", "Done", "-a", "dev")
        self.assertEqual(code, 0)
        self.assertIn(f"to comment #{comment_id}", out)

        code, _, _ = self.run_cli("resolve", str(comment_id))
        self.assertEqual(code, 0)
        code, _, _ = self.run_cli("resolve", str(comment_id))
        self.assertEqual(code, 0)

        code, out, _ = self.run_cli("show", str(comment_id))
        self.assertEqual(code, 0)
        self.assertIn(f"✓ #{comment_id} [RESOLVED]", out)
        self.assertIn("↳ dev", out)

        code, _, _ = self.run_cli("unresolve", str(comment_id))
        self.assertEqual(code, 0)
        with ReviewStore(self.store_path) as store:
            thread = store.get_thread(comment_id)
        self.assertFalse(thread.resolved)
        self.assertEqual([item.body for item in thread.replies], ["Done"])

        code, out, _ = self.run_cli("delete", str(comment_id))
        self.assertEqual(code, 0)
        self.assertIn(f"Deleted comment #{comment_id}", out)

    def test_unknown_id_exits_with_2(self):
        for argv in (("show", "42"), ("resolve", "42"), ("delete", "42"), ("reply", "42", "-m", "x", "-a", "UT")):
            code, _, err = self.run_cli(*argv)
            self.assertEqual(code, 2, argv)
            self.assertIn("[error] Comment #42 not found", err)

    def test_ids_beyond_sqlite_integers_exit_with_2(self):
        huge = "99999999999999999999"
        for argv in (("show", huge), ("resolve", huge), ("reply", huge, "-m", "x", "-a", "UT"), ("delete-reply", huge)):
            code, _, err = self.run_cli(*argv)
            self.assertEqual(code, 2, argv)
            self.assertIn("not found", err)

    def test_edit_and_delete_reply(self):
        comment_id = self.seed_comment(Scope(repo_path="/elsewhere", branch="feature"))
        code, out, _ = self.run_cli("edit", str(comment_id), "-m", "Use a guard clause")
        self.assertEqual(code, 0)
        self.assertIn(f"Updated comment #{comment_id}", out)

        with ReviewStore(self.store_path) as store:
            keep = store.reply(comment_id, "keep", "dev")
            drop = store.reply(comment_id, "drop", "dev")
        code, out, _ = self.run_cli("delete-reply", str(drop.id))
        self.assertEqual(code, 0)
        self.assertIn(f"Deleted reply #{drop.id} from comment #{comment_id}", out)

        with ReviewStore(self.store_path) as store:
            thread = store.get_thread(comment_id)
        self.assertEqual(thread.comment.body, "Use a guard clause")
        self.assertEqual([item.id for item in thread.replies], [keep.id])

        code, _, err = self.run_cli("delete-reply", str(drop.id))
        self.assertEqual(code, 2)
        self.assertIn(f"Reply #{drop.id} not found", err)
        code, _, err = self.run_cli("edit", str(comment_id), "-m", "   ")
        self.assertEqual(code, 2)
        self.assertIn("[error]", err)

    def test_reply_without_author_outside_repository_uses_default(self):
        comment_id = self.seed_comment(Scope(repo_path="/elsewhere", branch="feature"))
        code, _, _ = self.run_cli("--path", str(self.tmp), "reply", str(comment_id), "-m", "hello")
        self.assertEqual(code, 0)
        with ReviewStore(self.store_path) as store:
            self.assertEqual(store.get_thread(comment_id).replies[0].author, "Agent")

    def test_invalid_status_is_rejected_by_parser(self):
        with contextlib.redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit) as caught:
                cli.parse_args(["comments", "--status", "closed"])
        self.assertEqual(caught.exception.code, 2)

    def test_missing_config_file_exits_with_2(self):
        code, _, err = self.run_cli("--config", str(self.tmp / "nope.toml"), "show", "1")
        self.assertEqual(code, 2)
        self.assertIn("Config file not found", err)

    def test_unavailable_store_exits_with_1(self):
        blocker = self.tmp / "blocker"
        blocker.write_text("file", encoding="utf-8")
        stderr = io.StringIO()
        with contextlib.redirect_stdout(io.StringIO()), contextlib.redirect_stderr(stderr):
            code = cli.run(["--store", str(blocker / "state.db"), "show", "1"])
        self.assertEqual(code, 1)
        self.assertIn("[error]", stderr.getvalue())


@unittest.skipUnless(shutil.which("git"), "git is not installed")
class TestRepositoryCommands(CliTestCase):
    def setUp(self):
        super().setUp()
        self.repo = self.tmp / "repo"
        self.repo.mkdir()
        run_git(self.repo, ["init"])
        run_git(self.repo, ["symbolic-ref", "HEAD", "refs/heads/main"])
        run_git(self.repo, ["config", "user.email", "ut@example.com"])
        run_git(self.repo, ["config", "user.name", "UT"])
        run_git(self.repo, ["config", "commit.gpgsign", "false"])
        (self.repo / "src").mkdir()
        (self.repo / "src" / "app.rs").write_text("".join(f"line {i}\n" for i in range(1, 21)), encoding="utf-8")
        run_git(self.repo, ["add", "-A"])
        run_git(self.repo, ["commit", "-q", "-m", "base"])
        run_git(self.repo, ["checkout", "-q", "-b", "feature"])
        lines = [f"line {i}\n" for i in range(1, 21)]
        lines[10] = "changed 11\n"
        (self.repo / "src" / "app.rs").write_text("".join(lines), encoding="utf-8")
        run_git(self.repo, ["commit", "-q", "-am", "change"])

    def test_comment_then_list(self):
        code, out, _ = self.run_cli("--path", str(self.repo), "comment", "src/app.rs", "10", "12", "-m", "Consider a guard here")
        self.assertEqual(code, 0)
        self.assertIn("Added comment #1 on src/app.rs lines 10-12", out)

        code, out, _ = self.run_cli("--path", str(self.repo), "comments", "--format", "json")
        self.assertEqual(code, 0)
        records = json.loads(out)
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0]["author"], "UT")
        self.assertEqual(records[0]["replies"], [])

        code, out, _ = self.run_cli("--path", str(self.repo), "comments")
        self.assertEqual(code, 0)
        self.assertIn("○ #1 [OPEN]", out)
        self.assertIn("File: src/app.rs L10-12", out)
        self.assertIn("Total: 1 comment(s)", out)

        code, out, _ = self.run_cli("--path", str(self.repo), "comments", "--status", "resolved")
        self.assertEqual(code, 0)
        self.assertIn("No comments found.", out)

    def test_comments_are_scoped_to_branch(self):
        self.run_cli("--path", str(self.repo), "comment", "src/app.rs", "11", "11", "-m", "on feature", "-a", "UT")
        run_git(self.repo, ["checkout", "-q", "main"])
        code, out, _ = self.run_cli("--path", str(self.repo), "comments", "--format", "json")
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(out), [])

    def test_invalid_range_exits_with_2(self):
        code, _, err = self.run_cli("--path", str(self.repo), "comment", "src/app.rs", "12", "10", "-m", "x")
        self.assertEqual(code, 2)
        self.assertIn("[error]", err)
        with ReviewStore(self.store_path) as store:
            self.assertEqual(store.list_threads(Scope(repo_path=str(self.repo), branch="feature")), [])

    def test_diff_json_includes_files_and_threads(self):
        self.run_cli("--path", str(self.repo), "comment", "src/app.rs", "11", "11", "-m", "why?", "-a", "UT")
        code, out, _ = self.run_cli("--path", str(self.repo), "diff", "--format", "json")
        self.assertEqual(code, 0)
        payload = json.loads(out)
        self.assertEqual(payload["branch"], "feature")
        self.assertEqual(payload["base"], "main")
        self.assertEqual([item["path"] for item in payload["files"]], ["src/app.rs"])
        self.assertEqual([item["body"] for item in payload["threads"]], ["why?"])

    def test_diff_text(self):
        code, out, _ = self.run_cli("--path", str(self.repo), "diff", "--mode", "committed")
        self.assertEqual(code, 0)
        self.assertIn("+changed 11", out)
        self.assertIn("feature -> main", out)
        self.assertIn("Commits", out)

    def test_commits_command(self):
        code, out, _ = self.run_cli("--path", str(self.repo), "commits", "--format", "json")
        self.assertEqual(code, 0)
        records = json.loads(out)
        self.assertEqual([item["subject"] for item in records], ["change"])
        self.assertEqual(records[0]["author"], "UT")

        code, out, _ = self.run_cli("--path", str(self.repo), "commits")
        self.assertEqual(code, 0)
        self.assertIn("Commits (1)", out)
        self.assertIn("change", out)

    def test_diff_sorts_by_churn_and_lists_commits(self):
        (self.repo / "big.txt").write_text("one\ntwo\nthree\n", encoding="utf-8")
        run_git(self.repo, ["add", "big.txt"])
        run_git(self.repo, ["commit", "-q", "-m", "big file"])
        code, out, _ = self.run_cli("--path", str(self.repo), "diff", "--format", "json", "--sort", "churn")
        self.assertEqual(code, 0)
        payload = json.loads(out)
        self.assertEqual([item["path"] for item in payload["files"]], ["big.txt", "src/app.rs"])
        self.assertEqual([item["subject"] for item in payload["commits"]], ["big file", "change"])

    def test_bracketed_paths_are_printed_literally(self):
        code, out, _ = self.run_cli("--path", str(self.repo), "comment", "src/[bold]x.rs", "1", "1", "-m", "odd name", "-a", "UT")
        self.assertEqual(code, 0)
        self.assertIn("on src/[bold]x.rs lines 1-1", out)

    def test_outside_repository_exits_with_1(self):
        outside = self.tmp / "outside"
        outside.mkdir()
        code, _, err = self.run_cli("--path", str(outside), "comments")
        self.assertEqual(code, 1)
        self.assertIn("Not inside a git repository", err)


class TestScriptAndLogging(CliTestCase):
    def test_script_wrapper_runs_cli(self):
        script_path = ROOT / "scripts" / "prpreview.py"
        spec = importlib.util.spec_from_file_location("prpreview_script", script_path)
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        stderr = io.StringIO()
        with contextlib.redirect_stdout(io.StringIO()), contextlib.redirect_stderr(stderr):
            code = module.run(["--store", str(self.store_path), "show", "7"])
        self.assertEqual(code, 2)
        self.assertIn("Comment #7 not found", stderr.getvalue())

    def test_verbose_logging_goes_through_rich_handler(self):
        buffer = io.StringIO()
        logger = configure_logging(True, console=Console(file=buffer, width=160, color_system=None))
        logging.getLogger("prpreview.review_store").debug("opened store for test")
        self.assertEqual(logger.level, logging.DEBUG)
        self.assertIn("opened store for test", buffer.getvalue())
        configure_logging(False, console=Console(file=io.StringIO()))
        self.assertEqual(logger.level, logging.WARNING)


if __name__ == "__main__":
    unittest.main()
