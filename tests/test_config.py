import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from prpreview.config import ReviewConfig, default_store_path, load_config, parse_config
from prpreview.errors import ValidationError


class TestConfig(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.home = Path(self._tmp.name)
        self._env = mock.patch.dict(os.environ, {"XDG_CONFIG_HOME": str(self.home)}, clear=False)
        self._env.start()
        os.environ.pop("PRPREVIEW_CONFIG", None)
        os.environ.pop("PRPREVIEW_STORE", None)

    def tearDown(self):
        self._env.stop()
        self._tmp.cleanup()

    def test_missing_default_file_gives_defaults(self):
        config = load_config()
        self.assertEqual(config, ReviewConfig(store_path=self.home / "prpreview" / "state.db"))
        self.assertEqual(config.poll_interval, 2.0)
        self.assertEqual(config.default_author, "Agent")

    def test_default_location_is_read(self):
        path = self.home / "prpreview" / "config.toml"
        path.parent.mkdir(parents=True)
        path.write_text(
            "\n".join(
                [
                    'store_path = "~/reviews.db"',
                    "poll_interval = 0.5",
                    "lock_timeout = 3",
                    'default_author = "reviewer"',
                    'base_branch = "develop"',
                    'theme = "light"',
                ]
            ),
            encoding="utf-8",
        )
        config = load_config()
        self.assertEqual(config.store_path, Path("~/reviews.db").expanduser())
        self.assertEqual(config.poll_interval, 0.5)
        self.assertEqual(config.lock_timeout, 3.0)
        self.assertEqual(config.default_author, "reviewer")
        self.assertEqual(config.base_branch, "develop")
        self.assertEqual(config.theme, "light")

    def test_explicit_path_must_exist(self):
        with self.assertRaises(ValidationError):
            load_config(self.home / "missing.toml")

    def test_env_config_path(self):
        path = self.home / "custom.toml"
        path.write_text('default_author = "from-env"\n', encoding="utf-8")
        with mock.patch.dict(os.environ, {"PRPREVIEW_CONFIG": str(path)}):
            self.assertEqual(load_config().default_author, "from-env")

    def test_store_env_overrides_file(self):
        with mock.patch.dict(os.environ, {"PRPREVIEW_STORE": str(self.home / "env.db")}):
            config = parse_config({"store_path": "/ignored.db"})
        self.assertEqual(config.store_path, self.home / "env.db")

    def test_invalid_values(self):
        for data in ({"poll_interval": 0}, {"lock_timeout": "soon"}, {"theme": "neon"}):
            with self.assertRaises(ValidationError):
                parse_config(data)

    def test_invalid_toml(self):
        path = self.home / "broken.toml"
        path.write_text("poll_interval = = 2", encoding="utf-8")
        with self.assertRaises(ValidationError):
            load_config(path)

    def test_default_store_path_follows_config_home(self):
        self.assertEqual(default_store_path(), self.home / "prpreview" / "state.db")


if __name__ == "__main__":
    unittest.main()
