from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .errors import ValidationError

CONFIG_ENV = "PRPREVIEW_CONFIG"
STORE_ENV = "PRPREVIEW_STORE"
VALID_THEMES = {"dark", "light"}


def config_home() -> Path:
    raw = os.environ.get("XDG_CONFIG_HOME", "").strip()
    return Path(raw).expanduser() if raw else Path.home() / ".config"


def default_store_path() -> Path:
    return config_home() / "prpreview" / "state.db"


def default_config_path() -> Path:
    return config_home() / "prpreview" / "config.toml"


@dataclass(frozen=True)
class ReviewConfig:
    store_path: Path
    poll_interval: float = 2.0
    lock_timeout: float = 5.0
    default_author: str = "Agent"
    base_branch: str | None = None
    theme: str = "dark"


def _positive_float(data: dict[str, Any], key: str, default: float) -> float:
    value = data.get(key, default)
    try:
        number = float(value)
    except (TypeError, ValueError) as error:
        raise ValidationError(f"config {key} must be a number: {value!r}") from error
    if number <= 0:
        raise ValidationError(f"config {key} must be > 0: {value!r}")
    return number


def parse_config(data: dict[str, Any]) -> ReviewConfig:
    store_raw = os.environ.get(STORE_ENV, "").strip() or str(data.get("store_path") or "")
    store_path = Path(store_raw).expanduser() if store_raw else default_store_path()

    theme = str(data.get("theme") or "dark").strip().lower()
    if theme not in VALID_THEMES:
        raise ValidationError(f"config theme must be one of {', '.join(sorted(VALID_THEMES))}: {theme!r}")

    base_branch = str(data.get("base_branch") or "").strip() or None
    default_author = str(data.get("default_author") or "Agent").strip() or "Agent"

    return ReviewConfig(
        store_path=store_path,
        poll_interval=_positive_float(data, "poll_interval", 2.0),
        lock_timeout=_positive_float(data, "lock_timeout", 5.0),
        default_author=default_author,
        base_branch=base_branch,
        theme=theme,
    )


def load_config(path: Path | None = None) -> ReviewConfig:
    """Read the TOML config; a missing default file means all defaults."""
    explicit = path is not None
    if path is None:
        env_path = os.environ.get(CONFIG_ENV, "").strip()
        if env_path:
            path, explicit = Path(env_path), True
        else:
            path = default_config_path()
    path = path.expanduser()
    if not path.exists():
        if explicit:
            raise ValidationError(f"Config file not found: {path}")
        return parse_config({})
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as error:
        raise ValidationError(f"Invalid config TOML in {path}: {error}") from error
    return parse_config(data)
