#!/usr/bin/env python3
from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from prpreview.cli import parse_args as parse_cli_args, run as run_cli  # noqa: E402


def parse_args(argv: list[str]):
    return parse_cli_args(argv)


def run(argv: list[str]) -> int:
    return run_cli(argv)


def main() -> int:
    return run_cli(sys.argv[1:])


if __name__ == "__main__":
    raise SystemExit(main())
