"""Module entry point: python -m route_guard ..."""

from __future__ import annotations

from route_guard.cli import main


if __name__ == "__main__":
    raise SystemExit(main())
