"""Module entrypoint for ``python -m ralph_town``."""

from __future__ import annotations

from ralph_town.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
