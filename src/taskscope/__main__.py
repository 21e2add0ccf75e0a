"""Module entrypoint for ``python -m taskscope``."""

from __future__ import annotations

from taskscope.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
