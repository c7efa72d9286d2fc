"""Module entrypoint for ``python -m sandrun``."""

from __future__ import annotations

from sandrun.ui.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
