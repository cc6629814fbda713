"""Runnable wrapper for ``python -m tvwatch``."""

from .cli import main

if __name__ == "__main__":
    raise SystemExit(main())
