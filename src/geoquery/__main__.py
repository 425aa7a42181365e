"""Module entrypoint for `python -m geoquery`."""

from __future__ import annotations

from geoquery.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
