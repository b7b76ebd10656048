"""
Module entrypoint for the appprof CLI.

This file exists so that `python -m appprof ...` works consistently in all
environments, including when the console-script wrapper is not installed.
"""

from __future__ import annotations

from appprof.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
