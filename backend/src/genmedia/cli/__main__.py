"""CLI entry point for genmedia.cli module.

Enables execution via: python -m genmedia.cli
"""

from genmedia.cli.run_worker import main

if __name__ == "__main__":
    raise SystemExit(main())
