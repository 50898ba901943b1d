"""Entry point for running balloon_engine as a module.

Usage:
    python -m balloon_engine <command> [options]
"""
from .cli import main

if __name__ == "__main__":
    raise SystemExit(main())
