"""
Entry point for running loopwarden as a module.

Usage:
    python -m loopwarden status
    python -m loopwarden recover --dry-run

This is equivalent to the `loopwarden` console script.
"""

import sys

from loopwarden.cli.overseer_cli import main

if __name__ == "__main__":
    sys.exit(main())
