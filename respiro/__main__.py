"""
Entry point for running respiro as a module.

Usage:
    python -m respiro run
    python -m respiro check
"""

import sys

from respiro.cli import main

if __name__ == "__main__":
    sys.exit(main())
