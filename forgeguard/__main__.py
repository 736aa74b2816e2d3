"""
Entry point for running forgeguard as a module.

Usage:
    python -m forgeguard [args]

This is equivalent to:
    python -m forgeguard.cli.guardian_cli [args]
"""

import sys

from forgeguard.cli.guardian_cli import main

if __name__ == "__main__":
    sys.exit(main())
