"""
Nephyra CLI entry point.

Usage:
    python -m nephyra.cli check
    python -m nephyra.cli explain <id>
    python -m nephyra.cli report --export snapshot.json
"""

import sys
from .main import main

if __name__ == "__main__":
    sys.exit(main())
