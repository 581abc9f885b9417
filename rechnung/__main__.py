"""Entry point for python -m rechnung."""
from __future__ import annotations

import sys

from rechnung.cli import main

if __name__ == "__main__":
    sys.exit(main())
