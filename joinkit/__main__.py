from __future__ import annotations

import sys

from . import cli

if __name__ == "__main__":  # pragma: no cover - exercised via runpy
    sys.exit(cli.main())
