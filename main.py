#!/usr/bin/env python3
"""
OptiFlow: main entry point.
Installed as the ``optiflow`` console script.
"""

import sys
import logging
import traceback
from pathlib import Path

# ── Determine project root ────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent

if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

logger = logging.getLogger("optiflow")


def main():
    from optiflow.cli.commands import cli

    try:
        cli(prog_name="optiflow")
    except Exception as e:
        # click handles its own usage errors; anything reaching here is a bug
        error_msg = f"{type(e).__name__}: {e}"
        logger.critical("Fatal error: %s\n%s", error_msg, traceback.format_exc())
        print(f"✗ {error_msg}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
