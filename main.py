#!/usr/bin/env python3
"""
Development launcher for SchoolWatch.

- Forces DEV=1 so config enables debug logging
- Runs the web portal in the foreground
- Ctrl-C exits cleanly (camera view and capture are torn down on cleanup)
"""

import os
import sys

from schoolwatch.web_portal import cli_main


def main() -> int:
    os.environ.setdefault("DEV", "1")
    print("[dev] Starting SchoolWatch portal (Ctrl-C to quit)", flush=True)
    try:
        return cli_main(sys.argv[1:])
    except KeyboardInterrupt:
        print("\n[dev] Exiting.", flush=True)
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
