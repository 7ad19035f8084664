#!/usr/bin/env python3
"""
Start the background analytics sync.
This script runs the scheduler in the foreground process with:
- Periodic sweeps over every live experiment (interval from config/settings.yaml)
- Orphaned remote object cleanup after each sweep
- Slack alerts for failed syncs and expired credentials
"""

import sys

from adlab.cli import main as cli_main


def main():
    """Start the background scheduler."""
    print("🤖 Starting Adlab Background Sync...")
    print("This will run automated syncing with:")
    print("  • Periodic insights sweeps for live experiments")
    print("  • Orphan cleanup after each sweep")
    print("  • Failure and credential alerts")
    print("")
    print("Press Ctrl+C to stop")
    print("")

    # Ctrl+C and SIGTERM are handled by the scheduler command, which cancels the running sweep
    code = cli_main(sys.argv[1:] + ["schedule", "--run-now"])
    print("\n🛑 Background sync stopped")
    sys.exit(code)


if __name__ == "__main__":
    main()
