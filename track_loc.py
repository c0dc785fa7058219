#!/usr/bin/env python3
"""
LoC Tracker command-line entry point.

Usage:
    python track_loc.py [COMMAND] [OPTIONS]

Examples:
    python track_loc.py watch . --author "Jane Doe"      # Watch the current repository
    python track_loc.py reconcile ~/src/app -a jane@example.com
    python track_loc.py report --json                      # Print persisted totals as JSON
"""

from services.loc_tracker.cli import cli

if __name__ == "__main__":
    cli()
