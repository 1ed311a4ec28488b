#!/usr/bin/env python3
"""ArrSweep - clean up watched media across Radarr, Sonarr and download clients.

Usage:
    python arrsweep.py                  # Dry-run: report what would be deleted
    python arrsweep.py --force-delete   # Delete watched items past their retention
    python arrsweep.py -c settings.json # Use another settings file
    python arrsweep.py --verbose        # Enable debug logging
    python arrsweep.py --help           # Show help
"""
import sys


def main():
    """Main entry point for ArrSweep."""
    from core.app import main as app_main
    return app_main()


if __name__ == "__main__":
    sys.exit(main() or 0)
