"""
Entry point for running the record reconciler as a module.

Usage:
    python -m services.record_reconciler [args]
"""

from .main import cli_main

if __name__ == "__main__":
    exit(cli_main())
