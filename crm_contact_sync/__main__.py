"""
Entry point for running crm_contact_sync as a module.

Usage:
    python -m crm_contact_sync --help
    python -m crm_contact_sync sync --owner owner-1
"""

from crm_contact_sync.cli import cli

if __name__ == "__main__":
    cli()
