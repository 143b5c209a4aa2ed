"""Command-line interface for profilesync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- init: Configure the shared store and the sync passphrase
- reset: Reset profilesync configuration
- sync: Synchronize profiles with the other devices
- status: Show the sync status of this device
- conflicts: List conflicts waiting for a decision
- devices: List the devices found in the shared store
- export: Write the local profiles to a sync file
- import: Load profiles from a sync file
"""

from __future__ import annotations

import logging

import click

from profilesync.cli.config import (
    get_config_dir,
    get_config_file,
    load_config,
    load_sync_config,
    save_config,
    save_sync_config,
)
from profilesync.cli.initialize import init, reset
from profilesync.cli.sync import conflicts, devices, status, sync
from profilesync.cli.transfer import export_profiles, import_profiles


@click.group()
@click.version_option(package_name="profilesync")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
def cli(verbose: bool) -> None:
    """profilesync - offline-first sync of SSH profiles across devices."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# Setup commands
cli.add_command(init)
cli.add_command(reset)

# Sync commands
cli.add_command(sync)
cli.add_command(status)
cli.add_command(conflicts)
cli.add_command(devices)

# Transfer commands
cli.add_command(export_profiles)
cli.add_command(import_profiles)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "main",
    # Config utilities
    "get_config_dir",
    "get_config_file",
    "load_config",
    "load_sync_config",
    "save_config",
    "save_sync_config",
]
