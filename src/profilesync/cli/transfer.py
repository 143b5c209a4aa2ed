"""Export and import commands for profilesync CLI.

Commands:
- export: Write the local profiles to a sync file
- import: Load profiles from a sync file
"""

from __future__ import annotations

import sys
from pathlib import Path

import click

from profilesync.cli.sync import get_passphrase, open_local, require_config
from profilesync.sync.applier import SyncDataApplier
from profilesync.sync.codec import CodecError, decode_package, encode_package, is_encrypted
from profilesync.sync.collector import SnapshotCollector


@click.command("export")
@click.argument("output", type=click.Path(dir_okay=False, path_type=Path))
@click.option(
    "--since",
    type=int,
    default=None,
    help="Only export items modified after this time (ms since epoch).",
)
def export_profiles(output: Path, since: int | None) -> None:
    """Export the local profiles to OUTPUT.

    The file uses the sync file format and is encrypted with the sync
    passphrase unless encryption is disabled.
    """
    config = require_config()
    passphrase = get_passphrase(config)

    with open_local(config) as session:
        collector = SnapshotCollector(
            session.data_store.stores(),
            session.metadata,
            entity_types=config.enabled_entity_types(),
            include_preferences=config.sync_preferences,
        )
        package = collector.collect_all() if since is None else collector.collect_changed_since(since)

    try:
        output.write_bytes(encode_package(package, passphrase))
    except OSError as e:
        click.echo(f"Error writing {output}: {e}", err=True)
        sys.exit(1)

    counts = package.item_counts()
    click.echo(
        f"Exported {counts.connections} connections, {counts.keys} keys, "
        f"{counts.themes} themes, {counts.host_keys} host keys and "
        f"{counts.preferences} preferences to {output}"
    )


@click.command("import")
@click.argument("source", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def import_profiles(source: Path) -> None:
    """Import profiles from SOURCE.

    Every item of the file is written to the local profiles, replacing
    items with the same id. No merge takes place.
    """
    config = require_config()
    data = source.read_bytes()
    passphrase = get_passphrase(config) if is_encrypted(data) else None
    if is_encrypted(data) and passphrase is None:
        passphrase = click.prompt("Enter passphrase of the file", hide_input=True)

    try:
        package = decode_package(data, passphrase)
    except CodecError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    with open_local(config) as session:
        result = SyncDataApplier(session.data_store.stores()).apply_all(package)

    if result.errors:
        click.echo(click.style("\nErrors:", fg="red"))
        for error in result.errors:
            click.echo(f"  ✗ {error}")
    click.echo(f"Imported {result.applied_count} items from {source}")
