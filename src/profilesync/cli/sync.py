"""Sync commands for profilesync CLI.

Commands:
- sync: Synchronize profiles with the other devices
- status: Show the sync status of this device
- conflicts: List conflicts waiting for a decision
- devices: List the devices found in the shared store
"""

from __future__ import annotations

import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime

import click

from profilesync.cli.config import (
    PASSPHRASE_KEY,
    get_data_db_path,
    get_secret,
    get_state_db_path,
    load_sync_config,
)
from profilesync.core.config import SyncConfig
from profilesync.core.types import SyncStage
from profilesync.state import SyncStateTracker
from profilesync.store.sqlite import SQLiteDataStore
from profilesync.sync.engine import SyncEngine
from profilesync.sync.metadata import SyncMetadataManager
from profilesync.sync.scheduler import SyncScheduler
from profilesync.sync.types import (
    Conflict,
    ConflictResolution,
    ConflictResolutionOption,
    SyncRunResult,
)
from profilesync.transport import TransportError, create_transport


@dataclass
class LocalSession:
    """Local stores of this device, opened for one command."""

    config: SyncConfig
    data_store: SQLiteDataStore
    state: SyncStateTracker

    @property
    def metadata(self) -> SyncMetadataManager:
        return SyncMetadataManager(self.state)


def require_config() -> SyncConfig:
    """Load the sync settings or exit if profilesync is not initialized."""
    config = load_sync_config()
    if config is None:
        click.echo("Error: profilesync not initialized. Run 'profilesync init' first.", err=True)
        sys.exit(1)
    return config


def get_passphrase(config: SyncConfig) -> str | None:
    """Passphrase from the keyring, prompting when it isn't stored."""
    if not config.encrypt:
        return None
    passphrase = get_secret(PASSPHRASE_KEY)
    if passphrase:
        return passphrase
    return str(click.prompt("Enter sync passphrase", hide_input=True))


@contextmanager
def open_local(config: SyncConfig | None = None) -> Iterator[LocalSession]:
    """Open the local profile and state databases."""
    config = config or require_config()
    data_store = SQLiteDataStore(get_data_db_path())
    state = SyncStateTracker(get_state_db_path())
    try:
        yield LocalSession(config=config, data_store=data_store, state=state)
    finally:
        state.close()
        data_store.close()


def format_conflict(conflict: Conflict) -> str:
    """One-line summary of a conflict."""
    target = f"{conflict.entity_type} {conflict.entity_id}"
    if conflict.field and not conflict.entity_level:
        return (
            f"{target} [{conflict.field}]: "
            f"local={conflict.local_value!r} remote={conflict.remote_value!r}"
        )
    return f"{target}: {conflict.description or conflict.conflict_type.value}"


def prompt_resolutions(conflicts: list[Conflict]) -> list[ConflictResolution]:
    """Ask the user to decide each conflict.

    After a decision, the user may apply it to the remaining conflicts of
    the same kind; those are then not asked about.
    """
    resolutions = []
    covered: set[int] = set()
    click.echo(click.style(f"\n{len(conflicts)} conflicts need a decision:", fg="yellow"))
    for index, conflict in enumerate(conflicts):
        if id(conflict) in covered:
            continue
        click.echo(f"\n  ! {format_conflict(conflict)}")
        options = [option.value for option in conflict.resolution_options()]
        choice = ConflictResolutionOption(
            click.prompt(
                "  Resolution",
                type=click.Choice(options),
                default=ConflictResolutionOption.SKIP.value,
            )
        )

        similar = [
            other
            for other in conflicts[index + 1 :]
            if id(other) not in covered
            and other.entity_type == conflict.entity_type
            and other.conflict_type == conflict.conflict_type
            and choice in other.resolution_options()
        ]
        apply_to_all = False
        if similar and choice != ConflictResolutionOption.SKIP:
            apply_to_all = click.confirm(
                f"  Apply '{choice.value}' to the {len(similar)} remaining similar conflicts?",
                default=False,
            )
            if apply_to_all:
                covered.update(id(other) for other in similar)

        resolutions.append(
            ConflictResolution(conflict=conflict, resolution=choice, apply_to_all=apply_to_all)
        )
    return resolutions


def display_result(result: SyncRunResult) -> None:
    """Display sync results summary."""
    if result.conflicts:
        click.echo(click.style("\nConflicts:", fg="yellow"))
        for conflict in result.conflicts:
            click.echo(f"  ! {format_conflict(conflict)}")

    if result.errors:
        click.echo(click.style("\nErrors:", fg="red"))
        for error in result.errors:
            click.echo(f"  ✗ {error}")

    if not result.success:
        click.echo(click.style(result.message, fg="red"))
        if result.needs_reconfiguration:
            click.echo("Check your credentials, then run 'profilesync reset' and 'profilesync init'.")
        return

    if not result.peers and not result.applied_count:
        click.echo("Everything is up to date.")
    click.echo(result.message)


@click.command()
@click.option("--watch", "-w", is_flag=True, help="Keep running and sync periodically.")
@click.option("--interactive", "-i", is_flag=True, help="Ask how to resolve conflicts.")
@click.option(
    "--no-auto-resolve",
    is_flag=True,
    help="Leave timestamp-decidable conflicts for review.",
)
def sync(watch: bool, interactive: bool, no_auto_resolve: bool) -> None:
    """Synchronize profiles with the other devices.

    Downloads the sync files of the other devices, merges them into the
    local profiles and uploads the result. Use --watch to keep syncing
    every sync_frequency_minutes.
    """
    config = require_config()
    if no_auto_resolve:
        config = replace(config, auto_resolve_conflicts=False)
    passphrase = get_passphrase(config)

    def on_progress(stage: SyncStage, message: str) -> None:
        if stage in (SyncStage.DOWNLOADING, SyncStage.MERGING, SyncStage.UPLOADING):
            click.echo(f"  {message}")

    with open_local(config) as session:
        try:
            transport = create_transport(config)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

        engine = SyncEngine(
            session.data_store.stores(),
            transport,
            session.state,
            config=config,
            passphrase=passphrase,
            progress_callback=on_progress,
        )

        click.echo(f"Syncing with {transport.location}...")
        result = engine.sync(resolve_callback=prompt_resolutions if interactive else None)
        display_result(result)
        if result.success:
            engine.cleanup_stale_files()

        if not watch:
            if not result.success:
                sys.exit(1)
            return

        scheduler = SyncScheduler(engine, config.sync_frequency_minutes)
        scheduler.start()
        click.echo(
            f"\nSyncing every {config.sync_frequency_minutes} minutes... (Ctrl+C to stop)\n"
        )
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            click.echo("\nStopping...")
        finally:
            scheduler.stop()


@click.command()
def status() -> None:
    """Show the sync status of this device."""
    with open_local() as session:
        metadata = session.metadata
        config = session.config
        stores = session.data_store.stores()

        click.echo(f"Device: {metadata.device_name} ({metadata.device_id})")
        click.echo(f"Transport: {config.transport}")
        click.echo(f"Last sync: {metadata.last_sync_description()}")
        click.echo(f"Sync version: {metadata.sync_version}")
        peers = session.state.list_peers()
        if peers:
            click.echo(f"Known devices: {len(peers)}")
        click.echo(
            f"Local data: {len(stores.connections.get_all())} connections, "
            f"{len(stores.keys.get_all())} keys, "
            f"{len(stores.themes.get_all())} themes, "
            f"{len(stores.host_keys.get_all())} host keys"
        )
        pending = session.state.pending_conflicts()
        if pending:
            click.echo(click.style(f"Pending conflicts: {len(pending)}", fg="yellow"))
        if metadata.is_sync_due(config.sync_frequency_minutes):
            click.echo("A sync is due.")


@click.command()
def conflicts() -> None:
    """List conflicts waiting for a decision.

    Run 'profilesync sync --interactive' to decide them.
    """
    with open_local() as session:
        pending = session.state.pending_conflicts()
        if not pending:
            click.echo("No pending conflicts.")
            return
        for record in pending:
            agreed = "never agreed"
            if record.snapshot is not None:
                since = datetime.fromtimestamp(record.last_synced_at / 1000)
                agreed = f"last agreed {since:%Y-%m-%d %H:%M}"
            click.echo(
                f"  ! {record.entity_type} {record.entity_id} "
                f"with device {record.peer_id} ({agreed})"
            )
        click.echo(f"\n{len(pending)} pending conflicts.")


@click.command()
def devices() -> None:
    """List the devices found in the shared store."""
    config = require_config()
    with open_local(config) as session:
        own_id = session.metadata.device_id
        try:
            transport = create_transport(config)
            remote_files = transport.list()
        except (ValueError, TransportError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

        if not remote_files:
            click.echo("No devices found.")
            return
        for remote_file in sorted(remote_files, key=lambda f: f.modified_time, reverse=True):
            updated = datetime.fromtimestamp(remote_file.modified_time / 1000).strftime(
                "%Y-%m-%d %H:%M"
            )
            marker = " (this device)" if remote_file.device_id == own_id else ""
            click.echo(
                f"  {remote_file.device_id}{marker}  {updated}  {remote_file.size} bytes"
            )
