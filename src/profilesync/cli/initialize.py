"""Setup commands for profilesync CLI.

Commands:
- init: Configure the shared store and the sync passphrase
- reset: Delete the profilesync configuration
"""

from __future__ import annotations

import shutil
import sys
from pathlib import Path

import click

from profilesync.cli.config import (
    PASSPHRASE_KEY,
    delete_secrets,
    get_config_dir,
    get_config_file,
    save_sync_config,
    store_secret,
)
from profilesync.core.config import (
    DEFAULT_WEBDAV_FOLDER,
    TRANSPORT_FOLDER,
    TRANSPORT_WEBDAV,
    SyncConfig,
    WebDAVConfig,
)
from profilesync.core.crypto import is_passphrase_strong, passphrase_strength
from profilesync.transport import create_transport


@click.command()
@click.option(
    "--no-encrypt",
    is_flag=True,
    help="Store sync files unencrypted (only for trusted storage).",
)
def init(no_encrypt: bool) -> None:
    """Initialize profilesync on this device.

    You will be asked where to keep the shared sync files (a folder or a
    WebDAV server) and for the passphrase that encrypts them. Use the same
    store and passphrase on every device.
    """
    config_file = get_config_file()

    # Check if already initialized
    if config_file.exists():
        click.echo("Error: profilesync already initialized.", err=True)
        click.echo(f"Configuration exists at: {config_file}", err=True)
        click.echo("\nTo start over, run:")
        click.echo("  profilesync reset")
        sys.exit(1)

    click.echo("Welcome to profilesync!")
    click.echo("This wizard will set up syncing of your SSH profiles.\n")

    transport = click.prompt(
        "Where should sync files be stored?",
        type=click.Choice([TRANSPORT_FOLDER, TRANSPORT_WEBDAV]),
        default=TRANSPORT_FOLDER,
    )

    config = SyncConfig(transport=transport, encrypt=not no_encrypt)
    if transport == TRANSPORT_FOLDER:
        default_folder = Path.home() / "ProfileSync"
        folder_input = click.prompt("Shared folder", default=str(default_folder), show_default=True)
        config.folder_path = str(Path(folder_input).expanduser().resolve())
    else:
        config.webdav = WebDAVConfig(
            server_url=click.prompt("WebDAV server URL"),
            username=click.prompt("Username", default="", show_default=False),
            password=click.prompt("Password", default="", hide_input=True, show_default=False),
            folder=click.prompt("Remote folder", default=DEFAULT_WEBDAV_FOLDER),
        )
        if not config.webdav.is_secure:
            click.echo(click.style("Warning: the server does not use HTTPS.", fg="yellow"))

    passphrase = None
    if config.encrypt:
        click.echo("\nChoose the passphrase that encrypts your sync files.")
        click.echo("Use at least 12 characters mixing letters, digits and symbols.\n")
        passphrase = click.prompt(
            "Sync passphrase",
            hide_input=True,
            confirmation_prompt="Confirm sync passphrase",
        )
        if not is_passphrase_strong(passphrase):
            strength = passphrase_strength(passphrase)
            click.echo(f"Error: passphrase too weak ({strength.value}).", err=True)
            sys.exit(1)

    try:
        transport_impl = create_transport(config)
    except (ValueError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if not transport_impl.test_connection():
        click.echo(
            click.style(f"Warning: cannot reach {transport_impl.location} yet.", fg="yellow")
        )

    save_sync_config(config)
    if passphrase is not None and not store_secret(PASSPHRASE_KEY, passphrase):
        click.echo("No keyring available: you will be asked for the passphrase on each sync.")

    click.echo("\nprofilesync initialized successfully!")
    click.echo(f"Config directory: {get_config_dir()}")
    click.echo(f"Sync files: {transport_impl.location}")
    click.echo("\nRun 'profilesync sync' to synchronize.")


@click.command()
@click.option(
    "--force",
    is_flag=True,
    help="Skip confirmation prompt.",
)
def reset(force: bool) -> None:
    """Reset profilesync configuration.

    Deletes the config directory (~/.profilesync), the local sync state and
    the stored passphrase. Sync files of other devices are not touched.
    """
    config_dir = get_config_dir()

    if not config_dir.exists():
        click.echo("Nothing to reset. profilesync is not initialized.")
        return

    if not force:
        click.echo("WARNING: This will delete your profilesync configuration, including:")
        click.echo("  - Sync settings (config.json)")
        click.echo("  - Local profiles and sync state")
        click.echo("  - The stored sync passphrase")
        click.echo(f"\nConfig directory: {config_dir}")

        if not click.confirm("Are you sure you want to reset?"):
            click.echo("Aborted.")
            return

    try:
        shutil.rmtree(config_dir)
    except OSError as e:
        click.echo(f"Error deleting config directory: {e}", err=True)
        sys.exit(1)
    delete_secrets()
    click.echo("profilesync configuration has been reset.")
    click.echo("Run 'profilesync init' to set up again.")
