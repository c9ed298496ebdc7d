"""Authentication commands for synclink CLI.

Commands:
- login: Exchange an API key for tokens and store the key in the keyring
- logout: Forget the stored API key
"""

from __future__ import annotations

import sys

import click

from synclink.client.auth import AuthService
from synclink.client.cli.config import build_sync_config, load_config, save_config
from synclink.client.credentials import CredentialStore, CredentialStoreError


@click.command()
@click.option("--key", "api_key", default=None, help="API key (prompted if omitted).")
@click.option("--endpoint", default=None, help="API endpoint URL to save in the config.")
def login(api_key: str | None, endpoint: str | None) -> None:
    """Log in to synclink with an API key."""
    config = load_config()
    if endpoint:
        config["api_endpoint"] = endpoint.rstrip("/")
        save_config(config)

    if not api_key:
        api_key = click.prompt("API key", hide_input=True)

    sync_config = build_sync_config(config)
    auth = AuthService(sync_config.server, CredentialStore())
    try:
        ok = auth.authenticate_with_api_key(api_key)
    except CredentialStoreError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        auth.close()

    if not ok:
        click.echo("Error: Authentication failed. Check your API key.", err=True)
        sys.exit(1)

    click.echo(f"Logged in to {sync_config.server.api_endpoint}")


@click.command()
def logout() -> None:
    """Log out and remove the stored API key."""
    sync_config = build_sync_config(load_config())
    auth = AuthService(sync_config.server, CredentialStore())
    try:
        removed = auth.logout()
    finally:
        auth.close()

    if removed:
        click.echo("Logged out.")
    else:
        click.echo("Not logged in.")
