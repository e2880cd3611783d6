"""CLI entry point for credvault."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

import click

from credvault import __version__
from credvault.config import default_root, load_config
from credvault.exceptions import PreconditionFailedError, VaultError
from credvault.models import CredentialStatus, Profile
from credvault.vault import Vault

LOG_FORMAT = "%(levelname)s: %(message)s"


@contextmanager
def _vault_errors() -> Iterator[None]:
    """Turn core failures into a message, a hint and a distinct exit code."""
    try:
        yield
    except VaultError as e:
        click.echo(f"Error: {e}", err=True)
        if e.hint:
            click.echo(f"Hint: {e.hint}", err=True)
        sys.exit(e.exit_code)
    except OSError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _configure_logging(level: str, verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level, logging.WARNING),
        format=LOG_FORMAT,
        stream=sys.stderr,
    )


def _vault(ctx: click.Context) -> Vault:
    """Build (once per invocation) the vault for the selected root."""
    vault = ctx.obj.get("vault")
    if vault is None:
        with _vault_errors():
            config = load_config(ctx.obj["root"])
        _configure_logging(config.log_level, ctx.obj.get("verbose", False))
        vault = Vault(
            config,
            keyring_backend=ctx.obj.get("keyring_backend"),
            transport=ctx.obj.get("transport"),
        )
        ctx.obj["vault"] = vault
    return vault


def _fmt_time(value: datetime | None) -> str:
    return value.isoformat(timespec="seconds") if value is not None else "-"


def _status_line(vault: Vault, profile: Profile) -> str:
    status = profile.status(vault.clock())
    if status is CredentialStatus.EXPIRED:
        return "EXPIRED"
    if status is CredentialStatus.EXPIRING_SOON:
        return "Expires soon (within 24 hours)"
    return "Valid"


@click.group()
@click.version_option(version=__version__, prog_name="credvault")
@click.option(
    "--root",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="CREDVAULT_HOME",
    default=None,
    help="Vault directory. Defaults to ~/.credvault.",
)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Debug logging.")
@click.pass_context
def cli(ctx: click.Context, root: Path | None, verbose: bool) -> None:
    """credvault - per-directory credential profiles for the API."""
    ctx.ensure_object(dict)
    ctx.obj["root"] = (root or default_root()).expanduser()
    ctx.obj["verbose"] = verbose


@cli.command()
@click.argument("name")
@click.option("--description", "-d", default=None, help="Profile description.")
@click.option(
    "--api-key",
    prompt="API key",
    hide_input=True,
    help="API key (prompted for when omitted).",
)
@click.pass_context
def add(ctx: click.Context, name: str, description: str | None, api_key: str) -> None:
    """Add an API key profile."""
    vault = _vault(ctx)
    with _vault_errors():
        profile = vault.add_api_key_profile(name, api_key.strip(), description)
    click.echo(f"Profile '{profile.name}' added.")
    if profile.description:
        click.echo(f"  Description: {profile.description}")
    click.echo(f"  Created: {_fmt_time(profile.created_at)}")


@cli.command(name="list")
@click.pass_context
def list_profiles(ctx: click.Context) -> None:
    """List all profiles."""
    vault = _vault(ctx)
    with _vault_errors():
        profiles = vault.list_profiles()
        default = vault.default_profile()
    if not profiles:
        click.echo("No profiles found.")
        click.echo("Add a profile with: credvault add <name>")
        return

    click.echo("Profiles:")
    for profile in profiles:
        marker = "*" if profile.name == default else " "
        line = f" {marker} {profile.name} [{profile.credential_type}]"
        if profile.description:
            line += f" - {profile.description}"
        click.echo(line)
        if profile.last_used is not None:
            click.echo(f"     Last used: {_fmt_time(profile.last_used)}")


@cli.command()
@click.argument("name")
@click.pass_context
def show(ctx: click.Context, name: str) -> None:
    """Show profile details."""
    vault = _vault(ctx)
    with _vault_errors():
        profile = vault.get_profile(name)
        default = vault.default_profile()
    click.echo(f"Profile: {profile.name}")
    click.echo(f"Type: {profile.credential_type}")
    if profile.description:
        click.echo(f"Description: {profile.description}")
    click.echo(f"Default: {'yes' if profile.name == default else 'no'}")
    click.echo(f"Created: {_fmt_time(profile.created_at)}")
    if profile.last_used is not None:
        click.echo(f"Last used: {_fmt_time(profile.last_used)}")
    if profile.expires_at is not None:
        click.echo(f"Expires: {_fmt_time(profile.expires_at)}")
        click.echo(f"Status: {_status_line(vault, profile)}")
    for key in sorted(profile.metadata):
        click.echo(f"{key}: {profile.metadata[key]}")


@cli.command()
@click.argument("name")
@click.option("--yes", "-y", is_flag=True, default=False, help="Skip confirmation.")
@click.pass_context
def remove(ctx: click.Context, name: str, yes: bool) -> None:
    """Remove a profile and its stored secrets."""
    vault = _vault(ctx)
    with _vault_errors():
        vault.get_profile(name)
    if not yes and not click.confirm(f"Remove profile \"{name}\"?", default=False):
        click.echo("Cancelled")
        return
    with _vault_errors():
        vault.remove_profile(name)
    click.echo(f"Profile '{name}' removed.")


@cli.command()
@click.argument("name")
@click.pass_context
def default(ctx: click.Context, name: str) -> None:
    """Set the default profile."""
    vault = _vault(ctx)
    with _vault_errors():
        vault.set_default(name)
    click.echo(f"Default profile set to '{name}'.")


@cli.command()
@click.pass_context
def detect(ctx: click.Context) -> None:
    """Detect the profile for the current directory."""
    vault = _vault(ctx)
    with _vault_errors():
        profile_name = vault.detect(Path.cwd())
    click.echo(f"Detected profile: {profile_name}")


@cli.command()
@click.argument("name")
@click.pass_context
def init(ctx: click.Context, name: str) -> None:
    """Pin the current directory to a profile."""
    vault = _vault(ctx)
    with _vault_errors():
        result = vault.init_profile(Path.cwd(), name)
    click.echo(f"Initialized project with profile '{name}'.")
    click.echo(f"  Created: {result.marker_path}")
    if result.ignore_path is not None:
        click.echo(f"  Ignored in: {result.ignore_path}")


def _run_child(command: tuple[str, ...], env: dict[str, str]) -> int:
    try:
        completed = subprocess.run(list(command), env=env, check=False)
    except OSError as e:
        raise PreconditionFailedError(f"Failed to execute command: {e}") from e
    return completed.returncode


def _warn_if_expiring(vault: Vault, name: str, *, prefix: str = "") -> None:
    if vault.get_profile(name).expires_soon(vault.clock()):
        click.echo(
            f"{prefix}Warning: profile '{name}' credentials expire soon "
            "(within 24 hours)",
            err=True,
        )


@cli.command(
    name="exec",
    context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False},
)
@click.option("--profile", "-p", "profile_name", default=None, help="Profile to use.")
@click.option(
    "--swap-external",
    is_flag=True,
    default=False,
    help="Also switch the companion application's keychain entry while running.",
)
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
@click.pass_context
def exec_command(
    ctx: click.Context,
    profile_name: str | None,
    swap_external: bool,
    command: tuple[str, ...],
) -> None:
    """Run COMMAND with the profile's credential in the environment."""
    vault = _vault(ctx)
    with _vault_errors():
        name = vault.resolve_profile(profile_name, Path.cwd())
        _, secret = vault.credential_for(name)
        _warn_if_expiring(vault, name)
        env = {**os.environ, vault.config.env_var: secret}
        if swap_external:
            code = vault.with_profile(name, lambda: _run_child(command, env))
        else:
            code = _run_child(command, env)
    sys.exit(code)


@cli.command()
@click.option("--profile", "-p", "profile_name", default=None, help="Profile to use.")
@click.pass_context
def env(ctx: click.Context, profile_name: str | None) -> None:
    """Print shell export syntax for the resolved credential."""
    vault = _vault(ctx)
    with _vault_errors():
        name = vault.resolve_profile(profile_name, Path.cwd())
        variables = vault.environment_for(name)
        profile = vault.get_profile(name)
        _warn_if_expiring(vault, name, prefix="# ")
    for key, value in variables.items():
        click.echo(f"export {key}={shlex.quote(value)}")
    click.echo(f"# Profile: {name} ({profile.credential_type})")


@cli.command(name="import")
@click.argument("import_type", type=click.Choice(["oauth"]))
@click.option("--profile", "-p", "profile_name", default="default", show_default=True)
@click.pass_context
def import_credentials(ctx: click.Context, import_type: str, profile_name: str) -> None:
    """Import OAuth tokens from the companion application's keychain entry."""
    vault = _vault(ctx)
    click.echo(f"Importing OAuth token from {vault.config.external_service}...")
    with _vault_errors():
        profile = vault.import_external(profile_name)
    click.echo("OAuth token imported.")
    click.echo(f"  Profile: {profile.name}")
    click.echo(f"  Type: {profile.credential_type}")
    click.echo(f"  Subscription: {profile.metadata.get('subscription_type', 'unknown')}")
    if profile.expires_at is not None:
        click.echo(f"  Expires: {_fmt_time(profile.expires_at)}")
        days = (profile.expires_at - vault.clock()).days
        if days > 0:
            click.echo(f"  Valid for: {days} days")
        else:
            click.echo("  Status: token may be expired or expiring soon")


@cli.command()
@click.argument("name")
@click.pass_context
def refresh(ctx: click.Context, name: str) -> None:
    """Refresh an OAuth profile's access token now."""
    vault = _vault(ctx)
    with _vault_errors():
        vault.refresh(name)
        profile = vault.get_profile(name)
    click.echo(f"Profile '{name}' refreshed.")
    if profile.expires_at is not None:
        click.echo(f"  Expires: {_fmt_time(profile.expires_at)}")


@cli.group()
def cache() -> None:
    """Manage the directory resolution cache."""


@cache.command(name="clear")
@click.pass_context
def cache_clear(ctx: click.Context) -> None:
    """Forget all cached directory resolutions."""
    vault = _vault(ctx)
    with _vault_errors():
        vault.clear_cache()
    click.echo("Resolution cache cleared.")


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
