"""``age-key-setup``: generate and configure the age identity used by sops."""
from pathlib import Path

import click

from ..conf import AGE_KEY_FILE_ENV, EXPORT_FILENAME, ROOT_ENV
from ..vault.keys import Identity, KeyManager
from ..vault.policy import PolicyFileEditor, PolicyUpdate
from . import CONTEXT_SETTINGS, Paths, confirm, handle_errors, prepare


def _manager(paths: Paths) -> KeyManager:
    return KeyManager(paths.key_file, confirm=confirm)


def _update_policy(paths: Paths, identity: Identity, strict: bool = False) -> PolicyUpdate:
    editor = PolicyFileEditor(paths.policy, strict=strict)
    update = editor.ensure_recipient(identity.public_key)
    if update is PolicyUpdate.FALLBACK:
        click.secho(
            f"WARNING: {paths.policy} could not be edited in place. Review "
            f"the file before committing it (backup: {editor.last_backup}).",
            fg="yellow", err=True,
        )
    else:
        click.echo(f"Policy file {paths.policy}: {update.value}")
    return update


@click.group(invoke_without_command=True, context_settings=CONTEXT_SETTINGS)
@click.option(
    "--key-file",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar=AGE_KEY_FILE_ENV,
    help="Age identity file.",
)
@click.option(
    "--root",
    type=click.Path(file_okay=False, path_type=Path),
    envvar=ROOT_ENV,
    help="Project root containing config/.",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, key_file, root, verbose: bool) -> None:
    """Age Key Setup for SOPS.

    Generate, import and export the age identity and register its public
    key in the sops policy file.
    """
    ctx.obj = prepare(key_file, root, verbose)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command("init")
@click.pass_obj
@handle_errors
def cmd_init(paths: Paths) -> None:
    """Initialize everything (generate + config + env)."""
    manager = _manager(paths)
    identity = manager.generate()
    _update_policy(paths, identity)
    manager.setup_env()
    click.echo("You're all set up to use Age with SOPS!")
    click.echo("You can now run: manage-secrets init")


@cli.command("generate")
@click.pass_obj
@handle_errors
def cmd_generate(paths: Paths) -> None:
    """Generate a new Age key pair."""
    identity = _manager(paths).generate()
    click.echo(identity.public_key)


@cli.command("config")
@click.option(
    "--strict", is_flag=True,
    help="Fail instead of rewriting the policy file when it cannot be edited in place.",
)
@click.pass_obj
@handle_errors
def cmd_config(paths: Paths, strict: bool) -> None:
    """Update the SOPS policy file with the existing key."""
    identity = _manager(paths).extract_public_key()
    _update_policy(paths, identity, strict=strict)


@cli.command("export")
@click.argument(
    "destination",
    type=click.Path(dir_okay=False, path_type=Path),
    default=EXPORT_FILENAME,
)
@click.pass_obj
@handle_errors
def cmd_export(paths: Paths, destination: Path) -> None:
    """Export key for use on another machine."""
    manager = _manager(paths)
    manager.extract_public_key()
    manager.export(destination)
    click.echo(f"Age key exported to {destination}")
    click.echo("IMPORTANT: this file contains your private key!", err=True)


@cli.command("import")
@click.argument("source", type=click.Path(dir_okay=False, path_type=Path))
@click.pass_obj
@handle_errors
def cmd_import(paths: Paths, source: Path) -> None:
    """Import key from SOURCE (deleted afterwards)."""
    identity = _manager(paths).import_key(source)
    if identity is None:
        click.echo("Import cancelled")
        return
    click.echo(f"Age key imported to {paths.key_file}")
    _update_policy(paths, identity)


@cli.command("env")
@click.option(
    "--persist/--no-persist", default=True,
    help="Append the export to your shell startup file.",
)
@click.pass_obj
@handle_errors
def cmd_env(paths: Paths, persist: bool) -> None:
    """Setup environment variables."""
    rc_file = _manager(paths).setup_env(persist=persist)
    if rc_file is not None:
        click.echo(f"Please restart your shell or run: source {rc_file}")
    else:
        click.echo(f"export {AGE_KEY_FILE_ENV}={paths.key_file}")


@cli.command("help")
@click.pass_context
def cmd_help(ctx: click.Context) -> None:
    """Show this help message."""
    click.echo(ctx.parent.get_help())


def main() -> None:
    cli(prog_name="age-key-setup")
