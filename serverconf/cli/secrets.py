"""``manage-secrets``: edit, view and rekey the encrypted private settings."""
from pathlib import Path
from typing import Optional

import click

from ..conf import AGE_KEY_FILE_ENV, ROOT_ENV
from ..config.loader import ConfigLoader
from ..vault.keepalive import KeepAlive, sudo_refresh
from ..vault.keys import KeyManager
from ..vault.policy import PolicyFileEditor
from ..vault.store import SecretStore, is_encrypted
from . import CONTEXT_SETTINGS, Paths, handle_errors, prepare

FILE = click.argument(
    "file", required=False, type=click.Path(dir_okay=False, path_type=Path),
)
KEEP_SUDO = click.option(
    "--keep-sudo", is_flag=True,
    help="Keep the sudo timestamp fresh while the editor is open.",
)


def _store(paths: Paths) -> SecretStore:
    identity = KeyManager(paths.key_file).extract_public_key()
    return SecretStore(identity, PolicyFileEditor(paths.policy))


def _keepalive(enabled: bool) -> Optional[KeepAlive]:
    return KeepAlive(sudo_refresh, interval=60.0) if enabled else None


@click.group(context_settings=CONTEXT_SETTINGS)
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
    """Manage the encrypted private configuration with SOPS.

    FILE defaults to config/private.yml.
    """
    ctx.obj = prepare(key_file, root, verbose)


@cli.command("edit")
@FILE
@KEEP_SUDO
@click.pass_obj
@handle_errors
def cmd_edit(paths: Paths, file: Optional[Path], keep_sudo: bool) -> None:
    """Decrypt FILE into your editor and re-encrypt it on exit."""
    _store(paths).edit(file or paths.private, keepalive=_keepalive(keep_sudo))


@cli.command("view")
@FILE
@click.pass_obj
@handle_errors
def cmd_view(paths: Paths, file: Optional[Path]) -> None:
    """Print the decrypted content of FILE."""
    _store(paths).view(file or paths.private, click.get_binary_stream("stdout"))


@cli.command("validate")
@FILE
@click.pass_obj
@handle_errors
def cmd_validate(paths: Paths, file: Optional[Path]) -> None:
    """Check that FILE decrypts and is a valid private settings document."""
    target = file or paths.private
    encrypted = target.is_file() and is_encrypted(target)
    store = _store(paths) if encrypted else None
    ConfigLoader(paths.public, target, store=store).load_private(decrypt=encrypted)
    click.echo(f"{target} is valid")


@cli.command("init")
@FILE
@click.option(
    "--template",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Initial plaintext, config/private.example.yml by default.",
)
@KEEP_SUDO
@click.pass_obj
@handle_errors
def cmd_init(
    paths: Paths,
    file: Optional[Path],
    template: Optional[Path],
    keep_sudo: bool,
) -> None:
    """Create FILE from the template and open it for editing."""
    _store(paths).init(
        template or paths.template,
        file or paths.private,
        keepalive=_keepalive(keep_sudo),
    )


@cli.command("encrypt")
@FILE
@click.pass_obj
@handle_errors
def cmd_encrypt(paths: Paths, file: Optional[Path]) -> None:
    """Encrypt a plaintext FILE in place."""
    target = file or paths.private
    if _store(paths).encrypt_in_place(target):
        click.echo(f"Encrypted {target}")
    else:
        click.echo(f"{target} is already encrypted")


@cli.command("rekey")
@click.argument("public_key")
@FILE
@click.pass_obj
@handle_errors
def cmd_rekey(paths: Paths, public_key: str, file: Optional[Path]) -> None:
    """Grant PUBLIC_KEY access to FILE and re-encrypt it."""
    target = file or paths.private
    update = _store(paths).rekey(public_key, target)
    click.echo(f"Policy file {paths.policy}: {update.value}")
    click.echo(f"Re-encrypted {target}")


@cli.command("reencrypt")
@FILE
@click.pass_obj
@handle_errors
def cmd_reencrypt(paths: Paths, file: Optional[Path]) -> None:
    """Re-encrypt FILE for the recipients currently in the policy."""
    target = file or paths.private
    _store(paths).reencrypt(target)
    click.echo(f"Re-encrypted {target}")


def main() -> None:
    cli(prog_name="manage-secrets")
