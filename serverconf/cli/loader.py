"""``load-config``: print the merged settings for shell or JSON consumers."""
import shlex
import logging
from pathlib import Path
from typing import Optional

import click
import orjson

from ..conf import AGE_KEY_FILE_ENV, ROOT_ENV
from ..config.loader import ConfigLoader
from ..log import level_from_ordinal
from ..vault.keys import KeyManager
from ..vault.policy import PolicyFileEditor
from ..vault.store import SecretStore
from . import CONTEXT_SETTINGS, handle_errors, prepare


@click.command(context_settings=CONTEXT_SETTINGS)
@click.option(
    "--public", "public_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Public configuration, config/public.yml by default.",
)
@click.option(
    "--private", "private_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Private configuration, config/private.yml by default.",
)
@click.option("--sops", "decrypt", is_flag=True, help="Decrypt the private file with sops.")
@click.option(
    "--format", "fmt",
    type=click.Choice(["env", "json"]),
    default="env",
    show_default=True,
    help="env prints shell export lines; json prints the settings model.",
)
@click.option("--reveal", is_flag=True, help="Include secret values in JSON output.")
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
@handle_errors
def cli(
    public_path: Optional[Path],
    private_path: Optional[Path],
    decrypt: bool,
    fmt: str,
    reveal: bool,
    key_file,
    root,
    verbose: bool,
) -> None:
    """Load public and private configuration into one settings model.

    Output goes to stdout, e.g. eval "$(load-config --sops)"; logs go to
    stderr.
    """
    paths = prepare(key_file, root, verbose)
    store = None
    if decrypt:
        identity = KeyManager(paths.key_file).extract_public_key()
        store = SecretStore(identity, PolicyFileEditor(paths.policy))
    loader = ConfigLoader(
        public_path or paths.public,
        private_path or paths.private,
        store=store,
    )
    settings = loader.load(decrypt=decrypt)
    if not verbose:
        logging.getLogger("serverconf").setLevel(
            level_from_ordinal(settings.log_level_value)
        )

    if fmt == "json":
        output = orjson.dumps(
            settings.as_dict(reveal_secrets=reveal),
            option=orjson.OPT_INDENT_2 | orjson.OPT_SORT_KEYS,
        )
        click.echo(output.decode("utf-8"))
        return
    for name, value in settings.as_env().items():
        click.echo(f"export {name}={shlex.quote(value)}")


def main() -> None:
    cli(prog_name="load-config")
