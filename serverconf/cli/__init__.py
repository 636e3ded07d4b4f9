"""Command line tools: ``age-key-setup``, ``manage-secrets`` and ``load-config``."""
import logging
import functools
from pathlib import Path
from dataclasses import dataclass

import click

from ..conf import (
    POLICY_FILENAME,
    PRIVATE_FILENAME,
    PUBLIC_FILENAME,
    TEMPLATE_FILENAME,
    default_identity_path,
    project_root,
)
from ..exceptions import ServerConfError
from ..log import setup_logging
from ..vault.tempfiles import install_signal_handlers

CONTEXT_SETTINGS = dict(help_option_names=["-h", "--help"])


@dataclass(frozen=True)
class Paths:
    """Locations resolved from command line options and the environment."""

    key_file: Path
    root: Path

    @property
    def config_dir(self) -> Path:
        return self.root / "config"

    @property
    def policy(self) -> Path:
        return self.config_dir / POLICY_FILENAME

    @property
    def public(self) -> Path:
        return self.config_dir / PUBLIC_FILENAME

    @property
    def private(self) -> Path:
        return self.config_dir / PRIVATE_FILENAME

    @property
    def template(self) -> Path:
        return self.config_dir / TEMPLATE_FILENAME


def prepare(key_file=None, root=None, verbose: bool = False) -> Paths:
    """Common start-up for every tool: logging, signals, paths."""
    setup_logging(logging.DEBUG if verbose else logging.INFO)
    install_signal_handlers()
    return Paths(
        key_file=Path(key_file) if key_file else default_identity_path(),
        root=Path(root) if root else project_root(),
    )


def handle_errors(func):
    """Report ``ServerConfError`` as a one-line diagnostic and exit 1."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except ServerConfError as err:
            raise click.ClickException(str(err)) from err
    return wrapper


def confirm(question: str) -> bool:
    return click.confirm(question, default=False)
