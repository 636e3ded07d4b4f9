"""
ServerConf Configuration: well-known paths and environment variables.

Values are resolved from the environment at call time so tests and
long-running callers observe changes made after import.
"""
import os
from pathlib import Path

#: Environment variable used by sops to discover the age identity.
AGE_KEY_FILE_ENV = "SOPS_AGE_KEY_FILE"

#: Overrides the project root that holds the ``config/`` directory.
ROOT_ENV = "SERVERCONF_ROOT"

#: Editor lookup order for interactive sessions.
EDITOR_ENVS = ("SOPS_EDITOR", "VISUAL", "EDITOR")
DEFAULT_EDITOR = "vim"

#: Path pattern for private settings files in the sops policy file.
PRIVATE_CONFIG_REGEX = r"config/private.*\.ya?ml$"

POLICY_FILENAME = ".sops.yaml"
PUBLIC_FILENAME = "public.yml"
PRIVATE_FILENAME = "private.yml"
TEMPLATE_FILENAME = "private.example.yml"
EXPORT_FILENAME = "age-key-export.txt"

#: Candidate shell startup files, in lookup order.
SHELL_RC_FILES = (
    ".bashrc",
    ".zshrc",
    ".config/fish/config.fish",
)


def default_identity_path() -> Path:
    """Return the age identity location (sops' standard key location)."""
    value = os.environ.get(AGE_KEY_FILE_ENV)
    if value:
        return Path(value).expanduser()
    return Path.home() / ".config" / "sops" / "age" / "keys.txt"


def project_root() -> Path:
    """Return the directory holding ``config/``; defaults to the cwd."""
    value = os.environ.get(ROOT_ENV)
    if value:
        return Path(value).expanduser()
    return Path.cwd()


def config_dir() -> Path:
    return project_root() / "config"


def default_policy_path() -> Path:
    return config_dir() / POLICY_FILENAME


def default_public_path() -> Path:
    return config_dir() / PUBLIC_FILENAME


def default_private_path() -> Path:
    return config_dir() / PRIVATE_FILENAME


def default_template_path() -> Path:
    return config_dir() / TEMPLATE_FILENAME


def default_editor() -> str:
    """Return the editor command line used for interactive edits."""
    for name in EDITOR_ENVS:
        value = os.environ.get(name)
        if value:
            return value
    return DEFAULT_EDITOR
