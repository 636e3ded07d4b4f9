"""
Config Loader: decrypt, parse, validate and merge both settings files.

Steps of ``ConfigLoader.load``:

1. both files must exist (``ConfigFileNotFound`` names the missing one);
2. with ``decrypt=True`` the private file is decrypted into a scoped temp
   file that is removed on every exit path;
3. both documents are parsed and validated (``InvalidConfigFormat``);
4. identity scalars default to the invoking account;
5. ``log_level`` is mapped to its ordinal, unknown values fall back to info;
6. absent optional sections disable their feature;
7. the immutable ``Settings`` is returned.
"""
import os
import getpass
import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, ValidationError

from ..conf import (
    default_identity_path,
    default_policy_path,
    default_private_path,
    default_public_path,
)
from ..exceptions import ConfigFileNotFound, InvalidConfigFormat
from ..log import DEFAULT_LEVEL_NAME, LEVEL_ORDINALS
from ..vault.keys import KeyManager
from ..vault.policy import PolicyFileEditor
from ..vault.store import SecretStore, is_encrypted
from .models import PrivateConfig, PublicConfig, Settings

logger = logging.getLogger("serverconf.config")


def _describe(err: ValidationError) -> str:
    # field locations and messages only; input values may be secrets
    return "; ".join(
        f"{'.'.join(str(part) for part in e['loc']) or '<root>'}: {e['msg']}"
        for e in err.errors()
    )


def parse_document(path: Path, model: type[BaseModel], label=None) -> BaseModel:
    """Parse a YAML file and validate it against ``model``.

    Raises:
        InvalidConfigFormat: On YAML errors, a non-mapping document or a
            validation error.
    """
    label = label or path
    try:
        document = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except (yaml.YAMLError, UnicodeDecodeError) as err:
        raise InvalidConfigFormat(f"{label}: invalid YAML: {err}") from None
    if document is None:
        document = {}
    if not isinstance(document, dict):
        raise InvalidConfigFormat(f"{label}: expected a mapping at top level")
    try:
        return model.model_validate(document)
    except ValidationError as err:
        raise InvalidConfigFormat(f"{label}: {_describe(err)}") from None


def log_level_ordinal(name: str) -> tuple[str, int]:
    """Translate a ``log_level`` value to ``(name, ordinal)``."""
    value = (name or "").strip().lower()
    if value not in LEVEL_ORDINALS:
        logger.warning(
            "Unknown log level in config: %s, using '%s'", name, DEFAULT_LEVEL_NAME,
        )
        value = DEFAULT_LEVEL_NAME
    return value, LEVEL_ORDINALS[value]


def build_settings(public: PublicConfig, private: PrivateConfig) -> Settings:
    """Merge both documents into ``Settings``, applying defaults."""
    user = public.user
    if not user:
        user = getpass.getuser()
        logger.info("User not specified in config, using current user: %s", user)
    home_dir = public.home_dir
    if not home_dir:
        home_dir = os.path.expanduser("~")
        logger.info(
            "Home directory not specified in config, using current user's home: %s",
            home_dir,
        )
    level, ordinal = log_level_ordinal(public.log_level)
    logger.debug("Log level set to: %s (%d)", level, ordinal)

    values = {
        "server_user": user,
        "server_home_dir": home_dir,
        "log_level": level,
        "log_level_value": ordinal,
        "tool_versions": dict(public.tool_versions),
        "tmux_prefix": public.tmux_prefix,
        "tmux_plugins": tuple(public.tmux_plugins),
    }

    git = private.git_user
    if git is None:
        logger.debug("No git_user configuration found in private config")
    else:
        values.update(
            git_enabled=True,
            git_user_name=git.name,
            git_user_email=git.email,
            git_signing_key=git.signing_key,
        )
        logger.debug("Loaded Git configuration for user: %s", git.name)

    ssh = private.ssh
    if ssh is None:
        logger.debug("No SSH configuration found in private config")
    else:
        values.update(
            ssh_enabled=True,
            ssh_generate_key=ssh.generate_key,
            ssh_key_type=ssh.key_type,
            ssh_key_email=ssh.key_email,
            ssh_key_passphrase=ssh.key_passphrase,
        )
        logger.debug("Loaded SSH configuration, generate key: %s", ssh.generate_key)

    github = private.github
    if github is None:
        logger.debug("No GitHub configuration found in private config")
    else:
        values.update(
            github_enabled=True,
            github_username=github.username,
            github_access_token=github.access_token,
            github_upload_key=github.upload_key,
        )
        repo = github.docker_repo
        if repo is not None:
            values.update(
                docker_repo_enabled=True,
                docker_repo_url=repo.url,
                docker_repo_branch=repo.branch,
                docker_repo_directory=repo.directory,
                docker_repo_auto_update=repo.auto_update,
            )
            logger.debug(
                "Docker repository configured: %s (%s) -> %s",
                repo.url, repo.branch, repo.directory,
            )
    if not values.get("docker_repo_enabled"):
        logger.debug("No docker repository configuration found in private config")

    mounts = private.network_mounts or []
    if mounts:
        values.update(network_mounts_enabled=True, network_mounts=tuple(mounts))
        logger.debug("Found %d network mounts configured", len(mounts))
    else:
        logger.debug("No network mounts configuration found in private config")

    return Settings(**values)


class ConfigLoader:
    """Load the merged settings model.

    Args:
        public_path: Public settings file, ``config/public.yml`` by default.
        private_path: Private settings file, ``config/private.yml`` by default.
        store: Secret store used when decrypting; built from the default
            identity and policy file when omitted.
    """

    def __init__(
        self,
        public_path: Optional[Path] = None,
        private_path: Optional[Path] = None,
        store: Optional[SecretStore] = None,
    ):
        self.public_path = Path(public_path) if public_path else default_public_path()
        self.private_path = Path(private_path) if private_path else default_private_path()
        self._store = store

    @property
    def store(self) -> SecretStore:
        if self._store is None:
            identity = KeyManager(default_identity_path()).extract_public_key()
            self._store = SecretStore(identity, PolicyFileEditor(default_policy_path()))
        return self._store

    def _check_exists(self, *paths: Path) -> None:
        for path in paths:
            if not path.is_file():
                raise ConfigFileNotFound(path)

    def load_private(self, decrypt: bool = False) -> PrivateConfig:
        """Parse and validate the private document."""
        self._check_exists(self.private_path)
        if decrypt:
            logger.info("Decrypting private configuration with sops...")
            with self.store.decrypt_to_temp(self.private_path) as tmp:
                return parse_document(tmp, PrivateConfig, label=self.private_path)
        if is_encrypted(self.private_path):
            raise InvalidConfigFormat(
                f"{self.private_path} is encrypted",
                hint="load it with decryption enabled (--sops)",
            )
        return parse_document(self.private_path, PrivateConfig)

    def load(self, decrypt: bool = False) -> Settings:
        """Load, validate and merge both documents.

        Raises:
            ConfigFileNotFound: If either file is missing.
            InvalidConfigFormat: If either document is malformed.
            DecryptionFailed: If decryption was requested and failed.
        """
        self._check_exists(self.public_path, self.private_path)
        logger.info(
            "Loading configuration from %s and %s...",
            self.public_path, self.private_path,
        )
        public = parse_document(self.public_path, PublicConfig)
        private = self.load_private(decrypt=decrypt)
        settings = build_settings(public, private)
        logger.info("Configuration loaded successfully")
        return settings
