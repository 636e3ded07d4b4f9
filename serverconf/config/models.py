"""
Config Models: validated public/private documents and the merged Settings.

``PublicConfig`` and ``PrivateConfig`` mirror ``config/public.yml`` and the
decrypted ``config/private.yml``. Every optional section of the private
document may be absent (the feature is then disabled); a present section
with missing or null sub-fields gets the per-field defaults declared here.

``Settings`` is the flat, immutable result handed to provisioning steps.

Security Note:
    Access tokens and passphrases are ``SecretStr`` so they never show up
    in reprs, logs or validation errors.
"""
from typing import Any, Optional

from pydantic import (
    BaseModel,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)

SSH_KEY_TYPES = ("ed25519", "ed25519-sk", "ecdsa", "ecdsa-sk", "rsa")


class Section(BaseModel):
    """Base for document sections: ``null`` values fall back to defaults."""

    model_config = {"extra": "ignore"}

    @model_validator(mode="before")
    @classmethod
    def drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


# ---------------------------------------------------------------------------
# Public document
# ---------------------------------------------------------------------------

class PublicConfig(Section):
    """Non-sensitive settings from ``config/public.yml``."""

    user: str = ""
    home_dir: str = ""
    log_level: str = "info"
    tool_versions: dict[str, str] = Field(default_factory=dict)
    tmux_prefix: Optional[str] = None
    tmux_plugins: list[str] = Field(default_factory=list)

    @field_validator("tool_versions", mode="before")
    @classmethod
    def versions_as_strings(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {str(name): str(version) for name, version in v.items()}
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def level_as_string(cls, v: Any) -> Any:
        # unknown names are mapped to info by the loader
        if isinstance(v, (bool, int, float)):
            return str(v)
        return v


# ---------------------------------------------------------------------------
# Private document
# ---------------------------------------------------------------------------

class GitUser(Section):
    name: str = ""
    email: str = ""
    signing_key: str = ""


class SSHConfig(Section):
    generate_key: bool = False
    key_type: str = "ed25519"
    key_email: str = ""
    key_passphrase: SecretStr = SecretStr("")

    @field_validator("key_type")
    @classmethod
    def validate_key_type(cls, v: str) -> str:
        if v not in SSH_KEY_TYPES:
            raise ValueError(f"must be one of: {', '.join(SSH_KEY_TYPES)}")
        return v


class DockerRepo(Section):
    """Remote repository checked out on the server."""

    url: str
    directory: str
    branch: str = "main"
    auto_update: bool = True


class GitHubConfig(Section):
    username: str = ""
    access_token: SecretStr = SecretStr("")
    upload_key: bool = False
    docker_repo: Optional[DockerRepo] = None


class MountPermissions(Section):
    mode: str = "755"
    owner: str = ""
    group: str = ""

    @field_validator("mode", mode="before")
    @classmethod
    def validate_mode(cls, v: Any) -> str:
        v = str(v)
        if not v or any(c not in "01234567" for c in v) or len(v) > 4:
            raise ValueError(f"Invalid octal mode: {v}")
        return v


class NetworkMount(Section):
    """One fstab-style mount descriptor."""

    type: str
    source: str
    target: str
    options: list[str] = Field(default_factory=list)
    dump: int = Field(default=0, ge=0)
    fsck: int = Field(default=0, ge=0, le=2)
    permissions: Optional[MountPermissions] = None

    model_config = {"frozen": True, "extra": "ignore"}

    @property
    def fstab_options(self) -> str:
        return ",".join(self.options) or "defaults"


class PrivateConfig(Section):
    """Sensitive settings from the decrypted ``config/private.yml``."""

    git_user: Optional[GitUser] = None
    ssh: Optional[SSHConfig] = None
    github: Optional[GitHubConfig] = None
    network_mounts: Optional[list[NetworkMount]] = None


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_SECRET_FIELDS = ("github_access_token", "ssh_key_passphrase")


def _flag(value: bool) -> str:
    return "true" if value else "false"


class Settings(BaseModel):
    """Merged, validated settings consumed by provisioning steps."""

    server_user: str
    server_home_dir: str
    log_level: str = "info"
    log_level_value: int = Field(default=1, ge=0, le=3)
    tool_versions: dict[str, str] = Field(default_factory=dict)
    tmux_prefix: Optional[str] = None
    tmux_plugins: tuple[str, ...] = ()

    git_enabled: bool = False
    git_user_name: str = ""
    git_user_email: str = ""
    git_signing_key: str = ""

    ssh_enabled: bool = False
    ssh_generate_key: bool = False
    ssh_key_type: str = "ed25519"
    ssh_key_email: str = ""
    ssh_key_passphrase: SecretStr = SecretStr("")

    github_enabled: bool = False
    github_username: str = ""
    github_access_token: SecretStr = SecretStr("")
    github_upload_key: bool = False

    docker_repo_enabled: bool = False
    docker_repo_url: str = ""
    docker_repo_branch: str = "main"
    docker_repo_directory: str = ""
    docker_repo_auto_update: bool = True

    network_mounts_enabled: bool = False
    network_mounts: tuple[NetworkMount, ...] = ()

    model_config = {"frozen": True}

    @property
    def network_mounts_count(self) -> int:
        return len(self.network_mounts)

    @property
    def features(self) -> dict[str, bool]:
        """Enabled flag per optional feature."""
        return {
            "git": self.git_enabled,
            "ssh": self.ssh_enabled,
            "github": self.github_enabled,
            "docker_repo": self.docker_repo_enabled,
            "network_mounts": self.network_mounts_enabled,
        }

    def as_dict(self, reveal_secrets: bool = False) -> dict[str, Any]:
        """Return a JSON-compatible dict; secrets are masked unless revealed."""
        data = self.model_dump(mode="json")
        data["network_mounts_count"] = self.network_mounts_count
        if reveal_secrets:
            for name in _SECRET_FIELDS:
                data[name] = getattr(self, name).get_secret_value()
        return data

    def as_env(self) -> dict[str, str]:
        """Return the settings as environment variables for shell consumers.

        Sections that are disabled export nothing but their ``*_ENABLED``
        flag. Secret values are included in clear text.
        """
        env = {
            "SERVER_USER": self.server_user,
            "SERVER_HOME_DIR": self.server_home_dir,
            "LOG_LEVEL": str(self.log_level_value),
        }
        if self.git_enabled:
            env["GIT_USER_NAME"] = self.git_user_name
            env["GIT_USER_EMAIL"] = self.git_user_email
            env["GIT_SIGNING_KEY"] = self.git_signing_key
        if self.ssh_enabled:
            env["SSH_GENERATE_KEY"] = _flag(self.ssh_generate_key)
            env["SSH_KEY_TYPE"] = self.ssh_key_type
            env["SSH_KEY_EMAIL"] = self.ssh_key_email
            env["SSH_KEY_PASSPHRASE"] = self.ssh_key_passphrase.get_secret_value()
        if self.github_enabled:
            env["GITHUB_USERNAME"] = self.github_username
            env["GITHUB_ACCESS_TOKEN"] = self.github_access_token.get_secret_value()
            env["GITHUB_UPLOAD_KEY"] = _flag(self.github_upload_key)
        env["DOCKER_REPO_ENABLED"] = _flag(self.docker_repo_enabled)
        if self.docker_repo_enabled:
            env["DOCKER_REPO_URL"] = self.docker_repo_url
            env["DOCKER_REPO_BRANCH"] = self.docker_repo_branch
            env["DOCKER_REPO_DIRECTORY"] = self.docker_repo_directory
            env["DOCKER_REPO_AUTO_UPDATE"] = _flag(self.docker_repo_auto_update)
        env["NETWORK_MOUNTS_ENABLED"] = _flag(self.network_mounts_enabled)
        if self.network_mounts_enabled:
            env["NETWORK_MOUNTS_COUNT"] = str(self.network_mounts_count)
        return env
