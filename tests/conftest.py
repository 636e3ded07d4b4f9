"""
Shared fixtures for the serverconf test-suite.

The ``age-keygen`` and ``sops`` binaries are replaced by in-process fakes:
``FakeKeygen`` writes real age X25519 identity files and ``FakeSops`` wraps
plaintext in a sops-shaped YAML document that only an identity listed as a
recipient can open. Nothing here needs the real tools installed.
"""
import base64
import signal
import logging
from pathlib import Path

import pytest
import yaml
from bech32 import bech32_encode, convertbits
from cryptography.hazmat.primitives.asymmetric import x25519

from serverconf.exceptions import DecryptionFailed
from serverconf.vault.keys import KeyManager, parse_identity
from serverconf.vault.policy import PolicyFileEditor
from serverconf.vault.store import SecretStore

PUBLIC_SAMPLE = """\
user: "deploy"
home_dir: "/home/deploy"
log_level: "debug"
tool_versions:
  yq: "v4.45.1"
  sops: 3.8
tmux_prefix: "C-a"
tmux_plugins:
  - "tmux-plugins/tpm"
"""

PRIVATE_SAMPLE = """\
git_user:
  name: "Jane Doe"
  email: "jane@example.com"
ssh:
  generate_key: true
  key_type: ed25519
  key_email: "jane@example.com"
  key_passphrase: "hunter2"
github:
  username: janedoe
  upload_key: true
  access_token: "ghp_secret_token"
  docker_repo:
    url: "git@github.com:janedoe/docker-configs.git"
    directory: "/opt/docker-configs"
network_mounts:
  - type: nfs
    source: 192.168.1.10:/Media
    target: /media
    options: [noauto, rw]
    permissions:
      mode: "750"
      owner: jane
      group: docker
"""


# --- Fake external tools ---

def make_identity_text(created: str = "2024-01-01T00:00:00Z") -> tuple[str, str]:
    """Return ``(public_key, identity file text)`` for a fresh X25519 key."""
    private = x25519.X25519PrivateKey.generate()
    secret = bech32_encode(
        "age-secret-key-", convertbits(private.private_bytes_raw(), 8, 5)
    ).upper()
    public = bech32_encode(
        "age", convertbits(private.public_key().public_bytes_raw(), 8, 5)
    )
    text = f"# created: {created}\n# public key: {public}\n{secret}\n"
    return public, text


def make_public_key() -> str:
    return make_identity_text()[0]


class FakeKeygen:
    """Stands in for ``age-keygen``."""

    def __init__(self, installed: bool = True):
        self.installed = installed
        self.calls = 0

    def available(self) -> bool:
        return self.installed

    def generate(self, path: Path) -> None:
        self.calls += 1
        _, text = make_identity_text()
        Path(path).write_text(text, encoding="utf-8")


class FakeSops:
    """Stands in for ``sops`` with recipient-checked reversible wrapping."""

    def __init__(self):
        self.encrypted_for: list[list[str]] = []

    def available(self) -> bool:
        return True

    def encrypt(self, source, recipients, fmt="yaml") -> bytes:
        self.encrypted_for.append(list(recipients))
        document = {
            "data": base64.b64encode(Path(source).read_bytes()).decode("ascii"),
            "sops": {
                "age": [{"recipient": r} for r in recipients],
                "version": "fake",
            },
        }
        return yaml.safe_dump(document).encode("utf-8")

    def decrypt(self, source, identity_path, fmt="yaml") -> bytes:
        document = yaml.safe_load(Path(source).read_text(encoding="utf-8"))
        if not isinstance(document, dict) or "sops" not in document:
            raise DecryptionFailed(f"sops failed: {source} is not encrypted")
        recipients = [r["recipient"] for r in document["sops"]["age"]]
        if parse_identity(identity_path).public_key not in recipients:
            raise DecryptionFailed("sops failed: no identity matched any recipient")
        return base64.b64decode(document["data"])


class ScriptedEditor:
    """Editor callable that records what it saw and optionally rewrites it."""

    def __init__(self, new_content=None, status=0, on_open=None):
        self.new_content = new_content
        self.status = status
        self.on_open = on_open
        self.seen = []

    def __call__(self, path: Path) -> int:
        self.seen.append((path, path.read_bytes(), path.stat().st_mode & 0o777))
        if self.on_open is not None:
            self.on_open(path)
        if self.new_content is not None:
            path.write_bytes(self.new_content)
        return self.status


# --- Test Fixtures ---

@pytest.fixture(autouse=True)
def reset_logging_and_signals():
    """Undo logging handlers and signal handlers installed by the CLI."""
    handlers = {sig: signal.getsignal(sig) for sig in (signal.SIGTERM, signal.SIGHUP)}
    yield
    logger = logging.getLogger("serverconf")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
    for sig, handler in handlers.items():
        signal.signal(sig, handler)


@pytest.fixture
def project(tmp_path):
    """A project root with public settings and a private template."""
    root = tmp_path / "project"
    config = root / "config"
    config.mkdir(parents=True)
    (config / "public.yml").write_text(PUBLIC_SAMPLE, encoding="utf-8")
    (config / "private.example.yml").write_text(PRIVATE_SAMPLE, encoding="utf-8")
    return root


@pytest.fixture
def key_manager(tmp_path):
    return KeyManager(tmp_path / "home" / ".config" / "sops" / "age" / "keys.txt",
                      keygen=FakeKeygen())


@pytest.fixture
def identity(key_manager):
    return key_manager.generate()


@pytest.fixture
def other_identity(tmp_path):
    manager = KeyManager(tmp_path / "other" / "keys.txt", keygen=FakeKeygen())
    return manager.generate()


@pytest.fixture
def fake_sops():
    return FakeSops()


@pytest.fixture
def policy(project, identity):
    """Policy editor whose private rule already lists ``identity``."""
    editor = PolicyFileEditor(project / "config" / ".sops.yaml")
    editor.ensure_recipient(identity.public_key)
    return editor


@pytest.fixture
def store(identity, policy, fake_sops):
    return SecretStore(identity, policy, sops=fake_sops, editor=ScriptedEditor())


@pytest.fixture
def encrypted_private(project, store):
    """``config/private.yml`` holding the sample, encrypted for ``identity``."""
    target = project / "config" / "private.yml"
    target.write_text(PRIVATE_SAMPLE, encoding="utf-8")
    store.encrypt_in_place(target)
    return target
