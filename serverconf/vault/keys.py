"""
Vault Keys: age identity lifecycle (generate, inspect, export, import).

An identity file is written by ``age-keygen`` and looks like::

    # created: 2024-01-01T00:00:00Z
    # public key: age1...
    AGE-SECRET-KEY-1...

The file lives at ``$SOPS_AGE_KEY_FILE`` (default
``~/.config/sops/age/keys.txt``) with mode 0600 inside a 0700 directory.

Security Note:
    Never log secret key material. Only public keys and paths are logged.
"""
import os
import shlex
import secrets
import logging
from pathlib import Path
from datetime import datetime
from typing import Optional
from collections.abc import Callable

from bech32 import bech32_decode, bech32_encode, convertbits
from cryptography.hazmat.primitives.asymmetric import x25519
from pydantic import BaseModel, field_validator

from ..conf import (
    AGE_KEY_FILE_ENV,
    EXPORT_FILENAME,
    SHELL_RC_FILES,
    default_identity_path,
)
from ..exceptions import (
    ImportSourceNotFound,
    KeyFileCorrupt,
    KeyFileNotFound,
    PermissionDenied,
    PrerequisiteMissing,
)
from ..tools import AgeKeygen

logger = logging.getLogger("serverconf.vault")

PUBLIC_KEY_MARKER = "# public key:"
CREATED_MARKER = "# created:"
SECRET_KEY_PREFIX = "AGE-SECRET-KEY-1"
PUBLIC_KEY_HRP = "age"
SECRET_KEY_HRP = "age-secret-key-"
KEY_LENGTH = 32

FILE_MODE = 0o600
DIR_MODE = 0o700


# ---------------------------------------------------------------------------
# bech32 helpers
# ---------------------------------------------------------------------------

def _bech32_payload(value: str, hrp: str) -> Optional[bytes]:
    """Return the 32-byte payload of a bech32 string, or None if invalid."""
    got_hrp, data = bech32_decode(value)
    if got_hrp is None or got_hrp != hrp:
        return None
    raw = convertbits(data, 5, 8, False)
    if raw is None or len(raw) != KEY_LENGTH:
        return None
    return bytes(raw)


def is_public_key(value: str) -> bool:
    """Check that ``value`` is a syntactically valid age X25519 recipient."""
    return _bech32_payload(value, PUBLIC_KEY_HRP) is not None


def public_key_for(secret_key: str) -> str:
    """Derive the ``age1...`` recipient of an ``AGE-SECRET-KEY-1...`` identity.

    Raises:
        ValueError: If ``secret_key`` is not a valid age X25519 identity.
    """
    raw = _bech32_payload(secret_key, SECRET_KEY_HRP)
    if raw is None:
        raise ValueError("not an age X25519 identity")
    private = x25519.X25519PrivateKey.from_private_bytes(raw)
    public = private.public_key().public_bytes_raw()
    return bech32_encode(PUBLIC_KEY_HRP, convertbits(public, 8, 5))


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

class Identity(BaseModel):
    """The local age identity, referenced by path and public key."""

    path: Path
    public_key: str
    created: Optional[datetime] = None

    model_config = {"frozen": True}

    @field_validator("public_key")
    @classmethod
    def validate_public_key(cls, v: str) -> str:
        if not is_public_key(v):
            raise ValueError(f"Invalid age public key: {v!r}")
        return v

    def __str__(self) -> str:
        return self.public_key


def _parse_created(value: str) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def parse_identity(path: Path) -> Identity:
    """Parse an identity file and return its ``Identity``.

    The embedded ``# public key:`` line must be present and must match the
    public key derived from the ``AGE-SECRET-KEY-1`` line.

    Raises:
        KeyFileNotFound: If ``path`` does not exist.
        KeyFileCorrupt: If the marker is missing or does not match the key.
    """
    path = Path(path)
    if not path.is_file():
        raise KeyFileNotFound(f"Age key file not found at {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as err:
        raise KeyFileCorrupt(f"Failed to read {path}: {err}") from err

    public_key = None
    secret_key = None
    created = None
    for line in text.splitlines():
        line = line.strip()
        if line.startswith(PUBLIC_KEY_MARKER):
            public_key = line[len(PUBLIC_KEY_MARKER):].strip()
        elif line.startswith(CREATED_MARKER):
            created = _parse_created(line[len(CREATED_MARKER):].strip())
        elif line.startswith(SECRET_KEY_PREFIX):
            secret_key = line

    if not public_key:
        raise KeyFileCorrupt(f"Failed to extract public key from {path}")
    if not is_public_key(public_key):
        raise KeyFileCorrupt(f"Malformed public key in {path}")
    if secret_key is None:
        raise KeyFileCorrupt(f"No age secret key found in {path}")
    try:
        derived = public_key_for(secret_key)
    except ValueError:
        raise KeyFileCorrupt(f"Malformed age secret key in {path}") from None
    if derived != public_key:
        raise KeyFileCorrupt(
            f"Public key in {path} does not match its secret key"
        )
    return Identity(path=path, public_key=public_key, created=created)


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------

def _write_private(path: Path, data: bytes) -> None:
    """Atomically write ``data`` to ``path`` with owner-only permissions."""
    tmp = path.with_name(f".{path.name}.{secrets.token_hex(4)}")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, FILE_MODE)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.chmod(tmp, FILE_MODE)
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def secure_delete(path: Path) -> None:
    """Overwrite ``path`` with random bytes and unlink it.

    Best-effort hygiene only: journaling and copy-on-write filesystems may
    keep older blocks around. Falls back to a plain unlink.

    Raises:
        PermissionDenied: If ``path`` cannot be removed.
    """
    path = Path(path)
    try:
        size = path.stat().st_size
        with open(path, "r+b") as fh:
            fh.write(os.urandom(size))
            fh.flush()
            os.fsync(fh.fileno())
    except OSError as err:
        logger.warning(
            "Secure overwrite of %s failed (%s), removing it", path, err,
        )
    try:
        path.unlink()
    except OSError as err:
        raise PermissionDenied(f"Cannot remove {path}: {err.strerror}") from err


def _decline(question: str) -> bool:
    logger.info("%s [no: non-interactive]", question)
    return False


# ---------------------------------------------------------------------------
# KeyManager
# ---------------------------------------------------------------------------

class KeyManager:
    """Manage the local age identity.

    Args:
        key_file: Identity location; defaults to ``default_identity_path()``.
        keygen: Identity generator, ``AgeKeygen`` by default.
        confirm: Callable asked before overwriting an existing identity.
            Defaults to declining, which keeps the existing identity.
    """

    def __init__(
        self,
        key_file: Optional[Path] = None,
        keygen: Optional[AgeKeygen] = None,
        confirm: Optional[Callable[[str], bool]] = None,
    ):
        self.key_file = Path(key_file) if key_file else default_identity_path()
        self._keygen = keygen or AgeKeygen()
        self._confirm = confirm or _decline

    def exists(self) -> bool:
        return self.key_file.is_file()

    def _secure_directory(self) -> None:
        directory = self.key_file.parent
        try:
            directory.mkdir(parents=True, exist_ok=True, mode=DIR_MODE)
            os.chmod(directory, DIR_MODE)
        except PermissionError as err:
            raise PermissionDenied(
                f"Cannot create or secure {directory}: {err.strerror}"
            ) from err

    def generate(self) -> Identity:
        """Generate a new identity, asking before overwriting an existing one.

        Returns:
            The new identity, or the existing one if overwrite was declined.

        Raises:
            PrerequisiteMissing: If ``age-keygen`` is not installed.
            PermissionDenied: If the key directory cannot be secured.
        """
        if self.exists():
            logger.warning("Age key already exists at %s", self.key_file)
            if not self._confirm(
                "Do you want to generate a new key? "
                "This will overwrite the existing key."
            ):
                logger.info("Using existing key")
                return self.extract_public_key()

        if not self._keygen.available():
            raise PrerequisiteMissing("age-keygen is not installed")
        self._secure_directory()

        logger.info("Generating new Age key...")
        tmp = self.key_file.with_name(
            f".{self.key_file.name}.{secrets.token_hex(4)}"
        )
        try:
            self._keygen.generate(tmp)
            os.chmod(tmp, FILE_MODE)
            os.replace(tmp, self.key_file)
        except PermissionError as err:
            raise PermissionDenied(
                f"Cannot write {self.key_file}: {err.strerror}"
            ) from err
        finally:
            tmp.unlink(missing_ok=True)

        identity = self.extract_public_key()
        logger.info("Age key generated at %s", self.key_file)
        return identity

    def extract_public_key(self) -> Identity:
        """Parse the identity file and return the identity it holds."""
        identity = parse_identity(self.key_file)
        logger.info("Public key extracted: %s", identity.public_key)
        return identity

    def export(self, destination: Path = Path(EXPORT_FILENAME)) -> Path:
        """Copy the identity to ``destination`` (mode 0600) for transfer.

        Raises:
            KeyFileNotFound: If no identity exists.
        """
        if not self.exists():
            raise KeyFileNotFound(f"Age key file not found at {self.key_file}")
        destination = Path(destination)
        _write_private(destination, self.key_file.read_bytes())
        logger.info("Age key exported to %s", destination)
        logger.warning("IMPORTANT: %s contains your private key!", destination)
        logger.warning(
            "Transfer it securely; it is deleted automatically on import"
        )
        return destination

    def import_key(self, source: Path) -> Optional[Identity]:
        """Install the identity in ``source`` and securely delete ``source``.

        Importing the active key file onto itself leaves it in place.

        Returns:
            The imported identity, or None if overwrite was declined.

        Raises:
            ImportSourceNotFound: If ``source`` does not exist.
            KeyFileCorrupt: If ``source`` is not a valid identity file.
        """
        source = Path(source)
        if not source.is_file():
            raise ImportSourceNotFound(f"Import file not found: {source}")
        parse_identity(source)

        if source.resolve() == self.key_file.resolve():
            logger.info("%s is already the active age key, nothing to import", source)
            return self.extract_public_key()

        if self.exists():
            logger.warning("Age key already exists at %s", self.key_file)
            if not self._confirm("Do you want to overwrite it?"):
                logger.info("Import cancelled")
                return None

        self._secure_directory()
        try:
            _write_private(self.key_file, source.read_bytes())
        except PermissionError as err:
            raise PermissionDenied(
                f"Cannot write {self.key_file}: {err.strerror}"
            ) from err
        logger.info("Age key imported to %s", self.key_file)

        secure_delete(source)
        logger.info("Imported key file %s removed", source)
        return self.extract_public_key()

    def setup_env(self, persist: bool = True, home: Optional[Path] = None) -> Optional[Path]:
        """Export ``SOPS_AGE_KEY_FILE`` and optionally persist it.

        The variable is set for the current process. With ``persist`` the
        export is appended to the first shell startup file found in
        ``home`` unless that file already mentions the variable.

        Returns:
            The shell startup file that holds the export, or None.
        """
        if not self.exists():
            raise KeyFileNotFound(f"Age key file not found at {self.key_file}")

        os.environ[AGE_KEY_FILE_ENV] = str(self.key_file)
        logger.info("%s set for current session", AGE_KEY_FILE_ENV)
        if not persist:
            return None

        home = Path(home) if home else Path.home()
        rc_file = next(
            (home / name for name in SHELL_RC_FILES if (home / name).is_file()),
            None,
        )
        if rc_file is None:
            logger.warning("Could not detect shell configuration file")
            logger.info(
                "Please add to your shell configuration: export %s=%s",
                AGE_KEY_FILE_ENV, self.key_file,
            )
            return None

        content = rc_file.read_text(encoding="utf-8")
        if AGE_KEY_FILE_ENV in content:
            logger.info("%s already configured in %s", AGE_KEY_FILE_ENV, rc_file)
            return rc_file

        if rc_file.name == "config.fish":
            line = f"set -x {AGE_KEY_FILE_ENV} {shlex.quote(str(self.key_file))}"
        else:
            line = f"export {AGE_KEY_FILE_ENV}={shlex.quote(str(self.key_file))}"
        with open(rc_file, "a", encoding="utf-8") as fh:
            if content and not content.endswith("\n"):
                fh.write("\n")
            fh.write(line + "\n")
        logger.info("Environment variable added to %s", rc_file)
        return rc_file
