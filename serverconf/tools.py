"""
External tools: subprocess wrappers around ``age-keygen`` and ``sops``.

serverconf never implements encryption itself. Identities are produced by
``age-keygen`` and files are encrypted/decrypted by ``sops`` using age
recipients. Plaintext produced by ``sops --decrypt`` is captured from the
child's stdout and never written to disk by this module.

Security Note:
    Never log command output; it may contain plaintext.
"""
import os
import shutil
import logging
import subprocess
from pathlib import Path
from typing import Optional
from collections.abc import Sequence

from .conf import AGE_KEY_FILE_ENV
from .exceptions import (
    PrerequisiteMissing,
    DecryptionFailed,
    EncryptionFailed,
    ServerConfError,
)

logger = logging.getLogger("serverconf.tools")

_FORMATS = {
    ".yml": "yaml",
    ".yaml": "yaml",
    ".json": "json",
    ".env": "dotenv",
    ".ini": "ini",
}


def file_format(path: Path) -> str:
    """Return the sops input/output type for ``path`` based on its suffix."""
    return _FORMATS.get(Path(path).suffix.lower(), "binary")


def _last_line(stderr: bytes) -> str:
    lines = stderr.decode("utf-8", "replace").strip().splitlines()
    return lines[-1] if lines else "no error output"


def run_checked(
    cmd: list[str],
    error_cls: type[ServerConfError] = ServerConfError,
    env: Optional[dict[str, str]] = None,
) -> bytes:
    """Run ``cmd`` and return its stdout.

    Raises:
        PrerequisiteMissing: If the binary is not installed.
        error_cls: If the command exits with a nonzero status.
    """
    try:
        proc = subprocess.run(
            cmd,
            check=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=env,
        )
    except FileNotFoundError:
        raise PrerequisiteMissing(f"{cmd[0]} is not installed") from None
    except subprocess.CalledProcessError as err:
        raise error_cls(
            f"{Path(cmd[0]).name} failed: {_last_line(err.stderr)}"
        ) from None
    return proc.stdout


class AgeKeygen:
    """Generates age identities with the ``age-keygen`` binary."""

    def __init__(self, binary: str = "age-keygen"):
        self.binary = binary

    def available(self) -> bool:
        return shutil.which(self.binary) is not None

    def generate(self, path: Path) -> None:
        """Write a new identity to ``path``, which must not exist yet."""
        if not self.available():
            raise PrerequisiteMissing(f"{self.binary} is not installed")
        run_checked([self.binary, "-o", str(path)])
        logger.debug("age-keygen wrote identity to %s", path)


class Sops:
    """Encrypts and decrypts files with ``sops`` and age recipients."""

    def __init__(self, binary: str = "sops"):
        self.binary = binary

    def available(self) -> bool:
        return shutil.which(self.binary) is not None

    def _require(self) -> None:
        if not self.available():
            raise PrerequisiteMissing(f"{self.binary} is not installed")

    def encrypt(
        self,
        source: Path,
        recipients: Sequence[str],
        fmt: str = "yaml",
    ) -> bytes:
        """Encrypt the plaintext file ``source`` and return the ciphertext."""
        self._require()
        cmd = [
            self.binary, "--encrypt",
            "--age", ",".join(recipients),
            "--input-type", fmt,
            "--output-type", fmt,
            str(source),
        ]
        logger.debug(
            "Encrypting %s for %d recipient(s)", source, len(recipients),
        )
        return run_checked(cmd, EncryptionFailed)

    def decrypt(self, source: Path, identity_path: Path, fmt: str = "yaml") -> bytes:
        """Decrypt ``source`` with the identity at ``identity_path``."""
        self._require()
        env = dict(os.environ)
        env[AGE_KEY_FILE_ENV] = str(identity_path)
        cmd = [
            self.binary, "--decrypt",
            "--input-type", fmt,
            "--output-type", fmt,
            str(source),
        ]
        logger.debug("Decrypting %s", source)
        return run_checked(cmd, DecryptionFailed, env=env)
