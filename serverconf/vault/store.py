"""
SecretStore: encrypt, decrypt, edit, view and rekey sops-managed files.

The store works on an explicit ``Identity`` (used for decryption) and a
``PolicyFileEditor`` (source of the recipients a file is encrypted for).

Plaintext lifetime:
    Decrypted content only ever lands in a ``scoped_tempfile`` (0600,
    memory-backed when possible) that is removed when the operation ends,
    including on errors and termination signals. Ciphertext replaces the
    target atomically, so the target is never left half-written or in
    plaintext form.

Security Note:
    Never log plaintext or ciphertext values. Only log paths and counts.
"""
import os
import shlex
import shutil
import logging
import tempfile
import subprocess
from pathlib import Path
from typing import IO, Optional
from contextlib import contextmanager, nullcontext
from collections.abc import Callable, Iterator

import yaml

from ..conf import default_editor
from ..exceptions import (
    ConfigFileNotFound,
    EditorFailed,
    InvalidConfigFormat,
    NoRecipients,
    PrerequisiteMissing,
)
from ..tools import Sops, file_format
from .keys import Identity, is_public_key
from .keepalive import KeepAlive
from .policy import PolicyFileEditor, PolicyUpdate
from .tempfiles import scoped_tempfile

logger = logging.getLogger("serverconf.vault")

#: Launches an editor on a file and returns its exit status.
Editor = Callable[[Path], int]


def launch_editor(path: Path, command: Optional[str] = None) -> int:
    """Open ``path`` in the configured editor and wait for it to exit."""
    cmd = shlex.split(command or default_editor()) + [str(path)]
    try:
        return subprocess.run(cmd).returncode
    except FileNotFoundError:
        raise PrerequisiteMissing(
            f"Editor {cmd[0]} not found", hint="set $EDITOR to an installed editor",
        ) from None


def is_encrypted(path: Path) -> bool:
    """Check whether a structured file carries sops metadata."""
    try:
        document = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except (yaml.YAMLError, UnicodeDecodeError):
        return False
    return isinstance(document, dict) and isinstance(document.get("sops"), dict)


def _replace(target: Path, data: bytes) -> None:
    mode = target.stat().st_mode & 0o777 if target.exists() else 0o600
    fd, tmp = tempfile.mkstemp(
        dir=target.parent, prefix=f".{target.name}.", suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.chmod(tmp, mode)
        os.replace(tmp, target)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class SecretStore:
    """Encrypted file operations for one identity and policy file.

    Args:
        identity: Local identity used to decrypt.
        policy: Editor of the policy file that lists recipients.
        sops: sops wrapper, ``Sops()`` by default.
        editor: Editor launcher, ``launch_editor`` by default.
    """

    def __init__(
        self,
        identity: Identity,
        policy: PolicyFileEditor,
        sops: Optional[Sops] = None,
        editor: Optional[Editor] = None,
    ):
        self.identity = identity
        self.policy = policy
        self.sops = sops or Sops()
        self._editor = editor or launch_editor

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def recipients(self, path: Path) -> list[str]:
        """Return the recipients ``path`` must be encrypted for.

        Raises:
            NoRecipients: If no rule of the policy grants a key for ``path``.
        """
        target = Path(path).resolve()
        recipients = self.policy.load().recipients_for(target)
        if not recipients:
            raise NoRecipients(
                f"No recipients in {self.policy.path} for {path}"
            )
        return recipients

    def _encrypt_to(self, source: Path, target: Path) -> None:
        recipients = self.recipients(target)
        ciphertext = self.sops.encrypt(source, recipients, file_format(target))
        _replace(target, ciphertext)
        logger.info(
            "Encrypted %s for %d recipient(s)", target, len(recipients),
        )

    def _edit_and_encrypt(
        self,
        plaintext: Path,
        target: Path,
        keepalive: Optional[KeepAlive] = None,
    ) -> None:
        with keepalive or nullcontext():
            status = self._editor(plaintext)
        if status != 0:
            raise EditorFailed(f"Editor exited with status {status}")
        self._encrypt_to(plaintext, target)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def encrypt_in_place(self, path: Path) -> bool:
        """Encrypt a plaintext file in place.

        Returns:
            False if the file already was encrypted, True otherwise.
        """
        path = Path(path)
        if not path.is_file():
            raise ConfigFileNotFound(path)
        if is_encrypted(path):
            logger.warning("%s is already encrypted, skipping", path)
            return False
        self._encrypt_to(path, path)
        return True

    @contextmanager
    def decrypt_to_temp(self, path: Path) -> Iterator[Path]:
        """Decrypt ``path`` into a scoped temp file and yield its path.

        Raises:
            ConfigFileNotFound: If ``path`` does not exist.
            DecryptionFailed: If the identity cannot decrypt ``path``.
        """
        path = Path(path)
        if not path.is_file():
            raise ConfigFileNotFound(path)
        plaintext = self.sops.decrypt(path, self.identity.path, file_format(path))
        with scoped_tempfile(suffix=path.suffix, content=plaintext) as tmp:
            del plaintext
            yield tmp

    def edit(self, path: Path, keepalive: Optional[KeepAlive] = None) -> None:
        """Decrypt, edit and re-encrypt ``path``.

        If the editor fails the encrypted file is left untouched.
        """
        path = Path(path)
        self.recipients(path)
        with self.decrypt_to_temp(path) as tmp:
            self._edit_and_encrypt(tmp, path, keepalive)

    def view(self, path: Path, stream: IO[bytes]) -> None:
        """Write the decrypted content of ``path`` to ``stream``."""
        with self.decrypt_to_temp(path) as tmp:
            with open(tmp, "rb") as fh:
                shutil.copyfileobj(fh, stream)
        stream.flush()

    def init(
        self,
        template: Path,
        path: Path,
        keepalive: Optional[KeepAlive] = None,
    ) -> None:
        """Create ``path`` from ``template`` via an edit session.

        An existing ``path`` is edited instead.
        """
        path = Path(path)
        if path.exists():
            logger.info("%s already exists, editing it", path)
            self.edit(path, keepalive)
            return
        template = Path(template)
        if not template.is_file():
            raise ConfigFileNotFound(template)
        self.recipients(path)
        with scoped_tempfile(suffix=path.suffix, content=template.read_bytes()) as tmp:
            self._edit_and_encrypt(tmp, path, keepalive)
        logger.info("Created encrypted %s from %s", path, template)

    def reencrypt(self, path: Path) -> None:
        """Re-encrypt ``path`` for the current recipients of the policy.

        Removing a key from the policy does not revoke access to existing
        ciphertext; this does.
        """
        path = Path(path)
        self.recipients(path)
        with self.decrypt_to_temp(path) as tmp:
            self._encrypt_to(tmp, path)

    def rekey(self, public_key: str, path: Path) -> PolicyUpdate:
        """Grant ``public_key`` access to ``path``.

        Raises:
            NoRecipients: If the key was added to the policy but an earlier
                rule still decides the recipients of ``path``.
        """
        if not is_public_key(public_key):
            raise InvalidConfigFormat(f"Invalid age public key: {public_key!r}")
        update = self.policy.ensure_recipient(public_key)
        if public_key not in self.recipients(path):
            raise NoRecipients(
                f"{public_key} is not a recipient of {path} in {self.policy.path}",
                hint="an earlier creation rule matches the file; add the key to that rule",
            )
        self.reencrypt(path)
        return update
