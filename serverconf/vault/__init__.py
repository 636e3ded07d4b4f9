"""Vault: age identities, the sops policy file and encrypted settings files.

Security Note (Threat Model):
    Decrypted settings exist in process memory and, for the duration of a
    single operation, in a 0600 temporary file (memory-backed where
    available). Another process running as the same user can read them
    during that window. This is an accepted limitation; the core only
    guarantees that plaintext is never the last form left on disk.
"""

from .keys import Identity, KeyManager, parse_identity
from .policy import PolicyFile, PolicyFileEditor, PolicyRule, PolicyUpdate
from .store import SecretStore
from .keepalive import KeepAlive

__all__ = [
    "Identity",
    "KeyManager",
    "parse_identity",
    "PolicyFile",
    "PolicyFileEditor",
    "PolicyRule",
    "PolicyUpdate",
    "SecretStore",
    "KeepAlive",
]
