"""
ServerConf exceptions.

Every handled failure of the encrypted-configuration core is a
``ServerConfError``. Each carries an optional ``hint`` with the remediation
shown to the operator next to the one-line diagnostic.
"""
from typing import Optional


class ServerConfError(Exception):
    """Base class for all handled serverconf failures."""

    hint: Optional[str] = None

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        if hint is not None:
            self.hint = hint

    def __str__(self) -> str:
        message = super().__str__()
        if self.hint:
            return f"{message} ({self.hint})"
        return message


class PrerequisiteMissing(ServerConfError):
    """A required external binary (age-keygen, sops) is not installed."""

    hint = "run the bootstrap script first to install required tools"


class PermissionDenied(ServerConfError):
    """A file or directory could not be created or secured."""


class KeyFileNotFound(ServerConfError):
    hint = "run 'age-key-setup generate' or 'age-key-setup import FILE'"


class KeyFileCorrupt(ServerConfError):
    hint = "regenerate the identity or import a valid key file"


class ImportSourceNotFound(ServerConfError):
    pass


class ConfigFileNotFound(ServerConfError):

    def __init__(self, path, hint: Optional[str] = None):
        self.path = path
        super().__init__(f"Configuration file {path} not found", hint)


class InvalidConfigFormat(ServerConfError):
    pass


class DecryptionFailed(ServerConfError):
    hint = (
        "check that SOPS_AGE_KEY_FILE points to an identity listed as a "
        "recipient of the file"
    )


class EncryptionFailed(ServerConfError):
    pass


class NoRecipients(ServerConfError):
    hint = "run 'age-key-setup config' to add your public key to the policy file"


class EditorFailed(ServerConfError):
    hint = "the encrypted file was left unchanged"


class PolicyParseAmbiguous(ServerConfError):
    """Recoverable: the policy file could not be edited structurally."""

    hint = "review the policy file manually"
