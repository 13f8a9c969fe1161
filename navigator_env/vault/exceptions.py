"""Vault error taxonomy.

Integrity and decryption failures share one generic message so a caller
cannot tell a tampered vault from a wrong key.
"""
from typing import Optional

GENERIC_OPEN_FAILURE = "Wrong key or tampered vault."


class VaultError(Exception):
    """Base class for every vault failure."""

    code: str = "VAULT_ERROR"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


class KeyNotFoundError(VaultError):
    """No vault key could be discovered."""

    code = "KEY_NOT_FOUND"

    def __init__(
        self,
        message: Optional[str] = None,
        checked: Optional[list[str]] = None
    ) -> None:
        self.checked = list(checked or [])
        if message is None:
            message = (
                "No valid vault key found. Checked: "
                f"{', '.join(self.checked) or 'nothing'}. "
                "Generate one with `nevr-vault keygen`."
            )
        super().__init__(message)


class FormatError(VaultError):
    """Malformed vault envelope."""

    code = "FORMAT_ERROR"


class IntegrityError(VaultError):
    """Envelope integrity tag did not match."""

    code = "INTEGRITY_FAILED"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or GENERIC_OPEN_FAILURE)


class DecryptionError(VaultError):
    """Authenticated decryption failed."""

    code = "DECRYPT_FAILED"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or GENERIC_OPEN_FAILURE)


class VaultFileNotFoundError(VaultError, FileNotFoundError):
    """A vault or plaintext source file is missing."""

    code = "FILE_NOT_FOUND"

    def __init__(self, path, hint: Optional[str] = None) -> None:
        self.path = path
        message = f"File not found: {path}"
        if hint:
            message = f"{message}. {hint}"
        super().__init__(message)


class AuditError(VaultError):
    """Audit ledger could not be read, written or verified."""

    code = "AUDIT_FAILED"


class RekeyError(VaultError):
    """Vault was re-encrypted but the new key could not be stored."""

    code = "REKEY_INCOMPLETE"

    def __init__(self, key: str, message: Optional[str] = None) -> None:
        self.key = key
        super().__init__(
            message or "Vault is encrypted under a new key that was not saved. "
            "Store the key attached to this error before anything else."
        )
