"""Team Vault — Encrypted, committable storage for shared env variables.

Security Note (Threat Model):
    The vault file is safe to commit: it holds ciphertext, an HMAC and
    non-secret metadata only. The key travels out-of-band (env files that
    are git-ignored, or the environment) and is never written to the vault.
    Decrypted values live in process memory while an operation runs; a
    memory dump of the process could expose them. This is an accepted
    limitation.
"""

from .audit import AuditLog, AuditLogEntry, AuditOperation, ChainBrokenError
from .config import KeySources, VaultConfig
from .crypto import CryptoEngine
from .envelope import VaultEnvelope, VaultMetadata, deserialize, serialize
from .exceptions import (
    AuditError,
    DecryptionError,
    FormatError,
    IntegrityError,
    KeyNotFoundError,
    RekeyError,
    VaultError,
    VaultFileNotFoundError,
)
from .keys import discover_key, generate_key, validate_key
from .result import Err, Ok, Result
from .team_vault import VaultOrchestrator

__all__ = [
    "VaultOrchestrator",
    "VaultConfig",
    "KeySources",
    "CryptoEngine",
    "VaultEnvelope",
    "VaultMetadata",
    "serialize",
    "deserialize",
    "AuditLog",
    "AuditLogEntry",
    "AuditOperation",
    "ChainBrokenError",
    "generate_key",
    "validate_key",
    "discover_key",
    "Ok",
    "Err",
    "Result",
    "VaultError",
    "KeyNotFoundError",
    "FormatError",
    "IntegrityError",
    "DecryptionError",
    "VaultFileNotFoundError",
    "AuditError",
    "RekeyError",
]
