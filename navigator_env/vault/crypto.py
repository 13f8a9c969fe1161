"""
Vault Crypto Core — Key derivation, authenticated encryption and integrity.

Key schedule for every envelope:
- Master: PBKDF2-HMAC-SHA512(password, salt 32B, 600 000 rounds) → 64 bytes
- AEAD key: HKDF(master, "nevr-vault-aead-v1") → AES-256-GCM
- HMAC key: HKDF(master, "nevr-vault-hmac-v1") → HMAC-SHA256 over
  [version 4B BE][salt][iv][authTag][encrypted]

The two keys come from distinct derivation contexts so no key is used by
two primitives.

Decryption checks the HMAC first, in constant time. On mismatch it fails
with ``IntegrityError`` and never reaches the AEAD; only an envelope with a
valid HMAC is handed to AES-GCM, whose tag failure becomes
``DecryptionError``. Both carry the same generic message.

Key derivation is deliberately slow, so ``CryptoEngine`` runs it on a
thread pool and hands back futures.

Security Note:
    Never log plaintext, ciphertext, passwords or derived keys.
"""
import os
import struct
import asyncio
import logging
from typing import Optional
from concurrent.futures import Future, ThreadPoolExecutor

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .. import conf
from ..envfile import parse
from .envelope import (
    IV_SIZE,
    SALT_SIZE,
    TAG_SIZE,
    VAULT_VERSION,
    VaultEnvelope,
    VaultMetadata,
    utcnow,
)
from .exceptions import DecryptionError, IntegrityError
from .result import Err, Ok, Result

logger = logging.getLogger("navigator.vault")

KEY_LENGTH = 32  # AES-256
MASTER_LENGTH = 64
PBKDF2_ITERATIONS = 600_000

AEAD_CONTEXT = "nevr-vault-aead-v1"
HMAC_CONTEXT = "nevr-vault-hmac-v1"


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_master(password: str, salt: bytes) -> bytes:
    """Stretch a password into 64 bytes of master key material.

    Args:
        password: Vault key or passphrase.
        salt: Per-envelope random salt.

    Returns:
        64-byte master secret.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=MASTER_LENGTH,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(password.encode("utf-8"))


def derive_key(seed: bytes, context: str) -> bytes:
    """Derive a 32-byte key using HKDF-SHA256.

    Args:
        seed: Input key material (the PBKDF2 master secret).
        context: Context string for domain separation.

    Returns:
        32-byte derived key.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,  # seed is already salted and stretched
        info=context.encode("utf-8"),
    )
    return hkdf.derive(seed)


def derive_keys(password: str, salt: bytes) -> tuple[bytes, bytes]:
    """Return ``(aead_key, hmac_key)`` for ``password`` and ``salt``."""
    master = derive_master(password, salt)
    return derive_key(master, AEAD_CONTEXT), derive_key(master, HMAC_CONTEXT)


def _hmac(key: bytes) -> hmac.HMAC:
    return hmac.HMAC(key, hashes.SHA256())


def _mac_input(version: int, salt: bytes, iv: bytes, auth_tag: bytes, encrypted: bytes) -> bytes:
    return struct.pack("!I", version) + salt + iv + auth_tag + encrypted


def compute_hmac(
    key: bytes,
    version: int,
    salt: bytes,
    iv: bytes,
    auth_tag: bytes,
    encrypted: bytes
) -> bytes:
    """HMAC-SHA256 over the envelope's cryptographic fields."""
    h = _hmac(key)
    h.update(_mac_input(version, salt, iv, auth_tag, encrypted))
    return h.finalize()


# ---------------------------------------------------------------------------
# Envelope encryption
# ---------------------------------------------------------------------------

def count_variables(plaintext: bytes) -> int:
    """Number of distinct variables in env-file plaintext."""
    return len(parse(plaintext.decode("utf-8", errors="replace")))


def encrypt(
    plaintext: bytes,
    password: str,
    existing_metadata: Optional[VaultMetadata] = None,
    created_by: Optional[str] = None
) -> VaultEnvelope:
    """Encrypt env-file plaintext into a vault envelope.

    Fresh salt and IV are drawn for every call. When ``existing_metadata``
    is given its ``createdAt`` and ``createdBy`` are carried over.

    Args:
        plaintext: UTF-8 env-file content.
        password: Vault key.
        existing_metadata: Metadata of the envelope being replaced.
        created_by: Actor label for a brand-new envelope.

    Returns:
        The complete envelope.
    """
    salt = os.urandom(SALT_SIZE)
    iv = os.urandom(IV_SIZE)
    aead_key, hmac_key = derive_keys(password, salt)

    sealed = AESGCM(aead_key).encrypt(iv, plaintext, None)
    encrypted, auth_tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
    tag = compute_hmac(hmac_key, VAULT_VERSION, salt, iv, auth_tag, encrypted)

    now = utcnow()
    if existing_metadata is not None:
        created_at = existing_metadata.created_at
        created_by = existing_metadata.created_by
    else:
        created_at = now
    metadata = VaultMetadata(
        created_at=created_at,
        updated_at=now,
        created_by=created_by,
        variables=count_variables(plaintext),
    )
    return VaultEnvelope(
        version=VAULT_VERSION,
        salt=salt,
        iv=iv,
        auth_tag=auth_tag,
        encrypted=encrypted,
        hmac=tag,
        metadata=metadata,
    )


def decrypt(
    envelope: VaultEnvelope,
    password: str
) -> Result[bytes, IntegrityError | DecryptionError]:
    """Verify and decrypt a vault envelope.

    Args:
        envelope: A structurally valid envelope.
        password: Vault key.

    Returns:
        ``Ok(plaintext)``, ``Err(IntegrityError)`` when the HMAC does not
        match (wrong key or tampering) or ``Err(DecryptionError)`` when the
        AEAD tag fails after a valid HMAC.
    """
    aead_key, hmac_key = derive_keys(password, envelope.salt)

    h = _hmac(hmac_key)
    h.update(
        _mac_input(
            envelope.version,
            envelope.salt,
            envelope.iv,
            envelope.auth_tag,
            envelope.encrypted,
        )
    )
    try:
        # constant-time comparison
        h.verify(envelope.hmac)
    except InvalidSignature:
        return Err(IntegrityError())

    try:
        plaintext = AESGCM(aead_key).decrypt(
            envelope.iv, envelope.encrypted + envelope.auth_tag, None
        )
    except InvalidTag:
        return Err(DecryptionError())
    return Ok(plaintext)


# ---------------------------------------------------------------------------
# Worker pool
# ---------------------------------------------------------------------------

class CryptoEngine:
    """Runs envelope encryption and decryption on a dedicated thread pool.

    ``submit_*`` return ``concurrent.futures.Future`` objects; the coroutine
    methods await them without blocking the event loop. Cancelling an
    awaiting task abandons the result: nothing is written by this class.
    """

    def __init__(
        self,
        max_workers: int = conf.CRYPTO_WORKERS,
        timeout: Optional[float] = conf.CRYPTO_TIMEOUT
    ):
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="nevr-crypto"
        )
        self._timeout = timeout

    def __enter__(self) -> "CryptoEngine":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)

    def submit_encrypt(
        self,
        plaintext: bytes,
        password: str,
        existing_metadata: Optional[VaultMetadata] = None,
        created_by: Optional[str] = None
    ) -> "Future[VaultEnvelope]":
        return self._executor.submit(
            encrypt, plaintext, password, existing_metadata, created_by
        )

    def submit_decrypt(
        self,
        envelope: VaultEnvelope,
        password: str
    ) -> "Future[Result[bytes, IntegrityError | DecryptionError]]":
        return self._executor.submit(decrypt, envelope, password)

    async def _await(self, future: Future, timeout: Optional[float]):
        timeout = self._timeout if timeout is None else timeout
        wrapped = asyncio.wrap_future(future)
        try:
            return await asyncio.wait_for(wrapped, timeout)
        except (asyncio.CancelledError, asyncio.TimeoutError):
            future.cancel()
            raise

    async def encrypt(
        self,
        plaintext: bytes,
        password: str,
        existing_metadata: Optional[VaultMetadata] = None,
        created_by: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> VaultEnvelope:
        """Encrypt on the worker pool.

        Raises:
            asyncio.TimeoutError: If the work did not finish in ``timeout``.
        """
        future = self.submit_encrypt(
            plaintext, password, existing_metadata, created_by
        )
        return await self._await(future, timeout)

    async def decrypt(
        self,
        envelope: VaultEnvelope,
        password: str,
        timeout: Optional[float] = None
    ) -> Result[bytes, IntegrityError | DecryptionError]:
        """Decrypt on the worker pool; see :func:`decrypt`."""
        future = self.submit_decrypt(envelope, password)
        return await self._await(future, timeout)
