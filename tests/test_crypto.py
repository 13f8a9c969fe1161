"""
Tests for the vault crypto core.

Tests cover:
- Encrypt/decrypt round trip and metadata
- Tamper detection on every cryptographic field
- Wrong key handling and the generic failure message
- HMAC-before-AEAD ordering (DecryptionError only after a valid HMAC)
- CryptoEngine futures and async wrappers
"""
import asyncio
from concurrent.futures import Future
from datetime import datetime, timezone

import pytest

from navigator_env.vault import crypto
from navigator_env.vault.crypto import (
    AEAD_CONTEXT,
    HMAC_CONTEXT,
    CryptoEngine,
    compute_hmac,
    decrypt,
    derive_keys,
    encrypt,
)
from navigator_env.vault.envelope import VaultMetadata
from navigator_env.vault.exceptions import (
    GENERIC_OPEN_FAILURE,
    DecryptionError,
    IntegrityError,
)
from navigator_env.vault.keys import generate_key

PLAINTEXT = b"DATABASE_URL=postgres://x\nNODE_ENV=production\n"


def _flip(data: bytes, index: int = 0) -> bytes:
    return data[:index] + bytes([data[index] ^ 0x01]) + data[index + 1:]


class TestKeyDerivation:
    """Tests for the key schedule."""

    def test_production_iteration_count(self, fast_kdf):
        """Test the module default is not weakened (tests run with fewer rounds)."""
        assert fast_kdf >= 600_000
        assert crypto.PBKDF2_ITERATIONS == 1000

    def test_contexts_differ(self):
        assert AEAD_CONTEXT != HMAC_CONTEXT

    def test_aead_and_hmac_keys_differ(self, vault_key):
        aead_key, hmac_key = derive_keys(vault_key, b"\x00" * 32)
        assert len(aead_key) == 32
        assert len(hmac_key) == 32
        assert aead_key != hmac_key

    def test_deterministic_per_salt(self, vault_key):
        salt = b"\x01" * 32
        assert derive_keys(vault_key, salt) == derive_keys(vault_key, salt)
        assert derive_keys(vault_key, salt) != derive_keys(vault_key, b"\x02" * 32)


class TestEncryptDecrypt:
    """Tests for encrypt() / decrypt()."""

    def test_roundtrip(self, vault_key):
        envelope = encrypt(PLAINTEXT, vault_key)
        assert envelope.version == 1
        assert envelope.metadata.variables == 2
        assert decrypt(envelope, vault_key).unwrap() == PLAINTEXT

    def test_empty_plaintext(self, vault_key):
        envelope = encrypt(b"", vault_key)
        assert envelope.metadata.variables == 0
        assert decrypt(envelope, vault_key).unwrap() == b""

    def test_fresh_salt_and_iv(self, vault_key):
        first = encrypt(PLAINTEXT, vault_key)
        second = encrypt(PLAINTEXT, vault_key)
        assert first.salt != second.salt
        assert first.iv != second.iv
        assert first.encrypted != second.encrypted

    def test_ciphertext_length_matches_plaintext(self, vault_key):
        envelope = encrypt(PLAINTEXT, vault_key)
        assert len(envelope.encrypted) == len(PLAINTEXT)
        assert len(envelope.auth_tag) == 16

    def test_new_metadata(self, vault_key):
        envelope = encrypt(PLAINTEXT, vault_key, created_by="alice")
        meta = envelope.metadata
        assert meta.created_by == "alice"
        assert meta.created_at == meta.updated_at

    def test_existing_metadata_preserved(self, vault_key):
        created = datetime(2024, 1, 1, tzinfo=timezone.utc)
        existing = VaultMetadata(
            created_at=created, updated_at=created, created_by="bob", variables=9
        )
        envelope = encrypt(PLAINTEXT, vault_key, existing, created_by="alice")
        assert envelope.metadata.created_at == created
        assert envelope.metadata.created_by == "bob"
        assert envelope.metadata.updated_at > created
        assert envelope.metadata.variables == 2


class TestTamperDetection:
    """Tests for integrity failures."""

    def test_wrong_key(self, vault_key):
        envelope = encrypt(PLAINTEXT, vault_key)
        result = decrypt(envelope, generate_key())
        assert not result.ok
        assert isinstance(result.error, IntegrityError)
        assert result.error.message == GENERIC_OPEN_FAILURE

    @pytest.mark.parametrize("field", ["salt", "iv", "auth_tag", "encrypted", "hmac"])
    def test_flipped_byte_detected(self, vault_key, field):
        """Test a single-bit change in any field fails before decryption."""
        envelope = encrypt(PLAINTEXT, vault_key)
        tampered = envelope.model_copy(
            update={field: _flip(getattr(envelope, field), 3)}
        )
        result = decrypt(tampered, vault_key)
        assert not result.ok
        assert isinstance(result.error, IntegrityError)

    def test_aead_failure_after_valid_hmac(self, vault_key):
        """Test a forged-but-authenticated tag surfaces as DecryptionError."""
        envelope = encrypt(PLAINTEXT, vault_key)
        bad_tag = _flip(envelope.auth_tag)
        _, hmac_key = derive_keys(vault_key, envelope.salt)
        forged = envelope.model_copy(update={
            "auth_tag": bad_tag,
            "hmac": compute_hmac(
                hmac_key, envelope.version, envelope.salt,
                envelope.iv, bad_tag, envelope.encrypted,
            ),
        })
        result = decrypt(forged, vault_key)
        assert not result.ok
        assert isinstance(result.error, DecryptionError)
        assert result.error.message == GENERIC_OPEN_FAILURE


class TestCryptoEngine:
    """Tests for the worker pool."""

    def test_submit_returns_futures(self, vault_key):
        with CryptoEngine(max_workers=2) as engine:
            envelope = engine.submit_encrypt(PLAINTEXT, vault_key).result(timeout=30)
            plain = engine.submit_decrypt(envelope, vault_key).result(timeout=30)
        assert plain.unwrap() == PLAINTEXT

    @pytest.mark.asyncio
    async def test_async_roundtrip(self, vault_key):
        with CryptoEngine(max_workers=2) as engine:
            envelope = await engine.encrypt(PLAINTEXT, vault_key)
            result = await engine.decrypt(envelope, vault_key)
        assert result.unwrap() == PLAINTEXT

    @pytest.mark.asyncio
    async def test_concurrent_operations(self, vault_key):
        with CryptoEngine(max_workers=4) as engine:
            envelopes = await asyncio.gather(
                *(engine.encrypt(f"N={i}\n".encode(), vault_key) for i in range(6))
            )
            results = await asyncio.gather(
                *(engine.decrypt(e, vault_key) for e in envelopes)
            )
        assert [r.unwrap() for r in results] == [f"N={i}\n".encode() for i in range(6)]

    @pytest.mark.asyncio
    async def test_timeout_cancels_future(self):
        with CryptoEngine(max_workers=1) as engine:
            pending: Future = Future()
            with pytest.raises(asyncio.TimeoutError):
                await engine._await(pending, 0.01)
            assert pending.cancelled()
