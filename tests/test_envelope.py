"""
Tests for the vault envelope codec.
"""
import orjson
import pytest

from navigator_env.vault.crypto import decrypt, encrypt
from navigator_env.vault.envelope import (
    deserialize,
    digest,
    format_timestamp,
    read_metadata,
    serialize,
)
from navigator_env.vault.exceptions import FormatError


@pytest.fixture
def envelope(vault_key):
    return encrypt(b"A=1\nB=2\n", vault_key, created_by="alice")


class TestSerialize:
    """Tests for serialize()."""

    def test_field_order(self, envelope):
        data = orjson.loads(serialize(envelope))
        assert list(data) == ["version", "salt", "iv", "authTag", "encrypted", "hmac", "metadata"]
        assert list(data["metadata"]) == ["createdAt", "updatedAt", "createdBy", "variables"]

    def test_hex_fields(self, envelope):
        data = orjson.loads(serialize(envelope))
        assert len(data["salt"]) == 64
        assert len(data["iv"]) == 32
        assert len(data["authTag"]) == 32
        assert len(data["hmac"]) == 64
        bytes.fromhex(data["encrypted"])

    def test_pretty_printed_with_newline(self, envelope):
        text = serialize(envelope)
        assert text.endswith("}\n")
        assert '\n  "version": 1,' in text

    def test_timestamps_are_utc_millis(self, envelope):
        data = orjson.loads(serialize(envelope))
        created = data["metadata"]["createdAt"]
        assert created.endswith("Z")
        assert len(created) == len("2024-01-01T00:00:00.000Z")

    def test_deterministic(self, envelope):
        assert serialize(envelope) == serialize(envelope)

    def test_created_by_omitted_when_unknown(self, vault_key):
        data = orjson.loads(serialize(encrypt(b"A=1\n", vault_key)))
        assert "createdBy" not in data["metadata"]

    def test_does_not_contain_key(self, envelope, vault_key):
        assert vault_key not in serialize(envelope)


class TestDeserialize:
    """Tests for deserialize()."""

    def test_roundtrip_decrypts(self, envelope, vault_key):
        parsed = deserialize(serialize(envelope)).unwrap()
        assert decrypt(parsed, vault_key).unwrap() == b"A=1\nB=2\n"

    def test_serialize_is_stable_after_parse(self, envelope):
        text = serialize(envelope)
        assert serialize(deserialize(text).unwrap()) == text

    @pytest.mark.parametrize("text", ["", "not json", "[1, 2]", "null"])
    def test_not_an_object(self, text):
        result = deserialize(text)
        assert not result.ok
        assert isinstance(result.error, FormatError)

    def test_unsupported_version(self, envelope):
        data = orjson.loads(serialize(envelope))
        data["version"] = 2
        result = deserialize(orjson.dumps(data).decode())
        assert isinstance(result.error, FormatError)
        assert "version" in result.error.message

    @pytest.mark.parametrize("field", ["salt", "iv", "authTag", "encrypted", "hmac", "metadata"])
    def test_missing_field(self, envelope, field):
        data = orjson.loads(serialize(envelope))
        del data[field]
        assert not deserialize(orjson.dumps(data).decode()).ok

    def test_bad_hex(self, envelope):
        data = orjson.loads(serialize(envelope))
        data["iv"] = "zz" * 16
        assert isinstance(deserialize(orjson.dumps(data).decode()).error, FormatError)

    @pytest.mark.parametrize("field", ["salt", "iv", "authTag", "hmac"])
    def test_wrong_size(self, envelope, field):
        data = orjson.loads(serialize(envelope))
        data[field] = data[field][:-2]
        result = deserialize(orjson.dumps(data).decode())
        assert isinstance(result.error, FormatError)

    def test_negative_variable_count(self, envelope):
        data = orjson.loads(serialize(envelope))
        data["metadata"]["variables"] = -1
        assert not deserialize(orjson.dumps(data).decode()).ok


class TestMetadata:
    """Tests for read_metadata() and helpers."""

    def test_read_metadata(self, envelope):
        meta = read_metadata(serialize(envelope)).unwrap()
        assert meta.variables == 2
        assert meta.created_by == "alice"

    def test_read_metadata_ignores_ciphertext(self, envelope):
        data = orjson.loads(serialize(envelope))
        data["salt"] = "broken"
        assert read_metadata(orjson.dumps(data).decode()).ok

    def test_read_metadata_missing(self):
        assert isinstance(read_metadata("{}").error, FormatError)

    def test_digest_is_sha256_hex(self, envelope):
        value = digest(serialize(envelope))
        assert len(value) == 64
        assert value == digest(serialize(envelope))

    def test_format_naive_timestamp(self):
        from datetime import datetime
        assert format_timestamp(datetime(2024, 5, 1, 12, 0, 0, 123456)) == "2024-05-01T12:00:00.123Z"
