"""
Vault Envelope — the persisted, committable vault file.

On disk the envelope is a JSON document with a fixed field order so that
re-encryptions produce small, readable diffs::

    {
      "version": 1,
      "salt": "<hex, 32 bytes>",
      "iv": "<hex, 16 bytes>",
      "authTag": "<hex, 16 bytes>",
      "encrypted": "<hex>",
      "hmac": "<hex, 32 bytes>",
      "metadata": {
        "createdAt": "2024-01-01T00:00:00.000Z",
        "updatedAt": "2024-01-01T00:00:00.000Z",
        "createdBy": "alice",
        "variables": 2
      }
    }

The envelope never contains the key.
"""
import hashlib
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import orjson
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

from .exceptions import FormatError
from .result import Err, Ok, Result

logger = logging.getLogger("navigator.vault")

VAULT_VERSION = 1
SALT_SIZE = 32
IV_SIZE = 16
TAG_SIZE = 16
HMAC_SIZE = 32

_FIXED_SIZES = {
    "salt": SALT_SIZE,
    "iv": IV_SIZE,
    "auth_tag": TAG_SIZE,
    "hmac": HMAC_SIZE,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a ``Z`` suffix."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(
        timespec="milliseconds"
    ).replace("+00:00", "Z")


class VaultMetadata(BaseModel):
    """Non-secret information about the vault contents."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")
    created_by: Optional[str] = Field(default=None, alias="createdBy")
    variables: int = Field(ge=0)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
        }
        if self.created_by is not None:
            data["createdBy"] = self.created_by
        data["variables"] = self.variables
        return data


class VaultEnvelope(BaseModel):
    """Encrypted vault contents plus the parameters needed to open them.

    Binary fields accept raw bytes or hex strings.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    version: int
    salt: bytes
    iv: bytes
    auth_tag: bytes = Field(alias="authTag")
    encrypted: bytes
    hmac: bytes
    metadata: VaultMetadata

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: int) -> int:
        if v != VAULT_VERSION:
            raise ValueError(
                f"Unsupported vault version: {v}. Expected: {VAULT_VERSION}"
            )
        return v

    @field_validator("salt", "iv", "auth_tag", "encrypted", "hmac", mode="before")
    @classmethod
    def decode_hex(cls, v: Any) -> Any:
        if isinstance(v, str):
            try:
                return bytes.fromhex(v)
            except ValueError as err:
                raise ValueError("expected a hex string") from err
        return v

    @field_validator("salt", "iv", "auth_tag", "hmac")
    @classmethod
    def validate_size(cls, v: bytes, info) -> bytes:
        expected = _FIXED_SIZES[info.field_name]
        if len(v) != expected:
            raise ValueError(
                f"{info.field_name} must be {expected} bytes, got {len(v)}"
            )
        return v

    def to_dict(self) -> dict[str, Any]:
        """Plain dict in the canonical on-disk field order."""
        return {
            "version": self.version,
            "salt": self.salt.hex(),
            "iv": self.iv.hex(),
            "authTag": self.auth_tag.hex(),
            "encrypted": self.encrypted.hex(),
            "hmac": self.hmac.hex(),
            "metadata": self.metadata.to_dict(),
        }


def serialize(envelope: VaultEnvelope) -> str:
    """Serialize an envelope deterministically (2-space JSON, trailing newline)."""
    return orjson.dumps(
        envelope.to_dict(), option=orjson.OPT_INDENT_2
    ).decode("utf-8") + "\n"


def _loads_object(text: str) -> dict:
    try:
        data = orjson.loads(text)
    except orjson.JSONDecodeError as err:
        raise FormatError(f"Vault file is not valid JSON: {err}") from err
    if not isinstance(data, dict):
        raise FormatError("Vault file must contain a JSON object")
    return data


def _describe(err: ValidationError) -> str:
    first = err.errors()[0]
    where = ".".join(str(p) for p in first.get("loc", ())) or "envelope"
    return f"{where}: {first.get('msg')}"


def deserialize(text: str) -> Result[VaultEnvelope, FormatError]:
    """Parse and validate envelope text.

    Checks the version, presence, hex encoding and size of every binary
    field, and the metadata. No partially decoded state is returned.

    Returns:
        ``Ok(VaultEnvelope)`` or ``Err(FormatError)``.
    """
    try:
        data = _loads_object(text)
        if data.get("version") != VAULT_VERSION:
            raise FormatError(
                f"Unsupported vault version: {data.get('version')!r}. "
                f"Expected: {VAULT_VERSION}"
            )
        envelope = VaultEnvelope.model_validate(data)
    except FormatError as err:
        return Err(err)
    except ValidationError as err:
        return Err(FormatError(f"Malformed vault envelope ({_describe(err)})"))
    return Ok(envelope)


def read_metadata(text: str) -> Result[VaultMetadata, FormatError]:
    """Read only the metadata block, without validating ciphertext fields."""
    try:
        data = _loads_object(text)
        metadata = VaultMetadata.model_validate(data.get("metadata"))
    except FormatError as err:
        return Err(err)
    except ValidationError as err:
        return Err(FormatError(f"Malformed vault metadata ({_describe(err)})"))
    return Ok(metadata)


def digest(text: str) -> str:
    """SHA-256 of the serialized envelope, used as the audit payload digest."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
