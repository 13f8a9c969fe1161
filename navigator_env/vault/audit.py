"""
Vault Audit Log — append-only, hash-chained ledger of vault operations.

File format (NDJSON, one ledger per vault file)::

    {"genesis": "<hex>", "archive": null}
    {"sequence": 1, "timestamp": "...", "operation": "push", ...}
    {"sequence": 2, ...}

Each entry stores::

    hash = SHA256(prevHash | sequence | operation | timestamp | payloadDigest)

where ``prevHash`` is the previous entry's hash, or the header ``genesis``
for the first entry. A fresh ledger starts from ``GENESIS_HASH``; a rotated
ledger starts from the hash of the last archived entry and names the
archive file in its header, so verification can walk back across every
rotation.

Writes go through a per-file lock and replace the whole file atomically.
Entries never contain plaintext, only digests of the envelope.
"""
import csv
import hmac
import io
import hashlib
import logging
import threading
from enum import Enum
from pathlib import Path
from collections import Counter
from datetime import datetime, timezone
from typing import NamedTuple, Optional, Union

import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..files import atomic_write_text
from .envelope import format_timestamp, utcnow
from .exceptions import AuditError
from .result import Err, Ok, Result

logger = logging.getLogger("navigator.vault")

GENESIS_HASH = "0" * 64

_locks: dict[str, threading.Lock] = {}
_locks_guard = threading.Lock()


def _file_lock(path: Path) -> threading.Lock:
    key = str(path.resolve())
    with _locks_guard:
        lock = _locks.get(key)
        if lock is None:
            lock = _locks[key] = threading.Lock()
        return lock


class AuditOperation(str, Enum):
    """Operations recorded in the ledger."""
    PUSH = "push"
    PULL = "pull"
    SYNC = "sync"
    STATUS = "status"
    KEYGEN = "keygen"
    REKEY = "rekey"
    ROTATE = "rotate"


class ChainBrokenError(AuditError):
    """Audit chain verification failed."""

    code = "CHAIN_BROKEN"

    def __init__(self, sequence: int, reason: str = "hash mismatch") -> None:
        self.sequence = sequence
        self.reason = reason
        super().__init__(f"Audit chain broken at sequence {sequence}: {reason}")


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def parse_timestamp(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def compute_entry_hash(
    prev_hash: str,
    sequence: int,
    operation: str,
    timestamp: str,
    payload_digest: str
) -> str:
    """Chain hash of one entry."""
    material = "|".join(
        (prev_hash, str(sequence), operation, timestamp, payload_digest)
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class AuditLogEntry(BaseModel):
    """One ledger line."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    sequence: int = Field(ge=1)
    timestamp: str
    operation: AuditOperation
    actor: Optional[str] = None
    payload_digest: str = Field(alias="payloadDigest")
    prev_hash: str = Field(alias="prevHash")
    hash: str

    @property
    def recorded_at(self) -> datetime:
        return parse_timestamp(self.timestamp)

    def expected_hash(self) -> str:
        return compute_entry_hash(
            self.prev_hash,
            self.sequence,
            self.operation.value,
            self.timestamp,
            self.payload_digest,
        )

    def to_dict(self) -> dict:
        return {
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "operation": self.operation.value,
            "actor": self.actor,
            "payloadDigest": self.payload_digest,
            "prevHash": self.prev_hash,
            "hash": self.hash,
        }


class AuditHeader(BaseModel):
    """First line of a ledger file: where its chain starts."""

    genesis: str = GENESIS_HASH
    archive: Optional[str] = None


class RotationResult(NamedTuple):
    archive_path: Optional[Path]
    archived: int
    remaining: int


def verify(
    entries: list[AuditLogEntry],
    genesis: str = GENESIS_HASH
) -> Result[None, ChainBrokenError]:
    """Recompute every hash in order.

    Returns:
        ``Ok(None)`` or ``Err(ChainBrokenError)`` whose ``sequence`` is the
        first offending entry.
    """
    prev_hash = genesis
    prev_sequence: Optional[int] = None
    for entry in entries:
        if prev_sequence is not None and entry.sequence != prev_sequence + 1:
            return Err(ChainBrokenError(entry.sequence, "sequence gap"))
        if entry.prev_hash != prev_hash:
            return Err(ChainBrokenError(entry.sequence, "broken link"))
        if not hmac.compare_digest(entry.expected_hash(), entry.hash):
            return Err(ChainBrokenError(entry.sequence))
        prev_hash = entry.hash
        prev_sequence = entry.sequence
    return Ok(None)


def split_for_rotation(
    entries: list[AuditLogEntry],
    cutoff: datetime
) -> tuple[list[AuditLogEntry], list[AuditLogEntry]]:
    """Split into ``(archived, kept)``: the leading run older than ``cutoff``."""
    cutoff = _aware(cutoff)
    index = 0
    for entry in entries:
        if entry.recorded_at >= cutoff:
            break
        index += 1
    return entries[:index], entries[index:]


def _render(header: AuditHeader, entries: list[AuditLogEntry]) -> str:
    lines = [orjson.dumps(header.model_dump()).decode("utf-8")]
    lines.extend(orjson.dumps(e.to_dict()).decode("utf-8") for e in entries)
    return "\n".join(lines) + "\n"


def read_ledger(path: Path) -> tuple[AuditHeader, list[AuditLogEntry]]:
    """Load a ledger (live or archived).

    Raises:
        AuditError: On malformed content.
    """
    if not path.exists():
        return AuditHeader(), []
    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as err:
        raise AuditError(f"Audit log {path.name} is not valid UTF-8") from err
    lines = [line for line in content.splitlines() if line.strip()]
    if not lines:
        return AuditHeader(), []
    try:
        header = AuditHeader.model_validate(orjson.loads(lines[0]))
        entries = [
            AuditLogEntry.model_validate(orjson.loads(line))
            for line in lines[1:]
        ]
    except (orjson.JSONDecodeError, ValidationError) as err:
        raise AuditError(f"Malformed audit log {path.name}: {err}") from err
    return header, entries


class AuditLog:
    """Hash-chained ledger stored next to a vault file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def __repr__(self) -> str:
        return f"<AuditLog path={str(self.path)!r}>"

    def load(self) -> tuple[AuditHeader, list[AuditLogEntry]]:
        return read_ledger(self.path)

    def entries(self) -> list[AuditLogEntry]:
        return self.load()[1]

    def tail(self, count: int = 5) -> list[AuditLogEntry]:
        """Most recent ``count`` entries, oldest first."""
        if count <= 0:
            return []
        return self.entries()[-count:]

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def _append_locked(
        self,
        operation: AuditOperation,
        payload_digest: str,
        actor: Optional[str]
    ) -> AuditLogEntry:
        header, entries = self.load()
        if entries:
            prev_hash = entries[-1].hash
            sequence = entries[-1].sequence + 1
        else:
            prev_hash = header.genesis
            sequence = 1
            if header.archive:
                # continue numbering from the archived chain
                _, archived = read_ledger(self.path.parent / header.archive)
                if archived:
                    sequence = archived[-1].sequence + 1
        timestamp = format_timestamp(utcnow())
        entry = AuditLogEntry(
            sequence=sequence,
            timestamp=timestamp,
            operation=operation,
            actor=actor,
            payload_digest=payload_digest,
            prev_hash=prev_hash,
            hash=compute_entry_hash(
                prev_hash, sequence, operation.value, timestamp, payload_digest
            ),
        )
        atomic_write_text(self.path, _render(header, [*entries, entry]))
        return entry

    def append(
        self,
        operation: Union[AuditOperation, str],
        payload_digest: str,
        actor: Optional[str] = None
    ) -> AuditLogEntry:
        """Append one entry chained to the last one.

        Raises:
            AuditError: If the ledger cannot be read or written.
        """
        operation = AuditOperation(operation)
        with _file_lock(self.path):
            try:
                entry = self._append_locked(operation, payload_digest, actor)
            except OSError as err:
                raise AuditError(
                    f"Cannot write audit log {self.path.name}: {err}"
                ) from err
        logger.debug(
            "Audit %s #%d appended to %s",
            entry.operation.value, entry.sequence, self.path.name,
        )
        return entry

    def rotate(self, cutoff: datetime, actor: Optional[str] = None) -> RotationResult:
        """Archive entries older than ``cutoff`` and restart the chain.

        The archive is written first and made read-only; the live ledger is
        then replaced by a header anchored to the last archived hash plus
        the kept entries, and a ``rotate`` entry is appended whose digest is
        the SHA-256 of the archive file.
        """
        with _file_lock(self.path):
            header, entries = self.load()
            checked = verify(entries, header.genesis)
            if not checked.ok:
                raise checked.error
            archived, kept = split_for_rotation(entries, cutoff)
            if not archived:
                return RotationResult(None, 0, len(entries))
            stamp = utcnow().strftime("%Y%m%dT%H%M%S%fZ")
            archive_path = self.path.with_name(f"{self.path.name}.{stamp}.archive")
            archive_text = _render(header, archived)
            atomic_write_text(archive_path, archive_text, mode=0o444)
            new_header = AuditHeader(
                genesis=archived[-1].hash, archive=archive_path.name
            )
            atomic_write_text(self.path, _render(new_header, kept))
            self._append_locked(
                AuditOperation.ROTATE,
                hashlib.sha256(archive_text.encode("utf-8")).hexdigest(),
                actor,
            )
        logger.info(
            "Audit log rotated: %d archived to %s, %d kept",
            len(archived), archive_path.name, len(kept),
        )
        return RotationResult(archive_path, len(archived), len(kept))

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self) -> Result[None, AuditError]:
        """Verify the live chain against its header genesis."""
        try:
            header, entries = self.load()
        except AuditError as err:
            return Err(err)
        return verify(entries, header.genesis)

    def verify_all(self) -> Result[int, AuditError]:
        """Verify the live chain and every archive it descends from.

        Returns:
            ``Ok(total_entries_verified)`` or the first failure.
        """
        path = self.path
        total = 0
        seen: set[Path] = set()
        while True:
            try:
                header, entries = read_ledger(path)
            except AuditError as err:
                return Err(err)
            checked = verify(entries, header.genesis)
            if not checked.ok:
                return checked
            total += len(entries)
            if not header.archive:
                if header.genesis != GENESIS_HASH:
                    first = entries[0].sequence if entries else 0
                    return Err(ChainBrokenError(first, "missing archive reference"))
                return Ok(total)
            archive = path.parent / header.archive
            if archive in seen or not archive.exists():
                first = entries[0].sequence if entries else 0
                return Err(ChainBrokenError(first, f"archive {header.archive} not found"))
            seen.add(archive)
            try:
                _, archived = read_ledger(archive)
            except AuditError as err:
                return Err(err)
            if not archived or archived[-1].hash != header.genesis:
                first = entries[0].sequence if entries else 0
                return Err(ChainBrokenError(first, "genesis does not match archive"))
            path = archive

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def query(
        self,
        operation: Optional[Union[AuditOperation, str, list]] = None,
        actor: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> list[AuditLogEntry]:
        """Filter entries; ``limit`` keeps the most recent ones."""
        entries = self.entries()
        if operation is not None:
            wanted = operation if isinstance(operation, list) else [operation]
            ops = {AuditOperation(op) for op in wanted}
            entries = [e for e in entries if e.operation in ops]
        if actor:
            needle = actor.lower()
            entries = [e for e in entries if e.actor and needle in e.actor.lower()]
        if since is not None:
            entries = [e for e in entries if e.recorded_at >= _aware(since)]
        if until is not None:
            entries = [e for e in entries if e.recorded_at <= _aware(until)]
        if limit:
            entries = entries[-limit:]
        return entries

    def summary(self) -> dict:
        entries = self.entries()
        return {
            "total": len(entries),
            "by_operation": dict(Counter(e.operation.value for e in entries)),
            "by_actor": dict(Counter(e.actor or "unknown" for e in entries)),
            "first": entries[0].timestamp if entries else None,
            "last": entries[-1].timestamp if entries else None,
        }

    def export(self, fmt: str = "json") -> str:
        """Export entries as ``json``, ``csv`` or ``text``."""
        entries = self.entries()
        if fmt == "json":
            return orjson.dumps(
                [e.to_dict() for e in entries], option=orjson.OPT_INDENT_2
            ).decode("utf-8")
        if fmt == "csv":
            buffer = io.StringIO()
            writer = csv.writer(buffer, lineterminator="\n")
            writer.writerow(["sequence", "timestamp", "operation", "actor", "payload_digest", "hash"])
            for e in entries:
                writer.writerow(
                    [e.sequence, e.timestamp, e.operation.value, e.actor or "", e.payload_digest, e.hash]
                )
            return buffer.getvalue()
        if fmt == "text":
            return "\n".join(format_entry(e) for e in entries)
        raise ValueError(f"Unknown export format: {fmt}")


def format_entry(entry: AuditLogEntry) -> str:
    return (
        f"[{entry.timestamp}] #{entry.sequence:<5} {entry.operation.value:<8} "
        f"by {entry.actor or 'unknown':<20} {entry.payload_digest[:12]}"
    )
