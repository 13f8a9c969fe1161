"""
TeamVault — push, pull and inspect an encrypted team vault.

Provides the public API for the vault system:
- ``push(cwd, sources)`` — encrypt local env files into the vault file
- ``pull(cwd, sources)`` — decrypt the vault back into the local env file
- ``status(cwd, sources)`` — report key, vault and audit state, no key needed
- ``keygen(cwd)`` — create a new key and store it in the env file
- ``diff(cwd, sources)`` — compare variable names between vault and local
- ``rekey(cwd, sources, new_key)`` — re-encrypt the vault under a new key
- ``sync(cwd, sources)`` — merge env file and vault both ways, local wins

Every operation returns ``Ok(result)`` or ``Err(VaultError)``.

Ordering:
    The envelope is fully encrypted in memory before anything is written;
    the vault file is replaced atomically; the audit entry is appended only
    after that write succeeded. An audit failure is reported as ``Err`` but
    does not undo the vault write.

Security Note:
    Never log plaintext, ciphertext or keys. Only log file names, variable
    counts, key sources and operation names.
"""
import asyncio
import hashlib
import logging
import weakref
from dataclasses import dataclass, field
from datetime import datetime
from functools import reduce
from pathlib import Path
from typing import Optional, Union

from ..envfile import EnvMap, merge, parse, stringify, write_env_file
from ..files import atomic_write_text
from .audit import AuditLog, AuditLogEntry, AuditOperation, RotationResult
from .config import KeySources, VaultConfig
from .crypto import CryptoEngine
from .envelope import VaultEnvelope, VaultMetadata, deserialize, digest, read_metadata, serialize
from .exceptions import (
    AuditError,
    FormatError,
    RekeyError,
    VaultError,
    VaultFileNotFoundError,
)
from .keys import (
    DiscoveredKey,
    discover_key,
    ensure_gitignore,
    generate_key,
    save_key,
    validate_key,
)
from .result import Err, Ok, Result

logger = logging.getLogger("navigator.vault")

_EMPTY_DIGEST = hashlib.sha256(b"").hexdigest()

PathLike = Union[str, Path]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class PushResult:
    vault_path: Path
    variables: int
    key_source: str
    key_excluded: bool
    audit: Optional[AuditLogEntry] = None


@dataclass
class PullResult:
    env_path: Path
    variables: int
    updated_at: datetime
    key_source: str
    key_preserved: bool
    audit: Optional[AuditLogEntry] = None


@dataclass
class VaultStatus:
    vault_path: Path
    vault_exists: bool
    env_path: Path
    env_exists: bool
    key_source: Optional[str] = None
    metadata: Optional[VaultMetadata] = None
    metadata_error: Optional[str] = None
    recent: list[AuditLogEntry] = field(default_factory=list)
    audit_error: Optional[str] = None

    @property
    def has_key(self) -> bool:
        return self.key_source is not None


@dataclass
class KeygenResult:
    key: str = field(repr=False)
    saved_to: Optional[Path] = None
    replaced: bool = False
    gitignore_added: list[str] = field(default_factory=list)
    audit: Optional[AuditLogEntry] = None


@dataclass
class RekeyResult:
    key: str = field(repr=False)
    vault_path: Optional[Path] = None
    variables: int = 0
    key_saved_to: Optional[Path] = None
    audit: Optional[AuditLogEntry] = None


@dataclass
class VaultDiff:
    only_in_vault: list[str] = field(default_factory=list)
    only_in_local: list[str] = field(default_factory=list)
    in_both: list[str] = field(default_factory=list)
    different: list[str] = field(default_factory=list)

    @property
    def in_sync(self) -> bool:
        return not (self.only_in_vault or self.only_in_local or self.different)


@dataclass
class SyncResult:
    env_path: Path
    vault_path: Path
    variables: int
    key_source: str
    added: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    from_vault: list[str] = field(default_factory=list)
    audit: Optional[AuditLogEntry] = None


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError as err:
        raise FormatError(f"{path.name} is not valid UTF-8 text") from err


def _read_env(path: Path) -> EnvMap:
    return parse(_read_text(path))


def _vault_digest(path: Path) -> str:
    """Audit payload digest of the vault file, empty-input digest if absent."""
    if not path.is_file():
        return _EMPTY_DIGEST
    try:
        return digest(_read_text(path))
    except FormatError:
        return hashlib.sha256(path.read_bytes()).hexdigest()


# ---------------------------------------------------------------------------
# Per-path locks
# ---------------------------------------------------------------------------

_path_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[str, asyncio.Lock]]" = (
    weakref.WeakKeyDictionary()
)


def _path_lock(path: Path) -> asyncio.Lock:
    """Single-writer lock for ``path`` within the running event loop."""
    loop = asyncio.get_running_loop()
    locks = _path_locks.setdefault(loop, {})
    key = str(path.resolve())
    lock = locks.get(key)
    if lock is None:
        lock = locks[key] = asyncio.Lock()
    return lock


class VaultOrchestrator:
    """Encrypted team vault bound to a working directory.

    The key is never read from ambient state: every call receives a
    ``KeySources`` value describing where to look for it.
    """

    def __init__(
        self,
        config: Optional[VaultConfig] = None,
        engine: Optional[CryptoEngine] = None,
    ):
        self.config = config or VaultConfig()
        self._owns_engine = engine is None
        self._engine = engine or CryptoEngine(
            max_workers=self.config.crypto_workers,
            timeout=self.config.crypto_timeout,
        )

    async def __aenter__(self) -> "VaultOrchestrator":
        return self

    async def __aexit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_engine:
            self._engine.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def audit_log(self, cwd: PathLike) -> AuditLog:
        return AuditLog(self.config.audit_path(Path(cwd)))

    def _key_variables(self, sources: KeySources) -> tuple[str, ...]:
        return tuple({self.config.key_variable, sources.variable})

    def _audit(
        self,
        cwd: Path,
        operation: AuditOperation,
        payload_digest: str
    ) -> Optional[AuditLogEntry]:
        if not self.config.audit_enabled:
            return None
        return self.audit_log(cwd).append(
            operation, payload_digest, actor=self.config.actor
        )

    def _read_sources(self, cwd: Path) -> EnvMap:
        maps = []
        for path in self.config.source_paths(cwd):
            if not path.is_file():
                raise VaultFileNotFoundError(
                    path, "Create it first or adjust the configured sources."
                )
            maps.append(_read_env(path))
        return reduce(merge, maps, EnvMap())

    def _existing_metadata(self, vault_path: Path) -> Optional[VaultMetadata]:
        if not vault_path.exists():
            return None
        try:
            return read_metadata(_read_text(vault_path)).unwrap()
        except FormatError as err:
            logger.warning(
                "Existing vault %s has unreadable metadata, starting fresh: %s",
                vault_path.name, err.message,
            )
            return None

    def _load_envelope(self, vault_path: Path) -> tuple[str, VaultEnvelope]:
        if not vault_path.exists():
            raise VaultFileNotFoundError(
                vault_path, "Ask a team member to run `nevr-vault push` first."
            )
        text = _read_text(vault_path)
        return text, deserialize(text).unwrap()

    async def _open(self, envelope: VaultEnvelope, key: str) -> EnvMap:
        plaintext = (await self._engine.decrypt(envelope, key)).unwrap()
        try:
            return parse(plaintext.decode("utf-8"))
        except UnicodeDecodeError as err:
            raise FormatError("Decrypted vault is not valid UTF-8 text") from err

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def push(
        self,
        cwd: PathLike,
        sources: KeySources
    ) -> Result[PushResult, VaultError]:
        """Encrypt local plaintext sources into the vault file.

        The key-carrier variable is never part of the encrypted set.
        ``createdAt``/``createdBy`` of an existing vault are preserved.
        """
        cwd = Path(cwd)
        vault_path = self.config.vault_path(cwd)
        async with _path_lock(vault_path):
            try:
                found: DiscoveredKey = discover_key(sources, cwd).unwrap()
                local = self._read_sources(cwd)
                key_vars = self._key_variables(sources)
                protected = local.without(*key_vars)
                existing = self._existing_metadata(vault_path)
                envelope = await self._engine.encrypt(
                    stringify(protected).encode("utf-8"),
                    found.key,
                    existing,
                    created_by=self.config.actor,
                )
            except VaultError as err:
                return Err(err)
            except asyncio.TimeoutError:
                return Err(VaultError("Vault encryption timed out"))
            except OSError as err:
                return Err(VaultError(f"Cannot read push inputs: {err}"))
            text = serialize(envelope)
            try:
                atomic_write_text(vault_path, text)
            except OSError as err:
                return Err(VaultError(f"Cannot write vault {vault_path.name}: {err}"))
        logger.info(
            "Vault pushed: %s (%d variables, key from %s)",
            vault_path.name, envelope.metadata.variables, found.source,
        )
        try:
            entry = self._audit(cwd, AuditOperation.PUSH, digest(text))
        except AuditError as err:
            logger.error("Vault %s written but audit append failed: %s", vault_path.name, err)
            return Err(err)
        return Ok(
            PushResult(
                vault_path=vault_path,
                variables=envelope.metadata.variables,
                key_source=found.source,
                key_excluded=len(local) != len(protected),
                audit=entry,
            )
        )

    async def pull(
        self,
        cwd: PathLike,
        sources: KeySources
    ) -> Result[PullResult, VaultError]:
        """Decrypt the vault and merge it into the local env file.

        Decrypted values win over local ones; the local key-carrier value is
        kept untouched.
        """
        cwd = Path(cwd)
        vault_path = self.config.vault_path(cwd)
        env_path = self.config.env_path(cwd)
        async with _path_lock(env_path):
            try:
                text, envelope = self._load_envelope(vault_path)
                found: DiscoveredKey = discover_key(sources, cwd).unwrap()
                key_vars = self._key_variables(sources)
                decrypted = (await self._open(envelope, found.key)).without(*key_vars)
                local = _read_env(env_path) if env_path.is_file() else EnvMap()
            except VaultError as err:
                return Err(err)
            except asyncio.TimeoutError:
                return Err(VaultError("Vault decryption timed out"))
            except OSError as err:
                return Err(VaultError(f"Cannot read pull inputs: {err}"))
            try:
                write_env_file(env_path, merge(local, decrypted))
            except OSError as err:
                return Err(VaultError(f"Cannot write {env_path.name}: {err}"))
        logger.info(
            "Vault pulled into %s (%d variables, key from %s)",
            env_path.name, len(decrypted), found.source,
        )
        try:
            entry = self._audit(cwd, AuditOperation.PULL, digest(text))
        except AuditError as err:
            logger.error("%s written but audit append failed: %s", env_path.name, err)
            return Err(err)
        return Ok(
            PullResult(
                env_path=env_path,
                variables=len(decrypted),
                updated_at=envelope.metadata.updated_at,
                key_source=found.source,
                key_preserved=any(k in local for k in key_vars),
                audit=entry,
            )
        )

    async def status(
        self,
        cwd: PathLike,
        sources: Optional[KeySources] = None,
        recent: int = 5,
        record: bool = False
    ) -> Result[VaultStatus, VaultError]:
        """Report key discovery, vault metadata and recent audit entries.

        No key is required and nothing is decrypted. With ``record=True`` a
        ``status`` entry is appended to the audit log.
        """
        cwd = Path(cwd)
        vault_path = self.config.vault_path(cwd)
        env_path = self.config.env_path(cwd)
        sources = sources or KeySources(variable=self.config.key_variable)
        info = VaultStatus(
            vault_path=vault_path,
            vault_exists=vault_path.is_file(),
            env_path=env_path,
            env_exists=env_path.is_file(),
        )
        match discover_key(sources, cwd):
            case Ok(found):
                info.key_source = found.source
            case Err(_):
                info.key_source = None
        if info.vault_exists:
            try:
                info.metadata = read_metadata(_read_text(vault_path)).unwrap()
            except FormatError as err:
                info.metadata_error = err.message
            except OSError as err:
                info.metadata_error = f"Cannot read {vault_path.name}: {err}"
        log = self.audit_log(cwd)
        try:
            info.recent = log.tail(recent)
        except AuditError as err:
            info.audit_error = err.message
        if record:
            try:
                self._audit(cwd, AuditOperation.STATUS, _vault_digest(vault_path))
            except AuditError as err:
                return Err(err)
            except OSError as err:
                return Err(AuditError(f"Cannot record status: {err}"))
        return Ok(info)

    async def keygen(
        self,
        cwd: PathLike,
        target: Optional[PathLike] = None,
        save: bool = True,
        gitignore: bool = True
    ) -> Result[KeygenResult, VaultError]:
        """Generate a key and, by default, store it in the env file.

        The env file is also added to ``.gitignore``.
        """
        cwd = Path(cwd)
        key = generate_key()
        result = KeygenResult(key=key)
        if save:
            path = Path(target) if target else self.config.env_path(cwd)
            if not path.is_absolute():
                path = cwd / path
            try:
                result.replaced = save_key(path, key, self.config.key_variable)
                result.saved_to = path
                if gitignore:
                    result.gitignore_added = ensure_gitignore(cwd, path)
            except OSError as err:
                return Err(VaultError(f"Cannot save key to {path.name}: {err}"))
            logger.info(
                "Vault key %s in %s",
                "replaced" if result.replaced else "saved", path.name,
            )
        try:
            result.audit = self._audit(
                cwd, AuditOperation.KEYGEN, _vault_digest(self.config.vault_path(cwd))
            )
        except AuditError as err:
            return Err(err)
        except OSError as err:
            return Err(AuditError(f"Cannot record keygen: {err}"))
        return Ok(result)

    async def diff(
        self,
        cwd: PathLike,
        sources: KeySources
    ) -> Result[VaultDiff, VaultError]:
        """Compare variable names between the vault and the local env file.

        Values are never reported, only the names that differ.
        """
        cwd = Path(cwd)
        env_path = self.config.env_path(cwd)
        try:
            _, envelope = self._load_envelope(self.config.vault_path(cwd))
            found = discover_key(sources, cwd).unwrap()
            key_vars = self._key_variables(sources)
            remote = (await self._open(envelope, found.key)).without(*key_vars)
            local = (
                _read_env(env_path) if env_path.is_file() else EnvMap()
            ).without(*key_vars)
        except VaultError as err:
            return Err(err)
        except asyncio.TimeoutError:
            return Err(VaultError("Vault decryption timed out"))
        except OSError as err:
            return Err(VaultError(f"Cannot read diff inputs: {err}"))
        in_both = [k for k in local if k in remote]
        return Ok(
            VaultDiff(
                only_in_vault=[k for k in remote if k not in local],
                only_in_local=[k for k in local if k not in remote],
                in_both=in_both,
                different=[k for k in in_both if local[k] != remote[k]],
            )
        )

    async def rekey(
        self,
        cwd: PathLike,
        sources: KeySources,
        new_key: Optional[str] = None
    ) -> Result[RekeyResult, VaultError]:
        """Re-encrypt the vault under a new key.

        The current key is discovered from ``sources``. When it came from an
        env file, that file is updated with the new key after the vault has
        been rewritten. If that update fails the previous vault is restored;
        if even the restore fails, ``Err(RekeyError)`` carries the new key.
        """
        cwd = Path(cwd)
        vault_path = self.config.vault_path(cwd)
        new_key = new_key or generate_key()
        if not validate_key(new_key):
            return Err(VaultError("New vault key is malformed"))
        async with _path_lock(vault_path):
            try:
                text, envelope = self._load_envelope(vault_path)
                found: DiscoveredKey = discover_key(sources, cwd).unwrap()
                logger.info(
                    "Starting vault rekey for %s (current key from %s)",
                    vault_path.name, found.source,
                )
                plaintext = (await self._engine.decrypt(envelope, found.key)).unwrap()
                rotated = await self._engine.encrypt(
                    plaintext, new_key, envelope.metadata
                )
            except VaultError as err:
                return Err(err)
            except asyncio.TimeoutError:
                return Err(VaultError("Vault rekey timed out"))
            except OSError as err:
                return Err(VaultError(f"Cannot read rekey inputs: {err}"))
            new_text = serialize(rotated)
            key_file = self._key_file(cwd, sources, found)
            try:
                atomic_write_text(vault_path, new_text)
            except OSError as err:
                return Err(VaultError(f"Cannot write vault {vault_path.name}: {err}"))
            if key_file is not None:
                try:
                    save_key(key_file, new_key, sources.variable)
                except OSError as err:
                    return Err(self._restore_vault(vault_path, text, key_file, new_key, err))
        if key_file is None:
            logger.warning(
                "Vault rekeyed; key came from %s and must be updated by hand",
                found.source,
            )
        try:
            entry = self._audit(cwd, AuditOperation.REKEY, digest(new_text))
        except AuditError as err:
            return Err(err)
        logger.info("Vault rekey complete: %s", vault_path.name)
        return Ok(
            RekeyResult(
                key=new_key,
                vault_path=vault_path,
                variables=rotated.metadata.variables,
                key_saved_to=key_file,
                audit=entry,
            )
        )

    def _restore_vault(
        self,
        vault_path: Path,
        previous: str,
        key_file: Path,
        new_key: str,
        cause: OSError
    ) -> VaultError:
        logger.error("Cannot save new vault key to %s: %s", key_file.name, cause)
        try:
            atomic_write_text(vault_path, previous)
        except OSError as err:
            logger.critical(
                "Cannot restore %s, it stays encrypted under the unsaved new key: %s",
                vault_path.name, err,
            )
            return RekeyError(new_key)
        logger.warning("Restored %s under the current key", vault_path.name)
        return VaultError(
            f"Cannot save new key to {key_file.name}: {cause}. "
            "The vault was left under the current key."
        )

    async def sync(
        self,
        cwd: PathLike,
        sources: KeySources
    ) -> Result[SyncResult, VaultError]:
        """Merge the local env file and the vault in both directions.

        Local values win on conflicts, variables only found in the vault are
        appended to the env file, and the merged set is re-encrypted keeping
        the vault's creation metadata. A vault that exists but cannot be
        opened is an error; it is never replaced by the local file.
        """
        cwd = Path(cwd)
        vault_path = self.config.vault_path(cwd)
        env_path = self.config.env_path(cwd)
        async with _path_lock(vault_path), _path_lock(env_path):
            try:
                found: DiscoveredKey = discover_key(sources, cwd).unwrap()
                key_vars = self._key_variables(sources)
                local = _read_env(env_path) if env_path.is_file() else EnvMap()
                remote, existing = EnvMap(), None
                if vault_path.exists():
                    _, envelope = self._load_envelope(vault_path)
                    existing = envelope.metadata
                    remote = (await self._open(envelope, found.key)).without(*key_vars)
                elif not env_path.is_file():
                    raise VaultFileNotFoundError(
                        env_path, "There is neither an env file nor a vault to sync."
                    )
                protected = local.without(*key_vars)
                merged = merge(remote, protected)
                rotated = await self._engine.encrypt(
                    stringify(merged).encode("utf-8"),
                    found.key,
                    existing,
                    created_by=self.config.actor,
                )
            except VaultError as err:
                return Err(err)
            except asyncio.TimeoutError:
                return Err(VaultError("Vault sync timed out"))
            except OSError as err:
                return Err(VaultError(f"Cannot read sync inputs: {err}"))
            text = serialize(rotated)
            try:
                write_env_file(env_path, merge(local, remote.without(*local)))
                atomic_write_text(vault_path, text)
            except OSError as err:
                return Err(VaultError(f"Vault sync failed to write: {err}"))
        logger.info(
            "Vault synced: %s <-> %s (%d variables, key from %s)",
            env_path.name, vault_path.name, len(merged), found.source,
        )
        try:
            entry = self._audit(cwd, AuditOperation.SYNC, digest(text))
        except AuditError as err:
            logger.error("Vault %s synced but audit append failed: %s", vault_path.name, err)
            return Err(err)
        return Ok(
            SyncResult(
                env_path=env_path,
                vault_path=vault_path,
                variables=len(merged),
                key_source=found.source,
                added=[k for k in protected if k not in remote],
                updated=[k for k in protected if k in remote and remote[k] != protected[k]],
                from_vault=[k for k in remote if k not in local],
                audit=entry,
            )
        )

    def _key_file(
        self,
        cwd: Path,
        sources: KeySources,
        found: DiscoveredKey
    ) -> Optional[Path]:
        for file in (sources.local_file, sources.shared_file):
            if found.source == str(file):
                return file if file.is_absolute() else cwd / file
        return None

    # ------------------------------------------------------------------
    # Audit ledger
    # ------------------------------------------------------------------

    def verify_audit(self, cwd: PathLike) -> Result[int, AuditError]:
        """Verify the ledger and all of its archives."""
        return self.audit_log(cwd).verify_all()

    def rotate_audit(
        self,
        cwd: PathLike,
        cutoff: datetime
    ) -> Result[RotationResult, AuditError]:
        """Archive audit entries older than ``cutoff``."""
        try:
            return Ok(self.audit_log(cwd).rotate(cutoff, actor=self.config.actor))
        except AuditError as err:
            return Err(err)
        except OSError as err:
            return Err(AuditError(f"Cannot rotate audit log: {err}"))
