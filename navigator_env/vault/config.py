"""
Vault Configuration — validated settings and key-discovery sources.

Settings are read from the environment once, in ``from_env()``, and then
passed explicitly to every vault operation:

    NEVR_VAULT_FILE        vault envelope name (default ``.nevr-env.vault``)
    NEVR_AUDIT_FILE        audit ledger name (default ``.nevr-env.audit.log``)
    NEVR_KEY_VARIABLE      key-carrier variable (default ``NEVR_ENV_KEY``)
    NEVR_ENV_FILE          plaintext file pushed and pulled (default ``.env``)
    NEVR_ACTOR             actor label recorded in metadata and audit entries

Security Note:
    Never log key material. ``KeySources`` masks the override in ``repr``.
"""
import os
import getpass
import logging
from pathlib import Path
from typing import Optional
from collections.abc import Mapping

from pydantic import BaseModel, Field, field_validator, model_validator

from .. import conf
from ..envfile import VARIABLE_NAME

logger = logging.getLogger("navigator.vault")


def default_actor(environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """Best-effort actor label: explicit, CI user, or login name."""
    env = os.environ if environ is None else environ
    for name in ("NEVR_ACTOR", "GITHUB_ACTOR", "GITLAB_USER_LOGIN", "CIRCLE_USERNAME"):
        if env.get(name):
            return env[name]
    for name in ("USER", "USERNAME"):
        if env.get(name):
            return env[name]
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return None


class KeySources(BaseModel):
    """Where to look for the vault key, in priority order.

    1. ``override`` — an explicit key value
    2. ``local_file`` — local-only env file (never shared)
    3. ``shared_file`` — shared env file
    4. ``environ`` — a snapshot of the ambient environment
    """

    override: Optional[str] = Field(default=None, repr=False)
    local_file: Path = Field(default=Path(conf.LOCAL_ENV_FILE))
    shared_file: Path = Field(default=Path(conf.SHARED_ENV_FILE))
    variable: str = Field(default=conf.KEY_VARIABLE)
    environ: dict[str, str] = Field(default_factory=dict, repr=False)

    @field_validator("variable")
    @classmethod
    def validate_variable(cls, v: str) -> str:
        """Key-carrier must be a valid env variable name."""
        if not VARIABLE_NAME.match(v):
            raise ValueError(f"Invalid key variable name: {v!r}")
        return v

    @classmethod
    def from_env(
        cls,
        override: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
        **kwargs
    ) -> "KeySources":
        """Build sources from an environment snapshot.

        Only the key-carrier variable is copied out of the environment.
        """
        env = os.environ if environ is None else environ
        variable = kwargs.pop("variable", None) or env.get(
            "NEVR_KEY_VARIABLE", conf.KEY_VARIABLE
        )
        snapshot = {variable: env[variable]} if variable in env else {}
        return cls(
            override=override,
            variable=variable,
            environ=snapshot,
            **kwargs
        )


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    vault_filename: str = Field(default=conf.VAULT_FILENAME)
    audit_filename: str = Field(default=conf.AUDIT_FILENAME)
    env_filename: str = Field(default=conf.ENV_FILENAME)
    key_variable: str = Field(default=conf.KEY_VARIABLE)
    sources: list[str] = Field(default_factory=lambda: [conf.ENV_FILENAME])
    actor: Optional[str] = Field(default=None)
    audit_enabled: bool = Field(default=True)
    crypto_workers: int = Field(default=conf.CRYPTO_WORKERS, ge=1, le=32)
    crypto_timeout: Optional[float] = Field(default=conf.CRYPTO_TIMEOUT, gt=0)

    @field_validator("key_variable")
    @classmethod
    def validate_key_variable(cls, v: str) -> str:
        """Key-carrier must be a valid env variable name."""
        if not VARIABLE_NAME.match(v):
            raise ValueError(f"Invalid key variable name: {v!r}")
        return v

    @field_validator("vault_filename", "audit_filename", "env_filename")
    @classmethod
    def validate_filename(cls, v: str) -> str:
        """File names are relative to the working directory."""
        if not v or Path(v).is_absolute():
            raise ValueError(f"Expected a relative file name, got {v!r}")
        return v

    @model_validator(mode="after")
    def validate_distinct_files(self) -> "VaultConfig":
        """The vault, its ledger and the plaintext must be different files."""
        names = {self.vault_filename, self.audit_filename, self.env_filename}
        if len(names) != 3:
            raise ValueError(
                "vault_filename, audit_filename and env_filename must differ"
            )
        if not self.sources:
            raise ValueError("At least one plaintext source is required")
        return self

    def vault_path(self, cwd: Path) -> Path:
        return Path(cwd) / self.vault_filename

    def audit_path(self, cwd: Path) -> Path:
        """Audit ledger lives next to the vault file."""
        return self.vault_path(cwd).parent / self.audit_filename

    def env_path(self, cwd: Path) -> Path:
        return Path(cwd) / self.env_filename

    def source_paths(self, cwd: Path) -> list[Path]:
        return [Path(cwd) / name for name in self.sources]

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "VaultConfig":
        """Create VaultConfig by loading values from environment.

        Returns:
            Populated VaultConfig instance.
        """
        env = os.environ if environ is None else environ
        env_file = env.get("NEVR_ENV_FILE", conf.ENV_FILENAME)
        sources = env.get("NEVR_SOURCES")
        config = cls(
            vault_filename=env.get("NEVR_VAULT_FILE", conf.VAULT_FILENAME),
            audit_filename=env.get("NEVR_AUDIT_FILE", conf.AUDIT_FILENAME),
            env_filename=env_file,
            key_variable=env.get("NEVR_KEY_VARIABLE", conf.KEY_VARIABLE),
            sources=sources.split(os.pathsep) if sources else [env_file],
            actor=default_actor(env),
            audit_enabled=env.get("NEVR_AUDIT", "true").lower() not in ("0", "false", "no"),
        )
        logger.debug(
            "Vault config: vault=%s audit=%s sources=%s",
            config.vault_filename, config.audit_filename, config.sources,
        )
        return config
