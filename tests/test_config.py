"""
Tests for vault configuration.
"""
import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from navigator_env.vault.config import KeySources, VaultConfig, default_actor


class TestVaultConfig:
    """Tests for VaultConfig."""

    def test_defaults(self):
        config = VaultConfig()
        assert config.vault_filename == ".nevr-env.vault"
        assert config.audit_filename == ".nevr-env.audit.log"
        assert config.key_variable == "NEVR_ENV_KEY"
        assert config.sources == [".env"]

    def test_paths(self, tmp_path):
        config = VaultConfig(vault_filename="secrets/team.vault")
        assert config.vault_path(tmp_path) == tmp_path / "secrets" / "team.vault"
        assert config.audit_path(tmp_path) == tmp_path / "secrets" / ".nevr-env.audit.log"

    def test_from_env(self):
        config = VaultConfig.from_env({
            "NEVR_VAULT_FILE": "team.vault",
            "NEVR_KEY_VARIABLE": "VAULT_KEY",
            "NEVR_SOURCES": os.pathsep.join([".env", ".env.shared"]),
            "NEVR_ACTOR": "alice",
            "NEVR_AUDIT": "false",
        })
        assert config.vault_filename == "team.vault"
        assert config.key_variable == "VAULT_KEY"
        assert config.sources == [".env", ".env.shared"]
        assert config.actor == "alice"
        assert config.audit_enabled is False

    def test_absolute_filename_rejected(self):
        with pytest.raises(ValidationError):
            VaultConfig(vault_filename=str(Path("/tmp/x.vault").resolve()))

    def test_files_must_differ(self):
        with pytest.raises(ValidationError):
            VaultConfig(vault_filename=".env")

    def test_sources_required(self):
        with pytest.raises(ValidationError):
            VaultConfig(sources=[])

    def test_worker_bounds(self):
        with pytest.raises(ValidationError):
            VaultConfig(crypto_workers=0)


class TestKeySources:
    """Tests for KeySources."""

    def test_snapshot_only_key_variable(self):
        sources = KeySources.from_env(environ={"NEVR_ENV_KEY": "x", "SECRET": "y"})
        assert sources.environ == {"NEVR_ENV_KEY": "x"}

    def test_custom_variable(self):
        sources = KeySources.from_env(environ={"VAULT_KEY": "x"}, variable="VAULT_KEY")
        assert sources.variable == "VAULT_KEY"
        assert sources.environ == {"VAULT_KEY": "x"}


class TestDefaultActor:
    """Tests for default_actor()."""

    def test_explicit_actor_first(self):
        assert default_actor({"NEVR_ACTOR": "bot", "USER": "me"}) == "bot"

    def test_ci_actor(self):
        assert default_actor({"GITHUB_ACTOR": "octocat", "USER": "runner"}) == "octocat"

    def test_login_name(self):
        assert default_actor({"USER": "me"}) == "me"
