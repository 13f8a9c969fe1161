import pytest

from navigator_env.vault import crypto
from navigator_env.vault.config import KeySources, VaultConfig
from navigator_env.vault.keys import generate_key


# --- Fixtures ---

@pytest.fixture(autouse=True)
def fast_kdf(monkeypatch):
    """Keep PBKDF2 cheap in tests; the production count is asserted separately."""
    production = crypto.PBKDF2_ITERATIONS
    monkeypatch.setattr(crypto, "PBKDF2_ITERATIONS", 1000)
    return production


@pytest.fixture
def vault_key():
    return generate_key()


@pytest.fixture
def project(tmp_path):
    """An empty project directory."""
    return tmp_path


@pytest.fixture
def config():
    return VaultConfig(actor="alice", crypto_workers=2, crypto_timeout=30)


@pytest.fixture
def sources(vault_key):
    """Key sources with the key passed explicitly."""
    return KeySources(override=vault_key)
