"""Default settings for Navigator Env.

Every value can be overridden through the environment; the vault
configuration model reads these once at construction time.
"""
import os

VAULT_FILENAME = os.environ.get("NEVR_VAULT_FILE", ".nevr-env.vault")
AUDIT_FILENAME = os.environ.get("NEVR_AUDIT_FILE", ".nevr-env.audit.log")
KEY_VARIABLE = os.environ.get("NEVR_KEY_VARIABLE", "NEVR_ENV_KEY")
KEY_PREFIX = "nevr_"

# key discovery files, checked local-only first
LOCAL_ENV_FILE = os.environ.get("NEVR_LOCAL_ENV_FILE", ".env.local")
SHARED_ENV_FILE = os.environ.get("NEVR_SHARED_ENV_FILE", ".env")

# plaintext read by push and written by pull
ENV_FILENAME = os.environ.get("NEVR_ENV_FILE", ".env")

CRYPTO_WORKERS = int(os.environ.get("NEVR_CRYPTO_WORKERS", 2))
CRYPTO_TIMEOUT = float(os.environ.get("NEVR_CRYPTO_TIMEOUT", 60))
