"""
Vault Keys — generation, format validation and discovery.

Key format:
    ``nevr_`` + 43 characters of unpadded URL-safe base64 (32 random bytes).

Discovery order:
    explicit override > local-only env file > shared env file > environment.

Security Note:
    Never log key material. Only log where a key was found.
"""
import re
import base64
import secrets
import logging
import binascii
from pathlib import Path
from typing import NamedTuple, Optional, Union

from .. import conf
from ..envfile import parse
from ..files import atomic_write_text
from .config import KeySources
from .exceptions import KeyNotFoundError
from .result import Err, Ok, Result

logger = logging.getLogger("navigator.vault")

KEY_PREFIX = conf.KEY_PREFIX
KEY_BYTES = 32
KEY_CHARS = 43  # len(base64url(32 bytes)) without padding

_KEY_BODY = re.compile(r"^[A-Za-z0-9_-]{%d}$" % KEY_CHARS)

GITIGNORE_ENV_PATTERNS = [
    ".env",
    ".env.local",
    ".env.*.local",
    ".env.development",
    ".env.production",
    "!.env.example",
]
_GITIGNORE_MARKER = "# Environment files (added by navigator-env vault)"


class DiscoveredKey(NamedTuple):
    key: str
    source: str


def generate_key() -> str:
    """Generate a random 32-byte vault key.

    Returns:
        ``nevr_`` prefixed, unpadded base64url key string.
    """
    body = base64.urlsafe_b64encode(secrets.token_bytes(KEY_BYTES))
    return KEY_PREFIX + body.rstrip(b"=").decode("ascii")


def validate_key(candidate: object) -> bool:
    """Check the format of a vault key.

    Verifies prefix, charset, length and that the body decodes to exactly
    32 bytes. It does not check the key opens any vault.
    """
    if not isinstance(candidate, str) or not candidate.startswith(KEY_PREFIX):
        return False
    body = candidate[len(KEY_PREFIX):]
    if not _KEY_BODY.match(body):
        return False
    try:
        raw = base64.urlsafe_b64decode(body + "=")
    except (binascii.Error, ValueError):
        return False
    return len(raw) == KEY_BYTES


def _read_key_from_file(path: Path, variable: str) -> Optional[str]:
    if not path.is_file():
        return None
    try:
        env = parse(path.read_text(encoding="utf-8"))
    except UnicodeDecodeError:
        logger.warning("Skipping %s: not valid UTF-8 text", path.name)
        return None
    return env.get(variable)


def discover_key(
    sources: KeySources,
    cwd: Union[str, Path] = "."
) -> Result[DiscoveredKey, KeyNotFoundError]:
    """Find the first valid key among ``sources``.

    Invalid-looking candidates are skipped and the search continues.

    Args:
        sources: Where to look.
        cwd: Directory relative file sources are resolved against.

    Returns:
        ``Ok(DiscoveredKey)`` or ``Err(KeyNotFoundError)`` listing every
        source checked.
    """
    base = Path(cwd)
    checked: list[str] = []
    variable = sources.variable

    candidates = [("override", lambda: sources.override)]
    for file in (sources.local_file, sources.shared_file):
        path = file if file.is_absolute() else base / file
        candidates.append(
            (str(file), lambda path=path: _read_key_from_file(path, variable))
        )
    candidates.append(
        (f"${variable}", lambda: sources.environ.get(variable))
    )

    for label, fetch in candidates:
        checked.append(label)
        value = fetch()
        if value is None:
            continue
        value = value.strip()
        if validate_key(value):
            logger.debug("Vault key found in %s", label)
            return Ok(DiscoveredKey(value, label))
        logger.warning("Ignoring malformed vault key in %s", label)
    return Err(KeyNotFoundError(checked=checked))


def save_key(path: Union[str, Path], key: str, variable: str = conf.KEY_VARIABLE) -> bool:
    """Write or replace the key-carrier line in an env file.

    Other lines (comments included) are left untouched.

    Returns:
        True if an existing key line was replaced, False if one was added.
    """
    if not validate_key(key):
        raise ValueError("Refusing to save a malformed vault key")
    target = Path(path)
    line = f"{variable}={key}"
    pattern = re.compile(rf"^\s*(export\s+)?{re.escape(variable)}\s*=.*$", re.M)
    if target.exists():
        content = target.read_text(encoding="utf-8")
        if pattern.search(content):
            content = pattern.sub(lambda m: line, content, count=1)
            atomic_write_text(target, content)
            return True
        sep = "" if not content or content.endswith("\n") else "\n"
        atomic_write_text(target, f"{content}{sep}{line}\n")
        return False
    atomic_write_text(target, f"{line}\n", mode=0o600)
    return False


def ensure_gitignore(root: Union[str, Path], env_path: Optional[Union[str, Path]] = None) -> list[str]:
    """Make sure env files are ignored by git.

    Returns:
        The patterns that were added (empty if nothing changed).
    """
    gitignore = Path(root) / ".gitignore"
    content = gitignore.read_text(encoding="utf-8") if gitignore.exists() else ""
    if _GITIGNORE_MARKER in content:
        return []
    existing = {
        line.strip() for line in content.splitlines()
        if line.strip() and not line.strip().startswith("#")
    }
    wanted = list(GITIGNORE_ENV_PATTERNS)
    if env_path is not None:
        name = Path(env_path).name
        if name not in wanted:
            wanted.append(name)
    to_add = [p for p in wanted if p not in existing]
    if not any(not p.startswith("!") for p in to_add):
        return []
    section = "\n".join([_GITIGNORE_MARKER, *to_add]) + "\n"
    if content:
        sep = "\n" if content.endswith("\n") else "\n\n"
        section = f"{content}{sep}{section}"
    atomic_write_text(gitignore, section)
    return to_add
