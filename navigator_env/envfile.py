"""
Env files — parsing and writing ``KEY=value`` configuration.

Parsing rules:
    - blank lines and lines starting with ``#`` are skipped
    - an optional leading ``export `` is ignored
    - each line is split on the first ``=``; key and value are trimmed
    - names must look like shell identifiers (``[A-Za-z_][A-Za-z0-9_]*``);
      other lines are skipped
    - one layer of matching quotes is removed from the value;
      double-quoted values also unescape ``\\"`` and ``\\\\``
    - later duplicates overwrite earlier values but keep the position
      of the first occurrence

Comments and blank lines are not kept in the parsed map.
"""
import re
from typing import Optional, Union
from pathlib import Path
from collections.abc import Iterator, Mapping, MutableMapping

from .files import atomic_write_text

VARIABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_NEEDS_QUOTES = re.compile(r"[\s#=\"']")
_UNESCAPE = re.compile(r'\\(["\\])')


class EnvMap(MutableMapping[str, str]):
    """Ordered ``name -> value`` mapping of environment variables.

    Insertion order is significant: re-assigning an existing name keeps its
    original position, so parse/stringify round-trips are deterministic.
    ``repr`` never shows values, only names.
    """

    def __init__(self, data: Optional[Mapping[str, str]] = None) -> None:
        self._data: dict[str, str] = {}
        self._changed: bool = False
        if data:
            self.update(data)
            self._changed = False

    def __repr__(self) -> str:
        return f'<EnvMap keys={list(self._data.keys())!r}>'

    @property
    def is_changed(self) -> bool:
        return self._changed

    @is_changed.setter
    def is_changed(self, value: bool) -> None:
        self._changed = value

    def copy(self) -> "EnvMap":
        return EnvMap(self._data)

    def without(self, *names: str) -> "EnvMap":
        """Return a copy with ``names`` removed (missing names are ignored)."""
        return EnvMap(
            {k: v for k, v in self._data.items() if k not in names}
        )

    def to_dict(self) -> dict[str, str]:
        return dict(self._data)

    # --- Magic Methods ---

    def __len__(self) -> int:
        return len(self._data)

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __getitem__(self, key: str) -> str:
        return self._data[key]

    def __setitem__(self, key: str, value: str) -> None:
        _check_name(key)
        if not isinstance(value, str):
            raise TypeError(
                f"Value for {key} must be str, got {type(value).__name__}"
            )
        self._data[key] = value
        self._changed = True

    def __delitem__(self, key: str) -> None:
        del self._data[key]
        self._changed = True


def _check_name(name: object) -> None:
    if not isinstance(name, str) or not VARIABLE_NAME.match(name):
        raise KeyError(f"Invalid variable name: {name!r}")


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
        inner = value[1:-1]
        if value[0] == '"':
            return _UNESCAPE.sub(r"\1", inner)
        return inner
    return value


def _quote(value: str) -> str:
    if not _NEEDS_QUOTES.search(value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def parse(text: str) -> EnvMap:
    """Parse env-file text into an ordered EnvMap.

    Args:
        text: Content of a ``.env`` style file.

    Returns:
        EnvMap with one entry per distinct variable name.
    """
    env = EnvMap()
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if stripped.startswith("export "):
            stripped = stripped[len("export "):].lstrip()
        name, sep, value = stripped.partition("=")
        if not sep:
            continue
        name = name.strip()
        if not VARIABLE_NAME.match(name):
            continue
        env[name] = _unquote(value.strip())
    env.is_changed = False
    return env


def stringify(env: Mapping[str, str]) -> str:
    """Serialize a mapping as ``KEY=value`` lines in mapping order.

    Values containing whitespace, ``#``, ``=`` or quotes are double-quoted.
    """
    for name in env:
        _check_name(name)
    lines = [f"{name}={_quote(value)}" for name, value in env.items()]
    if not lines:
        return ""
    return "\n".join(lines) + "\n"


def merge(base: Mapping[str, str], overlay: Mapping[str, str]) -> EnvMap:
    """Merge two maps; ``overlay`` wins, ``base`` order is kept."""
    merged = EnvMap(base)
    for name, value in overlay.items():
        merged[name] = value
    return merged


def read_env_file(path: Union[str, Path]) -> EnvMap:
    """Read and parse an env file.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
    """
    return parse(Path(path).read_text(encoding="utf-8"))


def write_env_file(path: Union[str, Path], env: Mapping[str, str]) -> Path:
    """Atomically write ``env`` to ``path`` (owner read/write only when new)."""
    target = Path(path)
    mode = None if target.exists() else 0o600
    return atomic_write_text(target, stringify(env), mode=mode)
