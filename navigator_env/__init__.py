"""Navigator Env.

Encrypted team-secrets vault for ``.env`` style configuration.
"""
from .version import (
    __title__,
    __description__,
    __version__,
    __author__,
    __author_email__,
    __license__,
)
from .envfile import EnvMap, parse, stringify, merge

__all__ = [
    "EnvMap",
    "parse",
    "stringify",
    "merge",
    "__version__",
]
