"""
File helpers — atomic replacement of small text files.

Every file Navigator Env writes (env files, vault envelopes, audit ledgers)
goes through ``atomic_write_text``: the content is written to a temporary
file in the target directory, flushed to disk, and moved over the target
with ``os.replace``. Readers therefore observe either the old or the new
file, never a partial one.
"""
import os
import stat
import tempfile
from pathlib import Path
from typing import Optional, Union


def atomic_write_text(
    path: Union[str, Path],
    content: str,
    mode: Optional[int] = None
) -> Path:
    """Atomically replace ``path`` with ``content``.

    Args:
        path: Destination file.
        content: Text to write (UTF-8).
        mode: Optional permission bits for the new file. When omitted the
            permissions of an existing target are kept.

    Returns:
        The destination path.
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    if mode is None and target.exists():
        mode = stat.S_IMODE(target.stat().st_mode)
    fd, tmp = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target.parent)
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp, mode)
        os.replace(tmp, target)
    except BaseException:
        # never leave the temp file behind, including on cancellation
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise
    return target
