from __future__ import annotations

import os
import tempfile
from pathlib import Path


def atomic_write_bytes(path: str | Path, content: bytes, mode: int = 0o644) -> None:
    """Write `content` to `path` atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) it into place, so readers only ever see the old or the
    new file, never a partial one.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def atomic_write_text(path: str | Path, text: str, mode: int = 0o644) -> None:
    atomic_write_bytes(path, text.encode("utf-8"), mode=mode)


def atomic_symlink(link: str | Path, target: str | Path) -> None:
    """Point `link` at `target`, replacing any existing symlink in one rename."""
    link = Path(link)
    link.parent.mkdir(parents=True, exist_ok=True)
    tmp_link = link.parent / f".{link.name}.{os.getpid()}.lnk"
    try:
        os.unlink(tmp_link)
    except FileNotFoundError:
        pass
    os.symlink(str(target), str(tmp_link))
    try:
        os.replace(str(tmp_link), str(link))
    except BaseException:
        os.unlink(tmp_link)
        raise
