"""Filesystem helpers shared by the registry and the resolution cache."""

from __future__ import annotations

import os
from pathlib import Path

OWNER_ONLY = 0o600


def atomic_write_text(path: Path, content: str, *, mode: int = OWNER_ONLY) -> None:
    """Write ``content`` to ``path`` so readers never see a partial file.

    The data lands in a hidden sibling first and is renamed over the
    target. The temporary file is created with ``mode`` and the final file
    is chmod'ed to it again, since a pre-existing target keeps its own bits
    only until the rename.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp-{os.getpid()}")
    try:
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        if os.name == "posix":
            os.chmod(path, mode)
            try:
                dir_fd = os.open(path.parent, os.O_RDONLY)
                try:
                    os.fsync(dir_fd)
                finally:
                    os.close(dir_fd)
            except OSError:
                pass
    finally:
        try:
            if tmp_path.exists():
                tmp_path.unlink()
        except OSError:
            pass
