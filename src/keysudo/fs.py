"""Atomic file replacement helpers."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path


def read_text_verbatim(path: Path) -> str:
    """Read `path` as UTF-8 without newline translation, so `\\r` survives."""
    with Path(path).open(encoding="utf-8", newline="") as f:
        return f.read()


def split_lines(content: str) -> list[str]:
    """Split on `\\n` only.

    Every other separator `str.splitlines` knows about (`\\r`, form feed,
    `\\u2028`, ...) stays inside its line, so a rewritten file keeps each
    line's exact text.
    """
    if not content:
        return []
    lines = content.split("\n")
    if content.endswith("\n"):
        lines.pop()
    return lines


def fsync_dir(path: Path) -> None:
    """Flush a directory entry so a rename survives a crash."""
    try:
        fd = os.open(str(path), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def atomic_write_text(path: Path, text: str, mode: int) -> None:
    """Replace `path` with `text` via a temp file in the same directory.

    Readers see either the old or the new content, never a mixture. The
    permission bits are set to `mode` after the rename, whatever the temp
    file was created with. When running as root, the temp file is given the
    owner and group of the file it replaces, so a rewrite never changes
    ownership.

    Raises:
        OSError: If any step fails; the original file is left untouched
    """
    try:
        existing = os.stat(path)
    except FileNotFoundError:
        existing = None

    temp_path: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            newline="",
            dir=str(path.parent),
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as tmp:
            temp_path = Path(tmp.name)
            tmp.write(text)
            tmp.flush()
            os.fsync(tmp.fileno())
        if existing is not None and os.geteuid() == 0:
            os.chown(temp_path, existing.st_uid, existing.st_gid)
        os.replace(str(temp_path), str(path))
        temp_path = None
        fsync_dir(path.parent)
        os.chmod(path, mode)
    finally:
        if temp_path is not None:
            temp_path.unlink(missing_ok=True)
