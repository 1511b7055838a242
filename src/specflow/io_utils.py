"""Wrappers for text file I/O with consistent encoding (UTF-8)."""

from __future__ import annotations

import json
import os
import re
import stat
import tempfile
from datetime import datetime, timezone
from io import TextIOWrapper
from pathlib import Path
from typing import Any

from specflow.errors import StateError

PathLike = Path | str


def read_text(path: PathLike, errors: str = "strict", **kwargs: Any) -> str:
    """Read path as text with UTF-8 encoding. Forwards extra kwargs to Path.read_text."""
    p = path if isinstance(path, Path) else Path(path)
    return p.read_text(encoding="utf-8", errors=errors, **kwargs)


def write_text(path: PathLike, text: str, **kwargs: Any) -> None:
    """Write text to path with UTF-8 encoding. Forwards extra kwargs to Path.write_text."""
    p = path if isinstance(path, Path) else Path(path)
    p.write_text(text, encoding="utf-8", **kwargs)


def open_text(
    path: PathLike,
    mode: str = "r",
    *,
    encoding: str = "utf-8",
    errors: str = "strict",
    **kwargs: Any,
) -> TextIOWrapper:
    """Open path for text I/O with UTF-8 by default. Use for append/write (e.g. log files)."""
    p = path if isinstance(path, (Path, str)) else Path(path)
    return open(p, mode, encoding=encoding, errors=errors, **kwargs)


def read_source(path: PathLike) -> str:
    """Read a markdown source without newline translation, so CRLF survives a rewrite."""
    with open_text(path, newline="") as f:
        return f.read()


def read_markdown(path: PathLike, *, keep_newlines: bool = False) -> str:
    """Read a project document, reporting unreadable or non-UTF-8 files as :class:`StateError`."""
    p = path if isinstance(path, Path) else Path(path)
    try:
        return read_source(p) if keep_newlines else read_text(p)
    except UnicodeDecodeError as exc:
        raise StateError(
            f"{p.name} is not valid UTF-8 (byte {exc.start})",
            f"Re-save {p} with UTF-8 encoding",
        ) from exc
    except OSError as exc:
        raise StateError(f"Cannot read {p.name}: {exc.strerror or exc}", f"Check that {p} is readable") from exc


def _default_mode() -> int:
    umask = os.umask(0)
    os.umask(umask)
    return 0o666 & ~umask


def atomic_write_text(path: PathLike, text: str) -> None:
    """Write text via a temp file in the same directory, then rename over path.

    Readers never observe a partially written file. If anything fails before
    the rename, the temp file is removed and the original stays untouched.
    The file keeps its permission bits; a new file gets the umask default.
    """
    p = path if isinstance(path, Path) else Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    mode = stat.S_IMODE(p.stat().st_mode) if p.exists() else _default_mode()
    fd, tmp_name = tempfile.mkstemp(prefix=f".{p.name}.tmp.", dir=str(p.parent))
    tmp_path = Path(tmp_name)
    try:
        # newline="" keeps the caller's line endings byte-for-byte
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, p)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def read_json(path: PathLike) -> Any:
    return json.loads(read_text(path))


def dump_json(data: Any) -> str:
    """Serialize data the way every JSON file in a project is written."""
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def atomic_write_json(path: PathLike, data: Any) -> None:
    atomic_write_text(path, dump_json(data))


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def today() -> str:
    return datetime.now().strftime("%Y-%m-%d")


def slugify(text: str, max_len: int = 50) -> str:
    """Convert text to a directory/branch-safe slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_len].rstrip("-")
