"""Upload support: tar the local source and unpack it on the host."""

from __future__ import annotations

import fnmatch
import io
import tarfile
from pathlib import Path
from typing import AsyncIterator

from .config import Upload
from .errors import LoadError

CHUNK_SIZE = 64 * 1024


def is_excluded(name: str, patterns: list[str]) -> bool:
    """Match like ``tar --exclude``: against the path or any component."""
    parts = Path(name).parts
    for pattern in patterns:
        if fnmatch.fnmatch(name, pattern):
            return True
        if any(fnmatch.fnmatch(part, pattern) for part in parts):
            return True
    return False


def build_archive(upload: Upload, base_dir: Path) -> bytes:
    """Return a gzip tarball of ``upload.src``, relative to ``base_dir``."""
    src = Path(upload.src).expanduser()
    path = src if src.is_absolute() else base_dir / src
    if not path.exists():
        raise LoadError(f"upload source not found: {path}")

    arcname = str(src).lstrip("/") or path.name
    patterns = upload.exclude_patterns

    def _filter(info: tarfile.TarInfo) -> tarfile.TarInfo | None:
        if patterns and is_excluded(info.name, patterns):
            return None
        return info

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        tar.add(str(path), arcname=arcname, filter=_filter)
    return buf.getvalue()


def remote_untar_command(dst: str) -> str:
    return f'mkdir -p "{dst}" && tar -C "{dst}" -xzf -'


async def iter_chunks(data: bytes) -> AsyncIterator[bytes]:
    for start in range(0, len(data), CHUNK_SIZE):
        yield data[start:start + CHUNK_SIZE]
