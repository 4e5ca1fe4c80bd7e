"""Local filesystem storage implementation."""

from __future__ import annotations

import asyncio
import re
import secrets
import time
from pathlib import Path
from typing import Optional

from tryon.services.storage_base import ResultStorage

FILE_SCHEME = "file://"
_UNSAFE_CHARS = re.compile(r"[^\w.-]")


def _safe_component(value: str, fallback: str) -> str:
    """Strip separators and leading dots so ``value`` stays a single path segment."""

    return _UNSAFE_CHARS.sub("", value).lstrip(".") or fallback


def _write_file(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


class LocalResultStorage(ResultStorage):
    """Store result images on disk under ``root/<folder>/``."""

    def __init__(self, root: Path, *, base_url: Optional[str] = None) -> None:
        self._root = root
        self._base_url = base_url.rstrip("/") if base_url else None

    @property
    def root(self) -> Path:
        return self._root

    def _unique_name(self, name: str) -> str:
        safe = _safe_component(name, "image.jpg")
        return f"{int(time.time() * 1000)}-{secrets.token_hex(8)}-{safe}"

    async def save(self, data: bytes, name: str, folder: str = "outputs") -> str:
        folder_name = _safe_component(folder, "outputs")
        filename = self._unique_name(name)
        path = self._root / folder_name / filename
        await asyncio.to_thread(_write_file, path, data)
        if self._base_url:
            return f"{self._base_url}/{folder_name}/{filename}"
        return f"{FILE_SCHEME}{path.resolve()}"

    async def load(self, ref: str) -> bytes:
        path = self._path_for(ref)
        return await asyncio.to_thread(path.read_bytes)

    def _path_for(self, ref: str) -> Path:
        if ref.startswith(FILE_SCHEME):
            return Path(ref[len(FILE_SCHEME):])
        if self._base_url and ref.startswith(self._base_url + "/"):
            relative = ref[len(self._base_url) + 1:]
            return self._root / relative
        raise ValueError(f"Reference {ref!r} does not belong to this storage")


__all__ = ["FILE_SCHEME", "LocalResultStorage"]
