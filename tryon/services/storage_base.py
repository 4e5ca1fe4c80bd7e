"""Result storage interface."""

from __future__ import annotations

import abc


class ResultStorage(abc.ABC):
    """Interface for persisting synthesized images."""

    @abc.abstractmethod
    async def save(self, data: bytes, name: str, folder: str = "outputs") -> str:
        """Persist ``data`` and return an opaque reference to it."""

    @abc.abstractmethod
    async def load(self, ref: str) -> bytes:
        """Return the bytes behind a reference produced by :meth:`save`."""
