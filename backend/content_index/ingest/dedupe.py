"""Deduplication helpers."""

from __future__ import annotations

from content_index.utils.hashing import sha256_text


def page_key(url: str, title: str) -> str:
    """Stable identity of a page version for the lifetime of the process."""
    return sha256_text(url, title)


class PageDedupCache:
    """Remembers which ``(url, title)`` pairs were indexed and by which source."""

    def __init__(self) -> None:
        self._keys: set[str] = set()
        self._by_source: dict[str, set[str]] = {}

    def seen(self, url: str, title: str) -> bool:
        return page_key(url, title) in self._keys

    def add(self, source_id: str, url: str, title: str) -> None:
        key = page_key(url, title)
        self._keys.add(key)
        self._by_source.setdefault(source_id, set()).add(key)

    def forget_source(self, source_id: str) -> int:
        keys = self._by_source.pop(source_id, set())
        for key in keys:
            still_used = any(key in other for other in self._by_source.values())
            if not still_used:
                self._keys.discard(key)
        return len(keys)

    def clear(self) -> None:
        self._keys.clear()
        self._by_source.clear()

    def __len__(self) -> int:
        return len(self._keys)


__all__ = ["PageDedupCache", "page_key"]
