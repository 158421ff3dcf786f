from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator


class AssetLockTimeout(Exception):
    def __init__(self, asset_id: str, timeout_seconds: float) -> None:
        self.asset_id = asset_id
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Timed out after {timeout_seconds}s waiting for asset {asset_id}")


@dataclass
class _LockEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class AssetLockRegistry:
    """One mutex per asset id, created on demand and dropped when unused."""

    def __init__(self, *, timeout_seconds: float = 5.0) -> None:
        self._timeout_seconds = timeout_seconds
        self._guard = threading.Lock()
        self._entries: dict[str, _LockEntry] = {}

    @contextmanager
    def hold(self, asset_id: str) -> Iterator[None]:
        entry = self._checkout(asset_id)
        try:
            if not entry.lock.acquire(timeout=self._timeout_seconds):
                raise AssetLockTimeout(asset_id, self._timeout_seconds)
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(asset_id, entry)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def _checkout(self, asset_id: str) -> _LockEntry:
        with self._guard:
            entry = self._entries.setdefault(asset_id, _LockEntry())
            entry.users += 1
            return entry

    def _checkin(self, asset_id: str, entry: _LockEntry) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                del self._entries[asset_id]
