"""Versioning ledger over an append-only artifact store.

Plans, critiques and executions are stored per request id and artifact
kind, each under a version number that starts at 1 and grows by one.  The
ledger serialises version assignment per request with an ``asyncio.Lock``
and the store refuses to overwrite an existing version, so two writers can
never end up with the same number.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Callable, Optional, TypeVar

from .errors import VersionConflictError

_log = logging.getLogger(__name__)

PLAN = "plan"
CRITIQUE = "critique"
EXECUTION = "execution"
ARTIFACT_KINDS = (PLAN, CRITIQUE, EXECUTION)

T = TypeVar("T")


class ArtifactStore(ABC):
    """Persistence boundary: append and read, never update or delete."""

    @abstractmethod
    async def save(self, request_id: str, kind: str, version: int, artifact: Any) -> None:
        """Store an artifact; raise VersionConflictError if the version exists."""
        ...

    @abstractmethod
    async def get_latest(self, request_id: str, kind: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def get_all_versions(self, request_id: str, kind: str) -> list[Any]:
        """Return all artifacts of a kind, ascending by version."""
        ...

    @abstractmethod
    async def versions(self, request_id: str, kind: str) -> list[int]:
        ...


class InMemoryArtifactStore(ArtifactStore):
    def __init__(self) -> None:
        self._data: dict[tuple[str, str], dict[int, Any]] = defaultdict(dict)

    async def save(self, request_id: str, kind: str, version: int, artifact: Any) -> None:
        bucket = self._data[(request_id, kind)]
        if version in bucket:
            raise VersionConflictError(
                f"{kind} version {version} already exists for request {request_id}",
                request_id=request_id,
                kind=kind,
                version=version,
            )
        bucket[version] = artifact

    async def get_latest(self, request_id: str, kind: str) -> Optional[Any]:
        bucket = self._data.get((request_id, kind))
        if not bucket:
            return None
        return bucket[max(bucket)]

    async def get_all_versions(self, request_id: str, kind: str) -> list[Any]:
        bucket = self._data.get((request_id, kind), {})
        return [bucket[v] for v in sorted(bucket)]

    async def versions(self, request_id: str, kind: str) -> list[int]:
        return sorted(self._data.get((request_id, kind), {}))


class VersioningLedger:
    """Assigns version numbers and records artifacts in an ArtifactStore."""

    def __init__(self, store: ArtifactStore | None = None) -> None:
        self.store = store or InMemoryArtifactStore()
        # Entries vanish once no commit holds or awaits the lock.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock(self, request_id: str) -> asyncio.Lock:
        lock = self._locks.get(request_id)
        if lock is None:
            lock = self._locks[request_id] = asyncio.Lock()
        return lock

    async def next_version(self, request_id: str, kind: str) -> int:
        """Return max existing version + 1, read from the store every time."""
        _check_kind(kind)
        existing = await self.store.versions(request_id, kind)
        return (max(existing) if existing else 0) + 1

    async def commit(self, request_id: str, kind: str, build: Callable[[int], T]) -> T:
        """Assign the next version, build the artifact with it, and store it.

        ``build`` receives the version number and returns the artifact, so
        the stored artifact always carries the number it was stored under.
        """
        async with self._lock(request_id):
            return await self._commit_locked(request_id, kind, build)

    async def commit_if_absent(
        self,
        request_id: str,
        kind: str,
        exists: Callable[[Any], bool],
        build: Callable[[int], T],
    ) -> T:
        """Like :meth:`commit`, unless a stored artifact satisfies ``exists``.

        The first such artifact is returned instead.  The lookup and the
        commit happen under the same per-request lock.
        """
        async with self._lock(request_id):
            for stored in await self.all_versions(request_id, kind):
                if exists(stored):
                    return stored
            return await self._commit_locked(request_id, kind, build)

    async def _commit_locked(self, request_id: str, kind: str, build: Callable[[int], T]) -> T:
        version = await self.next_version(request_id, kind)
        artifact = build(version)
        await self.store.save(request_id, kind, version, artifact)
        _log.info("Committed %s v%d for request %s", kind, version, request_id)
        return artifact

    async def latest(self, request_id: str, kind: str) -> Optional[Any]:
        _check_kind(kind)
        return await self.store.get_latest(request_id, kind)

    async def all_versions(self, request_id: str, kind: str) -> list[Any]:
        _check_kind(kind)
        return await self.store.get_all_versions(request_id, kind)

    async def versions(self, request_id: str, kind: str) -> list[int]:
        _check_kind(kind)
        return await self.store.versions(request_id, kind)


def _check_kind(kind: str) -> None:
    if kind not in ARTIFACT_KINDS:
        raise ValueError(f"unknown artifact kind {kind!r}; expected one of {ARTIFACT_KINDS}")
