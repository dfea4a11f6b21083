from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from ..core.errors import ConflictError
from ..core.logging import get_logger
from ..schemas.models import IdempotencyRecord
from ..services.repository import Repository

logger = get_logger(name=__name__)


class IdempotencyStore:
    """Maps caller-supplied keys to the first successful result of a mutating tool.

    One instance lives as long as the service and is handed to the executor
    explicitly. ``claim`` serialises concurrent calls that share a key, so the
    lookup-execute-record sequence cannot interleave for the same key.
    """

    def __init__(self, repository: Repository) -> None:
        self._repository = repository
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._waiters: defaultdict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def claim(self, key: str) -> AsyncIterator[None]:
        self._waiters[key] += 1
        lock = self._locks[key]
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] <= 0:
                self._waiters.pop(key, None)
                self._locks.pop(key, None)

    async def lookup(self, key: str) -> IdempotencyRecord | None:
        return await self._repository.get_idempotency_record(key)

    async def remember(self, key: str, *, tool: str, result: dict[str, Any]) -> IdempotencyRecord:
        record = IdempotencyRecord(key=key, tool=tool, result=result)
        try:
            return await self._repository.save_idempotency_record(record)
        except ConflictError as exc:
            logger.warning("idempotency_key_conflict", key=key, tool=tool)
            if isinstance(exc.existing, IdempotencyRecord):
                return exc.existing
            raise

    @property
    def active_keys(self) -> int:
        return len(self._locks)


__all__ = ["IdempotencyStore"]
