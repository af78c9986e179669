"""Bounded admission for expensive codec calls."""

from __future__ import annotations

import asyncio


class ConcurrencyGate:
    """Limit how many tile renders run at once.

    Decoding a region of a gigapixel source can take most of the available
    memory, so renders are admitted through a shared semaphore. Use it as an
    async context manager; the slot is released on every exit path.

    Args:
        capacity: Maximum simultaneous holders. Defaults to 1.

    Raises:
        ValueError: If `capacity` is less than 1.
    """

    def __init__(self, capacity: int = 1) -> None:
        if capacity < 1:
            raise ValueError(f"Gate capacity must be at least 1, got {capacity}")
        self._capacity = capacity
        self._semaphore = asyncio.Semaphore(capacity)
        self._in_use = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def in_use(self) -> int:
        """Number of slots currently held."""
        return self._in_use

    async def acquire(self) -> None:
        await self._semaphore.acquire()
        self._in_use += 1

    def release(self) -> None:
        self._in_use -= 1
        self._semaphore.release()

    async def __aenter__(self) -> "ConcurrencyGate":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()
