# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Keyed registry of worker pools.

Pools are created lazily, one per distinct ``PoolOptions.key``, and live
until :meth:`WorkerPoolRegistry.shutdown`. Concurrent first requests for
the same key share a single creation.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from contextlib import suppress

from .job import Job
from .worker_pool import PoolHealth, PoolOptions, WorkerPool

logger = logging.getLogger(__name__)

PoolFactory = Callable[[PoolOptions], Awaitable[WorkerPool]]


class WorkerPoolRegistry:
    def __init__(self, factory: PoolFactory) -> None:
        self._factory = factory
        self._pools: dict[str, WorkerPool] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def get_or_create(self, options: PoolOptions) -> WorkerPool:
        """Return the pool for *options*, creating and starting it on first use.

        A failed creation is not cached; the next call tries again.
        """
        key = options.key
        # Fast path
        pool = self._pools.get(key)
        if pool is not None:
            return pool

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            pool = self._pools.get(key)
            if pool is None:
                logger.info("Creating worker pool %s", options.redacted_key)
                pool = await self._factory(options)
                self._pools[key] = pool
        return pool

    async def submit(self, options: PoolOptions, job: Job) -> None:
        pool = await self.get_or_create(options)
        await pool.submit(job)

    async def prewarm(self, options: Iterable[PoolOptions]) -> None:
        """Create pools ahead of traffic."""
        await asyncio.gather(*(self.get_or_create(o) for o in options))

    def health(self) -> list[PoolHealth]:
        return [pool.health() for pool in self._pools.values()]

    def __len__(self) -> int:
        return len(self._pools)

    def __contains__(self, options: object) -> bool:
        return isinstance(options, PoolOptions) and options.key in self._pools

    async def shutdown(self) -> None:
        pools = list(self._pools.values())
        self._pools.clear()
        self._locks.clear()
        for pool in pools:
            with suppress(Exception):
                await pool.shutdown()
        logger.info("Shut down %d worker pool(s)", len(pools))
