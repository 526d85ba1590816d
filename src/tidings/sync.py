"""Boundary with provider adapters: fetch new items and buffer them as Raw Events.

Concrete provider wire formats live behind ``ProviderSyncAdapter``; the
pipeline only sees ``RawEventCandidate`` values.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, TypeVar

from tidings.config import ConfigError, SyncConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class RawEventCandidate:
    """One provider item as fetched, before it is buffered."""

    source_id: str | None
    payload: dict[str, Any]
    occurred_at: datetime
    source_meta: dict[str, Any] = field(default_factory=dict)


class ProviderSyncAdapter(Protocol):
    provider: str

    async def fetch_since(
        self,
        user_id: str,
        provider: str,
        watermark: datetime | None,
        filters: dict[str, Any],
    ) -> list[RawEventCandidate]:
        """Return items newer than *watermark* (everything when ``None``)."""
        ...


class ThrottledFetcher:
    """Bounded fan-out for adapters that fetch many sub-resources.

    At most ``max_concurrency`` calls are in flight at once and consecutive
    call starts are spaced by at least ``min_interval_s``.
    """

    def __init__(self, *, max_concurrency: int = 3, min_interval_s: float = 0.2) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._min_interval_s = max(0.0, min_interval_s)
        self._spacing_lock = asyncio.Lock()
        self._last_start: float | None = None

    async def _wait_turn(self) -> None:
        async with self._spacing_lock:
            if self._last_start is not None:
                wait = self._min_interval_s - (time.monotonic() - self._last_start)
                if wait > 0:
                    await asyncio.sleep(wait)
            self._last_start = time.monotonic()

    async def call(self, fn: Callable[[], Awaitable[R]]) -> R:
        async with self._semaphore:
            await self._wait_turn()
            return await fn()

    async def map(
        self, fn: Callable[[T], Awaitable[R]], items: Iterable[T]
    ) -> list[R | BaseException]:
        """Apply *fn* to every item; results keep input order.

        A failing item yields its exception in place of a result so one bad
        item does not sink the rest.
        """
        tasks = [self.call(lambda item=item: fn(item)) for item in items]
        return await asyncio.gather(*tasks, return_exceptions=True)


def _import_factory(provider: str, target: str) -> Callable[..., Any]:
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError(
            f"sync.adapters.{provider} must look like 'package.module:factory', got {target!r}"
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(
            f"sync.adapters.{provider}: cannot import {module_name!r}: {exc}"
        ) from exc
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ConfigError(f"sync.adapters.{provider}: {target!r} is not callable")
    return factory


def load_adapters(config: SyncConfig) -> dict[str, ProviderSyncAdapter]:
    """Build the adapters named in ``[sync.adapters]``.

    Each entry maps a provider name to a ``module:factory`` path. The factory
    is called with ``fetcher=`` a ``ThrottledFetcher`` sized from ``[sync]``;
    every adapter gets its own so one provider's throttling does not starve
    another.
    """
    adapters: dict[str, ProviderSyncAdapter] = {}
    for provider, target in sorted(config.adapters.items()):
        factory = _import_factory(provider, target)
        fetcher = ThrottledFetcher(
            max_concurrency=config.max_concurrency, min_interval_s=config.min_interval_s
        )
        adapters[provider] = factory(fetcher=fetcher)
        logger.info("sync: registered adapter for %s from %s", provider, target)
    return adapters
