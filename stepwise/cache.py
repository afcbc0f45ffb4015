"""Response cache for model adaptors.

ResponseCache is a bounded, TTL-expiring memo of assistant messages keyed by
a SHA-256 hash of the full request (messages, tool schemas, model, provider).
CachingModel wraps any ModelAdaptor with it.

Eviction when full removes the entry that was *inserted* earliest. Reads do
not refresh an entry's position, so this is insertion-order eviction rather
than access-recency LRU.

All operations, including the background expiry sweep, run under a single
lock, so one cache can be shared by several agents or threads.
"""

import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

from stepwise.execution import Message
from stepwise.model import ModelAdaptor
from stepwise.tools import Tool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheConfig:
    max_size: int = 1000
    ttl: float = 3600.0  # seconds
    cleanup_interval: float = 600.0  # seconds, 0 disables the sweep
    enable_stats: bool = True

    def __post_init__(self):
        if self.max_size < 1:
            raise ValueError("max_size must be >= 1")
        if self.ttl <= 0:
            raise ValueError("ttl must be > 0")
        if self.cleanup_interval < 0:
            raise ValueError("cleanup_interval must be >= 0")


@dataclass
class CacheEntry:
    response: Message
    created_at: float
    expires_at: float
    hit_count: int = 0


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    evictions: int
    size: int
    max_size: int
    hit_rate: float


def cache_key(
    messages: list[Message],
    tools: list[dict],
    model: str,
    provider: str,
) -> str:
    """Content hash of a model request.

    ``tools`` are exported tool schemas. List order matters: the same
    messages in a different order give a different key.
    """
    payload = {
        "messages": [m.to_dict() for m in messages],
        "tools": tools,
        "model": model,
        "provider": provider,
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ResponseCache:
    """Thread-safe bounded cache of model responses.

    Args:
        config: Size, TTL and sweep settings (default: CacheConfig()).
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CacheConfig()
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None
        if self.config.cleanup_interval > 0:
            self._sweeper = threading.Thread(
                target=self._sweep_loop, name="stepwise-cache-sweep", daemon=True
            )
            self._sweeper.start()

    def get(self, key: str) -> Optional[Message]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._count_miss()
                return None

            if self._clock() >= entry.expires_at:
                del self._entries[key]
                self._count_miss()
                self._count_eviction()
                return None

            entry.hit_count += 1
            if self.config.enable_stats:
                self._hits += 1
            return entry.response

    def set(self, key: str, response: Message) -> None:
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            elif len(self._entries) >= self.config.max_size:
                self._entries.popitem(last=False)
                self._count_eviction()

            now = self._clock()
            self._entries[key] = CacheEntry(
                response=response,
                created_at=now,
                expires_at=now + self.config.ttl,
            )

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        """Drop every entry and reset statistics."""
        with self._lock:
            self._entries.clear()
            self._hits = self._misses = self._evictions = 0

    def cleanup(self) -> int:
        """Remove all expired entries. Returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if now >= e.expires_at]
            for key in expired:
                del self._entries[key]
                self._count_eviction()
            return len(expired)

    def entry(self, key: str) -> Optional[CacheEntry]:
        """Raw entry lookup; does not touch statistics or expiry."""
        with self._lock:
            return self._entries.get(key)

    def stats(self) -> CacheStats:
        with self._lock:
            total = self._hits + self._misses
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                size=len(self._entries),
                max_size=self.config.max_size,
                hit_rate=self._hits / total if total else 0.0,
            )

    def close(self) -> None:
        """Stop the background sweep."""
        self._stop.set()
        if self._sweeper is not None and self._sweeper is not threading.current_thread():
            self._sweeper.join(timeout=1.0)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __enter__(self) -> "ResponseCache":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _count_miss(self) -> None:
        if self.config.enable_stats:
            self._misses += 1

    def _count_eviction(self) -> None:
        if self.config.enable_stats:
            self._evictions += 1

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.config.cleanup_interval):
            removed = self.cleanup()
            if removed:
                logger.debug(f"Cache sweep removed {removed} expired entries")


class CachingModel(ModelAdaptor):
    """ModelAdaptor decorator serving repeated requests from a ResponseCache.

    Only successful responses are stored; errors from the wrapped adaptor
    propagate unchanged.
    """

    def __init__(self, model: ModelAdaptor, cache: Optional[ResponseCache] = None):
        self.inner = model
        self.cache = cache if cache is not None else ResponseCache()

    @property
    def provider(self) -> str:
        return self.inner.provider

    @property
    def model(self) -> str:
        return self.inner.model

    def key_for(self, messages: list[Message], tools: list[Tool], settings=None) -> str:
        model = settings.model if settings is not None and settings.model else self.inner.model
        return cache_key(
            messages,
            [tool.export_schema() for tool in tools],
            model,
            self.inner.provider,
        )

    async def call(
        self,
        messages: list[Message],
        tools: list[Tool],
        settings=None,
        **kwargs,
    ) -> Message:
        key = self.key_for(messages, tools, settings)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        response = await self.inner.call(messages, tools, settings, **kwargs)
        self.cache.set(key, response)
        return response
