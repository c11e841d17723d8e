"""
ReelProxy — In-Memory Response Cache
=====================================

What:  Bounded, process-local store for successful GET responses.
How:   OrderedDict in insertion order. When full, the least-recently-inserted
       entry is evicted; reads do not reorder entries. An optional TTL drops
       stale entries lazily on read.

Cache key:
    "{METHOD}:{upstream_url}:{headers}" where headers is canonical JSON of
    the request's Accept header and whether an Authorization header was
    present, e.g.:
        GET:https://api.themoviedb.org/3/movie/550:{"accept": "application/json", "authorization": null}

Scope:
    Single process, single event loop. Every worker keeps its own cache.
"""

import json
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from reelproxy.pipeline.context import ProxyRequest


@dataclass(frozen=True)
class CachedResponse:
    """Stored upstream answer: status, raw body and its content type."""

    status_code: int
    body: bytes
    content_type: str = "application/json"


def build_cache_key(request: ProxyRequest) -> str:
    """Key for a request: method, resolved upstream URL and varying headers."""
    headers_key = json.dumps(
        {
            "accept": request.headers.get("accept"),
            "authorization": "present" if request.headers.get("authorization") else None,
        },
        sort_keys=True,
    )
    return f"{request.method}:{request.upstream_url}:{headers_key}"


class RequestCache:
    """
    Bounded key → CachedResponse map with least-recently-inserted eviction.

    Args:
        max_size: Maximum number of entries (>= 1)
        ttl:      Seconds an entry stays valid; None keeps it until evicted
        clock:    Monotonic time source (injectable for tests)
    """

    def __init__(
        self,
        max_size: int = 100,
        ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.ttl = ttl
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, CachedResponse]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[CachedResponse]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        stored_at, value = entry
        if self.ttl is not None and self._clock() - stored_at >= self.ttl:
            del self._entries[key]
            self.misses += 1
            return None

        self.hits += 1
        return value

    def set(self, key: str, value: CachedResponse) -> None:
        """
        Insert or replace an entry.

        Replacing an existing key counts as a fresh insertion (moves it to
        the newest position) and never evicts another entry.
        """
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.max_size:
            self._entries.popitem(last=False)
        self._entries[key] = (self._clock(), value)

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries
