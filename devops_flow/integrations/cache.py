"""Integration data cache — per-(source type, integration id) listing cache.

Each key (e.g. (jenkins, "ci")) owns one entry with its own status, items,
in-flight fetch and error. Keys never share state: a failure for one key
cannot change the status of another.

Status model
------------
  initial   integration id absent or empty; nothing is fetched
  loading   first fetch (or a fetch after an error with no data) in flight
  success   last fetch completed; items may be empty
  error     last fetch failed after retries; previous items are kept

A refetch on top of existing data keeps the current status and reports
is_fetching=True, so a node never flickers back to "loading".

Freshness
---------
Per source type (see FRESHNESS):

  gitlab, jenkins, kubernetes   stale after 30 s,  evicted after 60 s idle
  sonarqube, keycloak           stale after 300 s, evicted after 600 s idle

read() on a stale entry starts a background refetch. An entry in the error
state is not refetched automatically; refresh() or invalidate() is needed.

Retries
-------
A failed fetch is retried up to max_retries (3) times with exponential
backoff min(base * 2**n, 30 s). An error with HTTP status 401 is never
retried (see errors.is_retryable).

Concurrency
-----------
At most one fetch per key is in flight. read() and ensure() observe the
running fetch instead of starting another; refresh() waits for it and then
starts a fresh one. Fetches run as asyncio tasks on the running loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, NamedTuple, Sequence

from devops_flow.graph.model import NodeKind
from devops_flow.integrations.errors import IntegrationError, is_retryable

logger = logging.getLogger("devops_flow.integrations.cache")

FetchFn = Callable[[NodeKind, str], Awaitable[Sequence[Any]]]


class ListingStatus(str, Enum):
    INITIAL = "initial"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class CacheKey(NamedTuple):
    source_type: NodeKind
    integration_id: str


@dataclass(frozen=True)
class FreshnessPolicy:
    """stale_after: seconds before a result is refetched on read.
    evict_after: seconds without reads before an idle entry is dropped."""

    stale_after: float
    evict_after: float


_FAST = FreshnessPolicy(stale_after=30.0, evict_after=60.0)
_SLOW = FreshnessPolicy(stale_after=300.0, evict_after=600.0)

FRESHNESS: dict[NodeKind, FreshnessPolicy] = {
    NodeKind.GITLAB: _FAST,
    NodeKind.JENKINS: _FAST,
    NodeKind.KUBERNETES: _FAST,
    NodeKind.SONARQUBE: _SLOW,
    NodeKind.KEYCLOAK: _SLOW,
}


@dataclass(frozen=True)
class ListingSnapshot:
    """Immutable view of one cache entry at one point in time."""

    status: ListingStatus = ListingStatus.INITIAL
    items: tuple[Any, ...] = ()
    fetched_at: float | None = None
    error: IntegrationError | None = None
    is_fetching: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "items": [i.model_dump() if hasattr(i, "model_dump") else i for i in self.items],
            "fetchedAt": self.fetched_at,
            "error": self.error.to_dict() if self.error is not None else None,
            "isFetching": self.is_fetching,
        }


INITIAL_SNAPSHOT = ListingSnapshot()


@dataclass
class _Entry:
    key: CacheKey
    status: ListingStatus = ListingStatus.INITIAL
    items: tuple[Any, ...] = ()
    fetched_at: float | None = None
    error: IntegrationError | None = None
    task: asyncio.Task | None = None
    last_access: float = 0.0
    invalidated: bool = False

    @property
    def is_fetching(self) -> bool:
        return self.task is not None and not self.task.done()

    def snapshot(self) -> ListingSnapshot:
        return ListingSnapshot(
            status=self.status,
            items=self.items,
            fetched_at=self.fetched_at,
            error=self.error,
            is_fetching=self.is_fetching,
        )


CacheListener = Callable[[CacheKey, ListingSnapshot], None]


class IntegrationDataCache:
    """Keyed listing cache with retry, freshness and single-flight fetches.

    fetch:            async (source_type, integration_id) -> items.
                      FetcherRegistry.fetch has this shape.
    max_retries:      retries after the first attempt (4 attempts total).
    retry_base_delay: first backoff delay in seconds; 0 disables sleeping.
    clock:            monotonic seconds; injectable for freshness tests.
    """

    def __init__(
        self,
        fetch: FetchFn,
        *,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
        freshness: dict[NodeKind, FreshnessPolicy] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._fetch = fetch
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay
        self._freshness = freshness or FRESHNESS
        self._clock = clock or time.monotonic
        self._entries: dict[CacheKey, _Entry] = {}
        self._listeners: list[CacheListener] = []

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def peek(self, source_type: NodeKind | str, integration_id: str | None) -> ListingSnapshot:
        """Current snapshot without side effects (no fetch, no access stamp)."""
        if not integration_id:
            return INITIAL_SNAPSHOT
        entry = self._entries.get(CacheKey(NodeKind.parse(source_type), integration_id))
        return entry.snapshot() if entry is not None else INITIAL_SNAPSHOT

    def read(self, source_type: NodeKind | str, integration_id: str | None) -> ListingSnapshot:
        """Snapshot for the key, starting a fetch when the entry is missing or stale.

        Must be called from a running event loop for a fetch to start.
        """
        if not integration_id:
            return INITIAL_SNAPSHOT
        kind = NodeKind.parse(source_type)
        if kind not in self._freshness:
            return INITIAL_SNAPSHOT

        self.evict_inactive()
        entry = self._entry(CacheKey(kind, integration_id))
        entry.last_access = self._clock()

        if entry.is_fetching:
            return entry.snapshot()
        if entry.status == ListingStatus.ERROR and not entry.invalidated:
            return entry.snapshot()
        if self._is_stale(entry):
            self._start_fetch(entry)
        return entry.snapshot()

    async def ensure(self, source_type: NodeKind | str, integration_id: str | None) -> ListingSnapshot:
        """Like read(), but waits for any fetch the read started or joined."""
        snapshot = self.read(source_type, integration_id)
        if not integration_id or not snapshot.is_fetching:
            return snapshot
        entry = self._entries[CacheKey(NodeKind.parse(source_type), integration_id)]
        await self._wait(entry)
        return entry.snapshot()

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    async def refresh(self, source_type: NodeKind | str, integration_id: str | None) -> ListingSnapshot:
        """Force-invalidate the entry and refetch it, even when still fresh.

        A fetch already in flight is awaited first so the refetch is not
        merged into a request that started before the refresh. Concurrent
        refreshes that waited on the same fetch share one refetch.
        """
        if not integration_id:
            return INITIAL_SNAPSHOT
        kind = NodeKind.parse(source_type)
        if kind not in self._freshness:
            return INITIAL_SNAPSHOT

        entry = self._entry(CacheKey(kind, integration_id))
        entry.last_access = self._clock()
        pending = entry.task if entry.is_fetching else None
        await self._wait(entry)
        if entry.is_fetching and entry.task is not pending:
            logger.debug("refresh %s: joining fetch started by another refresh", entry.key)
        else:
            entry.invalidated = True
            self._start_fetch(entry)
        await self._wait(entry)
        return entry.snapshot()

    def invalidate(self, source_type: NodeKind | str, integration_id: str | None = None) -> int:
        """Mark entries stale so the next read refetches them.

        With integration_id=None every entry of source_type is invalidated.
        Returns the number of entries marked.
        """
        kind = NodeKind.parse(source_type)
        marked = 0
        for key, entry in self._entries.items():
            if key.source_type == kind and (integration_id is None or key.integration_id == integration_id):
                entry.invalidated = True
                marked += 1
        logger.debug("invalidate %s/%s: %d entr(y/ies)", kind.value, integration_id or "*", marked)
        return marked

    def evict_inactive(self) -> int:
        """Drop idle entries whose eviction window has elapsed."""
        now = self._clock()
        expired = [
            key
            for key, entry in self._entries.items()
            if not entry.is_fetching
            and now - entry.last_access >= self._freshness[key.source_type].evict_after
        ]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("evicted %d idle entr(y/ies)", len(expired))
        return len(expired)

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, listener: CacheListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, entry: _Entry) -> None:
        snapshot = entry.snapshot()
        for listener in list(self._listeners):
            listener(entry.key, snapshot)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def aclose(self) -> None:
        """Cancel every in-flight fetch."""
        tasks = [e.task for e in self._entries.values() if e.is_fetching]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _entry(self, key: CacheKey) -> _Entry:
        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry(key=key, last_access=self._clock())
            self._entries[key] = entry
        return entry

    def _is_stale(self, entry: _Entry) -> bool:
        if entry.invalidated or entry.fetched_at is None:
            return True
        return self._clock() - entry.fetched_at >= self._freshness[entry.key.source_type].stale_after

    def _start_fetch(self, entry: _Entry) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("no running event loop, fetch for %s deferred", entry.key)
            return
        entry.invalidated = False
        if entry.fetched_at is None:
            entry.status = ListingStatus.LOADING
        entry.task = loop.create_task(self._run_fetch(entry))
        self._notify(entry)

    @staticmethod
    async def _wait(entry: _Entry) -> None:
        task = entry.task
        if task is not None and not task.done():
            # shield: a cancelled caller must not cancel the shared fetch
            await asyncio.shield(task)

    async def _run_fetch(self, entry: _Entry) -> None:
        kind, integration_id = entry.key
        attempt = 0
        try:
            while True:
                try:
                    items = await self._fetch(kind, integration_id)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    error = e if isinstance(e, IntegrationError) else IntegrationError(str(e) or type(e).__name__)
                    if attempt < self._max_retries and is_retryable(error):
                        delay = min(self._retry_base_delay * (2 ** attempt), self._retry_max_delay)
                        attempt += 1
                        logger.debug(
                            "fetch %s/%s failed (%s), retry %d/%d in %.1fs",
                            kind.value, integration_id, error, attempt, self._max_retries, delay,
                        )
                        if delay > 0:
                            await asyncio.sleep(delay)
                        continue
                    logger.error(
                        "fetch %s/%s failed after %d attempt(s): %s",
                        kind.value, integration_id, attempt + 1, error,
                    )
                    entry.error = error
                    entry.status = ListingStatus.ERROR
                    return
                entry.items = tuple(items)
                entry.fetched_at = self._clock()
                entry.error = None
                entry.status = ListingStatus.SUCCESS
                logger.debug(
                    "fetched %d %s item(s) for integration %s",
                    len(entry.items), kind.value, integration_id,
                )
                return
        finally:
            if entry.task is asyncio.current_task():
                entry.task = None
            self._notify(entry)
