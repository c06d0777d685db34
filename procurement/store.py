"""
Hierarchical document store used as the backend of record.

Values live in a tree addressed by slash-separated paths
("orders/-Nx3...", "metadata/lastOrderNumber").  Every backend implements
the same coroutine interface:

  get(path)                 -> value at path, or None
  set(path, value)          replace the subtree at path (None removes it)
  update(path, partial)     set each child key of path in one write
  remove(path)              delete the subtree at path
  push(path)                -> new chronologically ordered child key (no write)
  atomic_update(path, fn)   optimistic read-modify-write transaction
  subscribe(path, cb)       -> unsubscribe; cb receives the full value at path

Atomic transactions are a compare-and-swap loop: read the value together with
a version token, compute fn(value), and commit only if the token is still
current.  A stale token means another writer got in first, so the loop backs
off exponentially and retries, raising TransactionConflict once
max_retries attempts have failed.

Version tokens are built from two revision counters kept per path:
  subtree_rev   bumped for the written path and all of its ancestors
  set_rev       bumped only for the written path itself
The token of a path is its subtree_rev plus the set_rev of every strict
ancestor, so writes below, at, or above a path invalidate it while writes
to unrelated siblings do not.

Subscriptions deliver the whole current value at the subscribed path, never
a diff.  Deliveries are collapsed: if several writes land before a pending
delivery runs, the subscriber sees only the latest state.
"""
import asyncio
import copy
import logging
import random
import secrets
import time
from typing import Any, Callable, Optional

from .errors import StoreError, TransactionConflict

logger = logging.getLogger(__name__)

Callback = Callable[[Any], None]
Unsubscribe = Callable[[], None]

DEFAULT_MAX_RETRIES   = 25
DEFAULT_BACKOFF       = 0.01
DEFAULT_BACKOFF_MAX   = 0.5


# ---------------------------------------------------------------------------
# Path and tree helpers (shared by all backends)
# ---------------------------------------------------------------------------

def split_path(path: str) -> tuple[str, ...]:
    """'orders//abc/' -> ('orders', 'abc').  The empty path is the root."""
    return tuple(part for part in (path or "").split("/") if part)


def join_path(*parts: str) -> str:
    return "/".join(seg for part in parts for seg in split_path(part))


def is_prefix(prefix: tuple[str, ...], path: tuple[str, ...]) -> bool:
    return path[: len(prefix)] == prefix


def normalize(value: Any) -> Any:
    """
    Deep-copy a value into its stored form.

    None entries and empty mappings are dropped, matching the rule that a
    path holding nothing does not exist.
    """
    if isinstance(value, dict):
        out = {}
        for key, child in value.items():
            child = normalize(child)
            if child is not None:
                out[str(key)] = child
        return out or None
    if isinstance(value, (list, tuple)):
        return [normalize(child) for child in value]
    return copy.deepcopy(value)


def get_in(tree: Any, segments: tuple[str, ...]) -> Any:
    node = tree
    for seg in segments:
        if isinstance(node, dict):
            node = node.get(seg)
        elif isinstance(node, list) and seg.isdigit() and int(seg) < len(node):
            node = node[int(seg)]
        else:
            return None
        if node is None:
            return None
    return node


def set_in(tree: Any, segments: tuple[str, ...], value: Any) -> Any:
    """
    Return `tree` with the subtree at `segments` replaced by `value`.

    Intermediate scalars are replaced by mappings; emptied mappings are
    pruned.  `value` must already be normalised.
    """
    if not segments:
        return value
    head, rest = segments[0], segments[1:]
    if isinstance(tree, list):
        if not (head.isdigit() and int(head) < len(tree)):
            raise StoreError(f"Cannot write list index {head!r}")
        tree[int(head)] = set_in(tree[int(head)], rest, value)
        return tree
    node = tree if isinstance(tree, dict) else {}
    child = set_in(node.get(head), rest, value)
    if child is None:
        node.pop(head, None)
    else:
        node[head] = child
    return node or None


def new_push_key() -> str:
    """Chronologically sortable unique key, in the style of push ids."""
    return f"-{time.time_ns():016x}{secrets.token_hex(4)}"


# ---------------------------------------------------------------------------
# Base store
# ---------------------------------------------------------------------------

class _Subscription:
    def __init__(self, path: tuple[str, ...], callback: Callback) -> None:
        self.path = path
        self.callback = callback
        self.active = True
        self.pending = False
        self.last_token: Any = object()
        self.poller: Optional[asyncio.Task] = None


class Store:
    """
    Base class: subscription fan-out and the compare-and-swap transaction loop.

    Backends implement the primitive coroutines plus `_read_versioned` and
    `_commit_if_unchanged`, and call `_notify(path)` after every write.
    """

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff: float = DEFAULT_BACKOFF,
        backoff_max: float = DEFAULT_BACKOFF_MAX,
    ) -> None:
        self.max_retries = max_retries
        self.backoff = backoff
        self.backoff_max = backoff_max
        self._subscriptions: list[_Subscription] = []
        self._deliveries: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    async def get(self, path: str) -> Any:
        raise NotImplementedError

    async def set(self, path: str, value: Any) -> None:
        raise NotImplementedError

    async def update(self, path: str, partial: dict) -> None:
        raise NotImplementedError

    async def remove(self, path: str) -> None:
        await self.set(path, None)

    async def push(self, path: str) -> str:
        return new_push_key()

    async def _read_versioned(self, segments: tuple[str, ...]) -> tuple[Any, Any]:
        raise NotImplementedError

    async def _commit_if_unchanged(self, segments: tuple[str, ...], token: Any, value: Any) -> bool:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def atomic_update(self, path: str, fn: Callable[[Any], Any]) -> Any:
        """
        Apply `fn(current) -> new` atomically and return the committed value.

        `fn` may run several times and must not have side effects.
        """
        segments = split_path(path)
        delay = self.backoff
        for attempt in range(1, self.max_retries + 1):
            current, token = await self._read_versioned(segments)
            new_value = normalize(fn(copy.deepcopy(current)))
            if await self._commit_if_unchanged(segments, token, new_value):
                if attempt > 1:
                    logger.debug("Transaction on %s committed after %d attempts", path, attempt)
                self._notify(segments)
                return copy.deepcopy(new_value)
            logger.debug("Transaction conflict on %s (attempt %d/%d)", path, attempt, self.max_retries)
            if delay > 0:
                await asyncio.sleep(delay * (0.5 + random.random()))
                delay = min(delay * 2, self.backoff_max)
            else:
                await asyncio.sleep(0)
        raise TransactionConflict(path, self.max_retries)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, path: str, callback: Callback) -> Unsubscribe:
        """
        Register `callback` for the value at `path`.

        The callback fires once with the current value, then again after
        each change at, above or below the path.  Must be called from a
        running event loop.
        """
        sub = _Subscription(split_path(path), callback)
        self._subscriptions.append(sub)
        self._schedule(sub)
        self._start_polling(sub)

        def unsubscribe() -> None:
            sub.active = False
            if sub.poller is not None:
                sub.poller.cancel()
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

        return unsubscribe

    def _start_polling(self, sub: _Subscription) -> None:
        """Hook for backends that must poll to see other writers."""

    def _notify(self, segments: tuple[str, ...]) -> None:
        for sub in list(self._subscriptions):
            if is_prefix(sub.path, segments) or is_prefix(segments, sub.path):
                self._schedule(sub)

    def _schedule(self, sub: _Subscription) -> None:
        if sub.pending or not sub.active:
            return
        sub.pending = True
        task = asyncio.get_running_loop().create_task(self._deliver(sub))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)

    async def _deliver(self, sub: _Subscription) -> None:
        sub.pending = False
        value, token = await self._read_versioned(sub.path)
        if not sub.active or token == sub.last_token:
            return
        sub.last_token = token
        try:
            sub.callback(copy.deepcopy(value))
        except Exception:
            logger.exception("Subscriber for %s raised", "/".join(sub.path) or "/")

    async def drain(self) -> None:
        """Wait until every scheduled subscription delivery has run."""
        while self._deliveries:
            await asyncio.gather(*list(self._deliveries))

    async def close(self) -> None:
        pollers = []
        for sub in list(self._subscriptions):
            sub.active = False
            if sub.poller is not None:
                sub.poller.cancel()
                pollers.append(sub.poller)
        self._subscriptions.clear()
        await asyncio.gather(*pollers, return_exceptions=True)
        await self.drain()


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------

class MemoryStore(Store):
    """
    Store held in process memory.

    Every operation yields to the event loop once (after `latency` seconds)
    before it touches the tree, the way a network round trip would, so
    concurrent tasks interleave between the read and the commit of a
    transaction.
    """

    def __init__(self, latency: float = 0.0, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.latency = latency
        self._root: Any = None
        self._seq = 0
        self._subtree_rev: dict[tuple[str, ...], int] = {}
        self._set_rev: dict[tuple[str, ...], int] = {}

    async def _io(self) -> None:
        await asyncio.sleep(self.latency)

    def _token(self, segments: tuple[str, ...]) -> tuple:
        ancestors = tuple(self._set_rev.get(segments[:i], 0) for i in range(len(segments)))
        return (self._subtree_rev.get(segments, 0), ancestors)

    def _write(self, segments: tuple[str, ...], value: Any) -> None:
        self._root = set_in(self._root, segments, value)
        self._seq += 1
        self._set_rev[segments] = self._seq
        for i in range(len(segments) + 1):
            self._subtree_rev[segments[:i]] = self._seq

    async def get(self, path: str) -> Any:
        await self._io()
        return copy.deepcopy(get_in(self._root, split_path(path)))

    async def set(self, path: str, value: Any) -> None:
        await self._io()
        segments = split_path(path)
        self._write(segments, normalize(value))
        logger.debug("set %s", path)
        self._notify(segments)

    async def update(self, path: str, partial: dict) -> None:
        await self._io()
        base = split_path(path)
        for key, value in partial.items():
            self._write(base + split_path(key), normalize(value))
        logger.debug("update %s (%d keys)", path, len(partial))
        self._notify(base)

    async def _read_versioned(self, segments: tuple[str, ...]) -> tuple[Any, Any]:
        await self._io()
        return copy.deepcopy(get_in(self._root, segments)), self._token(segments)

    async def _commit_if_unchanged(self, segments: tuple[str, ...], token: Any, value: Any) -> bool:
        await self._io()
        if self._token(segments) != token:
            return False
        self._write(segments, value)
        return True
