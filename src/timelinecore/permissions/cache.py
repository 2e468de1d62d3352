"""Optional permission decision cache.

A cache is a derived, disposable index of resolver decisions keyed by
(subject, node, action). It is never the system of record: every policy,
membership and hierarchy write invalidates the affected entries before the
write returns, so a revoke is visible to the very next check.

A check that reads the stores while a write commits must not store a
decision computed from the old rows. Every cache therefore hands out a
generation token before the resolver reads the stores, every invalidation
moves the generation on, and a decision tagged with an old generation is
never served.

Two backends:
- ``MemoryPermissionCache``: per-process dict, bounded in size, for
  single-worker deployments and tests.
- ``RedisPermissionCache``: shared across workers via the same Redis that
  ``TimelineConfig.redis_url`` points at.

``build_cache(config)`` picks one from configuration (or returns None).
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional

from pydantic import BaseModel

from ..config import TimelineConfig
from ..exceptions import ConfigurationError, StoreError
from ..models import AccessDecision, PermissionAction

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "timelinecore:perm"
ANONYMOUS = "~anonymous"


def _subject_key(subject_id: Optional[str]) -> str:
    return subject_id if subject_id is not None else ANONYMOUS


def _action_value(action: PermissionAction | str) -> str:
    return PermissionAction(action).value


def _entry_ttl(default: int, ttl_seconds: Optional[int]) -> int:
    return default if ttl_seconds is None else min(default, ttl_seconds)


class PermissionCache(ABC):
    """Decision cache interface used by the resolver and the stores."""

    @abstractmethod
    def get(
        self, node_id: str, subject_id: Optional[str], action: PermissionAction | str
    ) -> Optional[AccessDecision]:
        raise NotImplementedError

    @abstractmethod
    def generation(self, node_id: str, subject_id: Optional[str]) -> Any:
        """Token to pass to ``set()`` for a decision about to be computed.

        Read it before loading anything from the stores. None means the
        decision must not be cached.
        """
        raise NotImplementedError

    @abstractmethod
    def set(
        self,
        node_id: str,
        subject_id: Optional[str],
        action: PermissionAction | str,
        decision: AccessDecision,
        *,
        generation: Any = None,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        """Store ``decision``.

        A ``generation`` older than the current one (an invalidation ran
        since it was read) means the decision is dropped. ``ttl_seconds``
        can only shorten the cache's own TTL.
        """
        raise NotImplementedError

    @abstractmethod
    def invalidate_nodes(self, node_ids: Iterable[str]) -> None:
        """Drop every cached decision for these nodes."""
        raise NotImplementedError

    @abstractmethod
    def invalidate_subjects(self, subject_ids: Iterable[str]) -> None:
        """Drop every cached decision for these subjects."""
        raise NotImplementedError

    @abstractmethod
    def clear(self) -> None:
        raise NotImplementedError


class MemoryPermissionCache(PermissionCache):
    """In-process cache with a per-entry TTL and a size bound.

    The generation is one counter for the whole cache: any invalidation
    makes every in-flight decision uncacheable, which is cheap for a single
    process and needs no per-key bookkeeping.

    Args:
        ttl_seconds: Entry lifetime.
        max_entries: Entries kept before the oldest are evicted.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(self, ttl_seconds: int = 300, max_entries: int = 10_000, clock=time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._epoch = 0
        # Insertion order is write order, oldest first
        self._entries: dict[tuple[str, str, str], tuple[AccessDecision, float]] = {}
        self._by_node: dict[str, set[tuple[str, str, str]]] = {}
        self._by_subject: dict[str, set[tuple[str, str, str]]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, node_id, subject_id, action):
        key = (node_id, _subject_key(subject_id), _action_value(action))
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            decision, expires = entry
            if expires <= self._clock():
                self._drop(key)
                return None
            return decision

    def generation(self, node_id, subject_id):
        with self._lock:
            return self._epoch

    def set(self, node_id, subject_id, action, decision, *, generation=None, ttl_seconds=None):
        ttl = _entry_ttl(self.ttl_seconds, ttl_seconds)
        if ttl <= 0:
            return
        key = (node_id, _subject_key(subject_id), _action_value(action))
        with self._lock:
            if generation is not None and generation != self._epoch:
                logger.debug("Dropped stale decision for node=%s subject=%s", node_id, key[1])
                return
            self._drop(key)
            if len(self._entries) >= self.max_entries:
                self._evict()
            self._entries[key] = (decision, self._clock() + ttl)
            self._by_node.setdefault(key[0], set()).add(key)
            self._by_subject.setdefault(key[1], set()).add(key)

    def invalidate_nodes(self, node_ids):
        with self._lock:
            self._epoch += 1
            for node_id in node_ids:
                for key in self._by_node.pop(node_id, set()):
                    self._drop(key)

    def invalidate_subjects(self, subject_ids):
        with self._lock:
            self._epoch += 1
            for subject_id in subject_ids:
                for key in self._by_subject.pop(_subject_key(subject_id), set()):
                    self._drop(key)

    def clear(self):
        with self._lock:
            self._epoch += 1
            self._entries.clear()
            self._by_node.clear()
            self._by_subject.clear()

    def _evict(self) -> None:
        now = self._clock()
        for key in [k for k, (_, expires) in self._entries.items() if expires <= now]:
            self._drop(key)
        overflow = len(self._entries) - self.max_entries + 1
        for key in list(self._entries)[:max(overflow, 0)]:
            self._drop(key)

    def _drop(self, key: tuple[str, str, str]) -> None:
        self._entries.pop(key, None)
        for index, name in ((self._by_node, key[0]), (self._by_subject, key[1])):
            keys = index.get(name)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del index[name]


class CachedDecision(BaseModel):
    """Stored form of a decision in Redis."""

    decision: AccessDecision
    generation: list[Optional[str]]


class RedisPermissionCache(PermissionCache):
    """Redis-backed cache shared between workers.

    Layout:
    - ``{prefix}:entry:{digest}``: one key per (node, subject, action) holding
      the decision and the generation it was computed under, with its own TTL
    - ``{prefix}:gen:node:{node_id}`` / ``{prefix}:gen:subject:{subject}``:
      random tokens replaced on every invalidation

    Invalidation only replaces generation tokens; entries tagged with an old
    token are never served and expire on their own. Generation keys live for
    twice the entry TTL, so a token can never lapse back to a value an
    unexpired entry still carries.

    A failed read is a cache miss; a failed invalidation raises StoreError
    because a stale grant must never be served.

    Args:
        client: A synchronous ``redis.Redis`` client (``decode_responses=True``).
        ttl_seconds: Entry lifetime.
        prefix: Key prefix.
    """

    def __init__(self, client: Any, ttl_seconds: int = 300, prefix: str = DEFAULT_PREFIX) -> None:
        self._redis = client
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int = 300, prefix: str = DEFAULT_PREFIX) -> "RedisPermissionCache":
        import redis

        return cls(redis.from_url(url, decode_responses=True), ttl_seconds=ttl_seconds, prefix=prefix)

    def _entry_key(self, node_id: str, subject: str, action: str) -> str:
        digest = hashlib.sha1(json.dumps([node_id, subject, action]).encode()).hexdigest()
        return f"{self.prefix}:entry:{digest}"

    def _node_generation(self, node_id: str) -> str:
        return f"{self.prefix}:gen:node:{node_id}"

    def _subject_generation(self, subject: str) -> str:
        return f"{self.prefix}:gen:subject:{subject}"

    def get(self, node_id, subject_id, action):
        subject = _subject_key(subject_id)
        try:
            raw, node_gen, subject_gen = self._redis.mget(
                self._entry_key(node_id, subject, _action_value(action)),
                self._node_generation(node_id),
                self._subject_generation(subject),
            )
        except Exception as e:
            logger.warning("Permission cache read failed for node %s: %s", node_id, e)
            return None
        if not raw:
            return None
        try:
            cached = CachedDecision.model_validate_json(raw)
        except ValueError as e:
            logger.warning("Invalid cached decision for node %s: %s", node_id, e)
            return None
        if cached.generation != [node_gen, subject_gen]:
            return None
        return cached.decision

    def generation(self, node_id, subject_id):
        try:
            return list(
                self._redis.mget(
                    self._node_generation(node_id),
                    self._subject_generation(_subject_key(subject_id)),
                )
            )
        except Exception as e:
            logger.warning("Permission cache generation read failed for node %s: %s", node_id, e)
            return None

    def set(self, node_id, subject_id, action, decision, *, generation=None, ttl_seconds=None):
        ttl = _entry_ttl(self.ttl_seconds, ttl_seconds)
        if ttl <= 0:
            return
        if generation is None:
            generation = self.generation(node_id, subject_id)
            if generation is None:
                return
        subject = _subject_key(subject_id)
        payload = CachedDecision(decision=decision, generation=list(generation)).model_dump_json()
        try:
            self._redis.set(self._entry_key(node_id, subject, _action_value(action)), payload, ex=ttl)
        except Exception as e:
            logger.warning("Permission cache write failed for node %s: %s", node_id, e)

    def invalidate_nodes(self, node_ids):
        self._bump([self._node_generation(n) for n in node_ids], "invalidate_nodes")

    def invalidate_subjects(self, subject_ids):
        self._bump([self._subject_generation(_subject_key(s)) for s in subject_ids], "invalidate_subjects")

    def clear(self):
        try:
            keys = list(self._redis.scan_iter(match=f"{self.prefix}:*"))
            if keys:
                self._redis.delete(*keys)
        except Exception as e:
            logger.error("Permission cache clear failed: %s", e)
            raise StoreError("Permission cache clear failed", operation="clear") from e

    def _bump(self, keys: list[str], operation: str) -> None:
        if not keys:
            return
        try:
            pipe = self._redis.pipeline()
            for key in keys:
                pipe.set(key, uuid.uuid4().hex, ex=self.ttl_seconds * 2)
            pipe.execute()
        except Exception as e:
            logger.error("Permission cache invalidation failed for %d keys: %s", len(keys), e)
            raise StoreError("Permission cache invalidation failed", operation=operation) from e


def build_cache(config: TimelineConfig) -> Optional[PermissionCache]:
    """Create the cache described by ``config``.

    Returns None when caching is disabled. Uses Redis when ``redis_url`` is
    set, otherwise an in-process cache.
    """
    if not config.permission_cache_enabled:
        return None
    ttl = config.permission_cache_ttl_seconds
    if config.redis_url:
        try:
            cache: PermissionCache = RedisPermissionCache.from_url(config.redis_url, ttl_seconds=ttl)
        except ImportError as e:
            raise ConfigurationError("redis_url is set but the redis package is not installed") from e
        logger.info("Permission cache: redis (ttl=%ds)", ttl)
        return cache
    logger.info("Permission cache: in-memory (ttl=%ds, max %d entries)", ttl, config.permission_cache_max_entries)
    return MemoryPermissionCache(ttl_seconds=ttl, max_entries=config.permission_cache_max_entries)


__all__ = [
    "ANONYMOUS",
    "DEFAULT_PREFIX",
    "CachedDecision",
    "MemoryPermissionCache",
    "PermissionCache",
    "RedisPermissionCache",
    "build_cache",
]
