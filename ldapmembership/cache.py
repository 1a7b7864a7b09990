"""
Short-lived cache of resolved group memberships.

Resolving a large group with nested subgroups can take hundreds of searches,
so :py:class:`MembershipCache` keeps each resolved
:py:data:`~ldapmembership.typing.MembershipMap` for a while.  Concurrent
requests for the same group on a cold cache wait for a single resolution
instead of all hitting the directory.

Where the records live is up to a :py:class:`TTLStore`:
:py:class:`LocMemTTLStore` keeps them in process memory,
:py:class:`DjangoCacheTTLStore` in one of the project's Django caches.
"""

import datetime
import hashlib
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

import pytz
from django.core.cache import caches

from .exceptions import CachePopulationFailed, LdapMembershipError
from .typing import MembershipMap

logger = logging.getLogger(__name__)


def utcnow() -> datetime.datetime:
    """
    Return the current time as an aware UTC datetime.
    """
    return datetime.datetime.now(pytz.utc)


class CachedMembership:
    """
    The resolved members of one group, and when they stop being valid.
    """

    __slots__ = ("expires_at", "group_dn", "members")

    def __init__(
        self, group_dn: str, members: MembershipMap, expires_at: datetime.datetime
    ) -> None:
        self.group_dn = group_dn
        self.members = members
        self.expires_at = expires_at

    def __getstate__(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in self.__slots__}

    def __setstate__(self, state: dict[str, Any]) -> None:
        for name, value in state.items():
            setattr(self, name, value)

    def is_expired(self, now: datetime.datetime) -> bool:
        return now >= self.expires_at

    def __repr__(self) -> str:
        return (
            f"<CachedMembership: {self.group_dn} members={len(self.members)} "
            f"expires_at={self.expires_at.isoformat()}>"
        )


class TTLStore(ABC):
    """
    Key/value storage for :py:class:`CachedMembership` records.  Expiry is
    decided by :py:class:`MembershipCache`; ``timeout`` only lets a store drop
    records it will never be asked for again.
    """

    @abstractmethod
    def get(self, key: str) -> CachedMembership | None:
        """
        Return the record stored under ``key``, or ``None``.
        """

    @abstractmethod
    def set(self, key: str, record: CachedMembership, timeout: int) -> None:
        """
        Store ``record`` under ``key`` for at least ``timeout`` seconds.
        """

    @abstractmethod
    def delete(self, key: str) -> None:
        """
        Forget the record stored under ``key``, if any.
        """

    @abstractmethod
    def invalidate_all(self) -> None:
        """
        Forget every record.
        """


class LocMemTTLStore(TTLStore):
    """
    A :py:class:`TTLStore` in process memory.  This is the default.
    """

    def __init__(self) -> None:
        self._records: dict[str, CachedMembership] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> CachedMembership | None:
        with self._lock:
            return self._records.get(key)

    def set(self, key: str, record: CachedMembership, timeout: int) -> None:  # noqa: ARG002
        with self._lock:
            self._records[key] = record

    def delete(self, key: str) -> None:
        with self._lock:
            self._records.pop(key, None)

    def invalidate_all(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        return len(self._records)


class DjangoCacheTTLStore(TTLStore):
    """
    A :py:class:`TTLStore` on top of a Django cache from ``settings.CACHES``,
    so that several processes can share resolved memberships.

    Django caches cannot list their keys, so :py:meth:`invalidate_all` works by
    moving every key to a new generation; the old records expire on their own.

    Args:
        alias: the ``settings.CACHES`` alias to use
        prefix: prefix for every key we write

    """

    def __init__(self, alias: str = "default", prefix: str = "ldapmembership") -> None:
        self.alias = alias
        self.prefix = prefix

    @property
    def cache(self) -> Any:
        return caches[self.alias]

    @property
    def generation_key(self) -> str:
        return f"{self.prefix}:generation"

    def generation(self) -> str:
        generation = self.cache.get(self.generation_key)
        if generation is None:
            generation = uuid.uuid4().hex
            # add() so that a concurrent writer's generation wins
            if not self.cache.add(self.generation_key, generation, timeout=None):
                generation = self.cache.get(self.generation_key, generation)
        return generation

    def make_key(self, key: str) -> str:
        # Memcached refuses keys with spaces or longer than 250 characters,
        # and DNs routinely have both.
        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()  # noqa: S324
        return f"{self.prefix}:{self.generation()}:{digest}"

    def get(self, key: str) -> CachedMembership | None:
        return self.cache.get(self.make_key(key))

    def set(self, key: str, record: CachedMembership, timeout: int) -> None:
        self.cache.set(self.make_key(key), record, timeout=timeout)

    def delete(self, key: str) -> None:
        self.cache.delete(self.make_key(key))

    def invalidate_all(self) -> None:
        self.cache.set(self.generation_key, uuid.uuid4().hex, timeout=None)


class _KeyLock:
    """
    A lock for one cache key, with a count of the threads holding or waiting
    for it.
    """

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class MembershipCache:
    """
    Resolved memberships of groups on one directory.

    Args:
        loader: called with a group DN on a cache miss; returns ``(is_group,
            member_map)`` from a full top level resolution
        cache_key: identity of the directory (and unique id convention) whose
            memberships we hold, e.g. ``MembershipConfig.cache_key``
        ttl: lifetime of a record in seconds

    Keyword Args:
        store: where records are kept; a new :py:class:`LocMemTTLStore` if not
            given
        clock: returns the current aware datetime; :py:func:`utcnow` if not
            given

    """

    def __init__(
        self,
        loader: Callable[[str], tuple[bool, MembershipMap]],
        cache_key: str,
        ttl: int,
        store: TTLStore | None = None,
        clock: Callable[[], datetime.datetime] | None = None,
    ) -> None:
        if ttl <= 0:
            msg = f"ttl must be positive, got {ttl}"
            raise ValueError(msg)
        self.loader = loader
        self.cache_key = cache_key
        self.ttl = ttl
        self.store: TTLStore = store if store is not None else LocMemTTLStore()
        self.clock = clock or utcnow
        # Only keys with a thread holding or waiting for their lock are here
        self._locks: dict[str, _KeyLock] = {}
        self._locks_guard = threading.Lock()

    def _store_key(self, group_dn: str) -> str:
        return f"{self.cache_key}:{group_dn.strip().lower()}"

    @contextmanager
    def _locked(self, key: str) -> Iterator[None]:
        with self._locks_guard:
            key_lock = self._locks.get(key)
            if key_lock is None:
                key_lock = self._locks[key] = _KeyLock()
            key_lock.users += 1
        try:
            with key_lock.lock:
                yield
        finally:
            with self._locks_guard:
                key_lock.users -= 1
                if not key_lock.users:
                    del self._locks[key]

    def _fresh_members(self, key: str) -> MembershipMap | None:
        record = self.store.get(key)
        if record is None or record.is_expired(self.clock()):
            return None
        return dict(record.members)

    def lookup(self, group_dn: str) -> MembershipMap | None:
        """
        Return a copy of the cached members of ``group_dn``, or ``None`` if
        nothing unexpired is cached.  Never touches the directory and never
        changes the store.
        """
        return self._fresh_members(self._store_key(group_dn))

    def get_members(self, group_dn: str) -> MembershipMap:
        """
        Return the members of ``group_dn``, resolving them if they are not
        cached.

        Expired records are only removed, and new records only written, while
        holding the lock for ``group_dn``.

        Raises:
            CachePopulationFailed: resolving the group failed; nothing was
                cached

        Returns:
            A fresh copy of the member map; the caller may change it.

        """
        members = self.lookup(group_dn)
        if members is not None:
            logger.debug("ldapmembership.cache.hit group=%s", group_dn)
            return members
        key = self._store_key(group_dn)
        with self._locked(key):
            # Someone may have populated it while we waited for the lock
            record = self.store.get(key)
            if record is not None:
                if not record.is_expired(self.clock()):
                    logger.debug("ldapmembership.cache.hit-after-wait group=%s", group_dn)
                    return dict(record.members)
                logger.debug("ldapmembership.cache.expired key=%s", key)
                self.store.delete(key)
            logger.debug("ldapmembership.cache.miss group=%s", group_dn)
            try:
                is_group, members = self.loader(group_dn)
            except LdapMembershipError as e:
                logger.warning(
                    "ldapmembership.cache.populate.failed group=%s error=%s", group_dn, e
                )
                msg = f"Could not resolve the members of {group_dn}: {e}"
                raise CachePopulationFailed(msg) from e
            if not is_group and not members:
                logger.debug("ldapmembership.cache.not-stored group=%s", group_dn)
                return {}
            record = CachedMembership(
                group_dn,
                dict(members),
                self.clock() + datetime.timedelta(seconds=self.ttl),
            )
            self.store.set(key, record, self.ttl)
            logger.debug(
                "ldapmembership.cache.stored group=%s members=%d expires_at=%s",
                group_dn,
                len(members),
                record.expires_at.isoformat(),
            )
            return dict(members)

    def invalidate(self, group_dn: str) -> None:
        """
        Forget the cached members of ``group_dn``.
        """
        self.store.delete(self._store_key(group_dn))

    def invalidate_all(self) -> None:
        """
        Forget every cached membership.
        """
        self.store.invalidate_all()
        logger.info("ldapmembership.cache.invalidated key=%s", self.cache_key)
