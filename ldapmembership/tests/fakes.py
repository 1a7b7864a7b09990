"""
An in-memory directory for tests.

:py:class:`FakeDirectory` implements the
:py:class:`~ldapmembership.client.DirectoryClient` contract against a dict of
entries: paged results with cookies, the three search scopes, filters
evaluated with ``ldap_filter``, and Active Directory style range chunking of
large attributes.  Every page request is recorded in ``calls``.
"""

import threading
import time
from collections.abc import Callable
from typing import Any

from django.utils.datastructures import CaseInsensitiveMapping
from ldap_filter import Filter

from ldapmembership.client import DirectoryClient
from ldapmembership.config import MembershipConfig
from ldapmembership.exceptions import DirectoryError
from ldapmembership.query import DirectoryEntry, Scope, SearchPage, SearchQuery


def make_config(**kwargs: Any) -> MembershipConfig:
    options: dict[str, Any] = {
        "url": "ldap://ldap.example.com",
        "basedn": "o=x",
        "page_size": 2,
    }
    options.update(kwargs)
    return MembershipConfig(**options)


def _normalize(dn: str) -> str:
    return ",".join(part.strip() for part in dn.split(",")).lower()


class FakeDirectory(DirectoryClient):
    """
    A :py:class:`DirectoryClient` over a dict of entries.

    Keyword Args:
        config: the configuration; :py:func:`make_config` if not given
        range_size: split attributes with more values than this into
            ``;range=`` slices
        star_last_range: end the last slice with ``*`` (as Active Directory
            does) rather than its numeric upper bound
        fail: called with ``(query, cookie)`` before every page; when it
            returns ``True`` the page fails with :py:class:`DirectoryError`
        delay: seconds to sleep in every page request

    """

    def __init__(
        self,
        config: MembershipConfig | None = None,
        range_size: int | None = None,
        star_last_range: bool = True,
        fail: Callable[[SearchQuery, bytes | None], bool] | None = None,
        delay: float = 0.0,
    ) -> None:
        super().__init__(config or make_config())
        self.range_size = range_size
        self.star_last_range = star_last_range
        self.fail = fail
        self.delay = delay
        self.entries: dict[str, tuple[str, dict[str, list[str]]]] = {}
        self.calls: list[tuple[SearchQuery, int, bytes | None]] = []
        self.abandoned: list[tuple[SearchQuery, SearchPage]] = []
        self.fail_abandon = False
        self._lock = threading.Lock()

    def add(self, dn: str, **attributes: Any) -> None:
        """
        Add an entry.  Attribute values may be a string or a list of strings.
        """
        attrs = {
            name: list(value) if isinstance(value, (list, tuple)) else [value]
            for name, value in attributes.items()
        }
        self.entries[_normalize(dn)] = (dn, attrs)

    def add_group(self, dn: str, members: list[str], object_class: str = "groupOfNames") -> None:
        self.add(dn, objectClass=["top", object_class], cn=dn.split(",")[0].split("=")[1], member=members)

    def add_user(self, dn: str, uid: str | None = None) -> None:
        if uid is None:
            self.add(dn, objectClass=["top", "person"])
        else:
            self.add(dn, objectClass=["top", "person"], cn=uid)

    def searches_for(self, base: str) -> list[SearchQuery]:
        """
        Return the page requests made with search base ``base``.
        """
        return [query for query, _, _ in self.calls if _normalize(query.base) == _normalize(base)]

    # -----------------------
    # Search machinery
    # -----------------------

    @staticmethod
    def _in_scope(dn: str, base: str, scope: Scope) -> bool:
        if scope == Scope.BASE:
            return dn == base
        if scope == Scope.ONE_LEVEL:
            return "," in dn and dn.split(",", 1)[1] == base
        return dn == base or dn.endswith("," + base)

    def _slice(self, name: str, values: list[str], lower: int) -> dict[str, list[str]]:
        if lower >= len(values):
            return {}
        size = self.range_size or len(values)
        upper = lower + size - 1
        if upper >= len(values) - 1:
            last = "*" if self.star_last_range else str(len(values) - 1)
            return {f"{name};range={lower}-{last}": values[lower:]}
        return {f"{name};range={lower}-{upper}": values[lower : upper + 1]}

    def _project(self, attrs: dict[str, list[str]], wanted: tuple[str, ...]) -> dict[str, list[str]]:
        if "1.1" in wanted:
            return {}
        data = CaseInsensitiveMapping(attrs)
        names = wanted or tuple(attrs)
        projected: dict[str, list[str]] = {}
        for requested in names:
            if ";range=" in requested.lower():
                name, option = requested.split(";", 1)
                lower = int(option.split("=", 1)[1].split("-", 1)[0])
                projected.update(self._slice(name, list(data.get(name, [])), lower))
                continue
            if requested not in data:
                continue
            values = list(data[requested])
            if self.range_size and len(values) > self.range_size:
                projected[requested] = []
                projected.update(self._slice(requested, values, 0))
            else:
                projected[requested] = values
        return projected

    def _matches(self, query: SearchQuery) -> list[DirectoryEntry]:
        base = _normalize(query.base)
        search_filter = Filter.parse(query.filterstr)
        results = []
        for key, (dn, attrs) in self.entries.items():
            if not self._in_scope(key, base, query.scope):
                continue
            if not search_filter.match(CaseInsensitiveMapping(attrs)):
                continue
            results.append(DirectoryEntry(dn, self._project(attrs, query.attribute_names)))
        return results

    def fetch_page(
        self, query: SearchQuery, page_size: int, cookie: bytes | None = None
    ) -> SearchPage:
        with self._lock:
            self.calls.append((query, page_size, cookie))
            handle = len(self.calls)
        if self.delay:
            time.sleep(self.delay)
        if self.fail is not None and self.fail(query, cookie):
            msg = f"Injected failure for base={query.base}"
            raise DirectoryError(msg)
        matches = self._matches(query)
        offset = int(cookie) if cookie else 0
        page = matches[offset : offset + page_size]
        next_cookie = None
        if offset + page_size < len(matches):
            next_cookie = str(offset + page_size).encode()
        return SearchPage(page, next_cookie, handle)

    def abandon(self, query: SearchQuery, page: SearchPage) -> None:
        if self.fail_abandon:
            msg = "Injected abandon failure"
            raise DirectoryError(msg)
        self.abandoned.append((query, page))
