"""
Value objects exchanged with a directory client.

:py:class:`SearchQuery` describes one logical search, :py:class:`DirectoryEntry`
one entry returned by it and :py:class:`SearchPage` one page of a paged
search.
"""

import enum
from collections.abc import Iterable, Iterator
from typing import Any, NamedTuple

from django.utils.datastructures import CaseInsensitiveMapping

from .typing import AttributeMap, AttributeValue


class Scope(enum.IntEnum):
    """
    Breadth of a search.  The values match python-ldap's ``SCOPE_*`` constants.
    """

    BASE = 0
    ONE_LEVEL = 1
    SUBTREE = 2


class SearchQuery(NamedTuple):
    """
    One logical directory search.

    A ``filter`` of ``None`` means "match every entry".
    """

    base: str
    scope: Scope = Scope.SUBTREE
    filter: str | None = None
    attribute_names: tuple[str, ...] = ()
    types_only: bool = False

    @property
    def filterstr(self) -> str:
        """
        The filter to send on the wire.
        """
        return self.filter or "(objectClass=*)"


class DirectoryEntry:
    """
    An entry returned by a search.  Immutable once built.

    Attribute names are matched case-insensitively, as LDAP does, but keep the
    spelling the server used (including any ``;range=`` subtype).

    Args:
        dn: the distinguished name of the entry
        attributes: attribute name -> list of values (``str`` or ``bytes``)

    """

    __slots__ = ("_attributes", "_dn")

    def __init__(self, dn: str, attributes: AttributeMap | None = None) -> None:
        self._dn = dn
        self._attributes = CaseInsensitiveMapping(
            {name: tuple(values) for name, values in (attributes or {}).items()}
        )

    @property
    def dn(self) -> str:
        return self._dn

    @property
    def attributes(self) -> CaseInsensitiveMapping:
        return self._attributes

    def get_values(self, name: str) -> tuple[AttributeValue, ...]:
        """
        Return every value of attribute ``name``, or an empty tuple.
        """
        return self._attributes.get(name, ())

    def get_first(self, name: str) -> AttributeValue | None:
        values = self.get_values(name)
        return values[0] if values else None

    def has_value(self, name: str, candidates: Iterable[str]) -> bool:
        """
        Return ``True`` if any text value of ``name`` case-insensitively
        matches one of ``candidates``.  ``candidates`` must already be
        lowercase.
        """
        wanted = set(candidates)
        return any(
            isinstance(value, str) and value.lower() in wanted
            for value in self.get_values(name)
        )

    def __iter__(self) -> Iterator[str]:
        return iter(self._attributes)

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, DirectoryEntry):
            return NotImplemented
        return self._dn == other._dn and dict(self._attributes) == dict(
            other._attributes
        )

    def __hash__(self) -> int:
        return hash(self._dn)

    def __repr__(self) -> str:
        return f"<DirectoryEntry: {self._dn}>"


class SearchPage(NamedTuple):
    """
    One page of a paged search as returned by
    :py:meth:`ldapmembership.client.DirectoryClient.fetch_page`.

    ``cookie`` is the opaque paged-results cookie the server handed back; an
    empty or missing cookie means this was the last page.  ``handle`` is
    whatever the client needs to abandon the operation (the python-ldap
    message id for the production client).
    """

    entries: list[DirectoryEntry]
    cookie: bytes | None = None
    handle: Any = None
