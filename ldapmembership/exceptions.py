"""
Exceptions raised while talking to a directory and resolving memberships.

Only :py:class:`MembershipResolutionError` (and its subclass
:py:class:`CachePopulationFailed`) ever reach callers of
:py:class:`~ldapmembership.membership.MembershipService`.  Everything else is
recovered from, or logged, inside the traversal.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .query import SearchQuery


class LdapMembershipError(Exception):
    """
    Base class for every error raised by this package.
    """


class DirectoryError(LdapMembershipError):
    """
    A transport or protocol level failure reported by a directory client.

    Client adapters translate their library's exceptions into this class so
    that the cursor, resolver and cache never see python-ldap exceptions.
    """


class DirectoryTimeout(DirectoryError):
    """
    The directory did not answer within the configured operation timeout.
    """


class DirectorySearchFailed(DirectoryError):
    """
    A search failed while fetching one of its pages.

    Args:
        query: the search that failed
        page_index: zero based index of the page being fetched

    """

    def __init__(self, query: "SearchQuery", page_index: int, msg: str | None = None):
        self.query = query
        self.page_index = page_index
        if msg is None:
            msg = (
                f"LDAP search failed on page {page_index}: base={query.base!r} "
                f"filter={query.filter!r}"
            )
        super().__init__(msg)


class ExhaustedCursor(LdapMembershipError):
    """
    :py:meth:`PagedSearchCursor.next_entry` was called with nothing left to
    return.  This is always a programming error.
    """


class MalformedRange(LdapMembershipError, ValueError):
    """
    An attribute name carried a ``range=`` subtype we could not parse.

    Args:
        attribute_name: the attribute name as returned by the server

    """

    def __init__(self, attribute_name: str):
        self.attribute_name = attribute_name
        super().__init__(f"Malformed range subtype in attribute name {attribute_name!r}")


class InvalidFilterSyntax(LdapMembershipError, ValueError):
    """
    A string was expected to be an LDAP search filter but did not parse.
    """


class MembershipResolutionError(LdapMembershipError):
    """
    Resolving the members of a top level identifier failed outright.
    """


class CachePopulationFailed(MembershipResolutionError):
    """
    The full resolution needed to populate the membership cache failed.  No
    entry was stored.
    """
