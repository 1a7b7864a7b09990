"""
Paged search cursor.

A :py:class:`PagedSearchCursor` walks one logical search page by page,
following the opaque cookie the server hands back with every page of a
simple paged results search (RFC 2696).  Use it as a context manager so that
the server side search context is released on every exit path::

    with client.search_paged(query, page_size=500) as cursor:
        for entry in cursor:
            ...
"""

import logging
from collections import deque
from contextlib import ExitStack
from typing import TYPE_CHECKING, Optional

from .exceptions import DirectoryError, DirectorySearchFailed, ExhaustedCursor
from .query import DirectoryEntry, SearchPage, SearchQuery

if TYPE_CHECKING:
    from .client import DirectoryClient

logger = logging.getLogger(__name__)


class PagedSearchCursor:
    """
    A stateful cursor over one paged search.

    The first page is fetched as soon as the cursor is built.  Further pages
    are fetched lazily from :py:meth:`has_more` whenever the entries of the
    current page have all been consumed and the last page carried a cookie.

    The cursor is not thread safe; it belongs to whoever created it.

    Args:
        client: the directory client to fetch pages from
        query: the search to run
        page_size: number of entries to request per page

    Raises:
        ValueError: ``page_size`` is not positive
        DirectorySearchFailed: connecting or fetching the first page failed

    """

    def __init__(
        self, client: "DirectoryClient", query: SearchQuery, page_size: int
    ) -> None:
        if page_size <= 0:
            msg = f"page_size must be a positive integer, got {page_size}"
            raise ValueError(msg)
        self.client = client
        self.query = query
        self.page_size = page_size
        #: The cookie returned with the last page, ``None`` before the first page
        self.cookie: bytes | None = None
        #: ``True`` once the server has told us there are no more pages
        self.exhausted: bool = False
        #: ``True`` once a page fetch failed; the cursor must then be closed
        self.failed: bool = False
        self.closed: bool = False
        self.pages_fetched: int = 0
        self.current_page_entries: deque[DirectoryEntry] = deque()
        self._last_page: SearchPage | None = None
        self._returned_any = False
        # Hold the client's connection open for the life of the cursor: paging
        # cookies are only valid on the connection that produced them.
        self._resources = ExitStack()
        try:
            self._resources.enter_context(client.connected())
        except DirectoryError as e:
            self.failed = True
            self.closed = True
            logger.debug(
                "ldapmembership.paging.connect.failed base=%s filter=%s error=%s",
                query.base,
                query.filterstr,
                e,
            )
            raise DirectorySearchFailed(query, 0) from e
        try:
            self._fetch_page()
        except BaseException:
            self._resources.close()
            self.closed = True
            raise

    def _fetch_page(self) -> None:
        page_index = self.pages_fetched
        try:
            page = self.client.fetch_page(self.query, self.page_size, self.cookie)
        except DirectoryError as e:
            self.failed = True
            logger.debug(
                "ldapmembership.paging.fetch.failed base=%s filter=%s page=%d error=%s",
                self.query.base,
                self.query.filterstr,
                page_index,
                e,
            )
            raise DirectorySearchFailed(self.query, page_index) from e
        self.pages_fetched += 1
        self._last_page = page
        self.current_page_entries.extend(page.entries)
        self.cookie = page.cookie or None
        if not page.cookie:
            self.exhausted = True
        logger.debug(
            "ldapmembership.paging.fetch base=%s filter=%s page=%d entries=%d more=%s",
            self.query.base,
            self.query.filterstr,
            page_index,
            len(page.entries),
            not self.exhausted,
        )

    def _check_usable(self) -> None:
        if self.closed:
            msg = "Cannot read from a closed cursor"
            raise ExhaustedCursor(msg)
        if self.failed:
            msg = "Cannot read from a cursor whose search failed"
            raise ExhaustedCursor(msg)

    def has_more(self) -> bool:
        """
        Return ``True`` if :py:meth:`next_entry` has an entry to return.

        This may fetch further pages from the server.  Pages that come back
        empty but still carry a cookie are skipped.

        Raises:
            DirectorySearchFailed: fetching the next page failed

        """
        if self.closed or self.failed:
            return False
        while not self.current_page_entries and not self.exhausted:
            self._fetch_page()
        return bool(self.current_page_entries)

    def next_entry(self) -> DirectoryEntry | None:
        """
        Return the next entry of the search.

        Some servers announce more results before the first entry is read even
        when the result set is empty.  So on the first page only, running out
        of entries returns ``None`` instead of raising.

        Raises:
            ExhaustedCursor: nothing is left to return
            DirectorySearchFailed: fetching the next page failed

        Returns:
            The next entry, or ``None`` for an empty result on the first page.

        """
        self._check_usable()
        if not self.has_more():
            if self.pages_fetched <= 1 and not self._returned_any:
                return None
            msg = (
                f"No entries left in search base={self.query.base!r} "
                f"filter={self.query.filterstr!r}"
            )
            raise ExhaustedCursor(msg)
        self._returned_any = True
        return self.current_page_entries.popleft()

    def close(self) -> None:
        """
        Release the search.  If the server still holds state for it (more
        pages, or entries we never read), abandon the operation.  Safe to call
        more than once.
        """
        if self.closed:
            return
        self.closed = True
        try:
            if self._last_page is not None and (
                not self.exhausted or self.current_page_entries
            ):
                try:
                    self.client.abandon(self.query, self._last_page)
                except DirectoryError as e:
                    logger.warning(
                        "ldapmembership.paging.abandon.failed base=%s filter=%s error=%s",
                        self.query.base,
                        self.query.filterstr,
                        e,
                    )
                else:
                    logger.debug(
                        "ldapmembership.paging.abandon base=%s filter=%s",
                        self.query.base,
                        self.query.filterstr,
                    )
            self.current_page_entries.clear()
        finally:
            self._resources.close()

    def __iter__(self) -> "PagedSearchCursor":
        return self

    def __next__(self) -> DirectoryEntry:
        if self.closed or self.failed or not self.has_more():
            raise StopIteration
        self._returned_any = True
        return self.current_page_entries.popleft()

    def __enter__(self) -> "PagedSearchCursor":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> Optional[bool]:
        self.close()
        return None

    def __repr__(self) -> str:
        return (
            f"<PagedSearchCursor: base={self.query.base} filter={self.query.filterstr} "
            f"pages={self.pages_fetched} exhausted={self.exhausted}>"
        )
