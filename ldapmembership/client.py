"""
Directory client capability and its python-ldap adapter.

Everything above this module (the cursor, the range reassembler, the group
resolver and the cache) talks to the directory only through
:py:class:`DirectoryClient`.  :py:class:`PythonLdapDirectoryClient` is the
production implementation.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager, suppress
from functools import wraps
from pathlib import Path
from typing import Any

from ldap.controls import SimplePagedResultsControl

from ldapmembership import ldap

from .capabilities import ServerCapabilities
from .config import MembershipConfig
from .exceptions import DirectoryError, DirectoryTimeout
from .paging import PagedSearchCursor
from .query import DirectoryEntry, Scope, SearchPage, SearchQuery
from .typing import AttributeMap, LDAPData

logger = logging.getLogger(__name__)


class DirectoryClient(ABC):
    """
    The directory search capability consumed by the rest of the package.

    Subclasses implement :py:meth:`fetch_page` and :py:meth:`abandon`; paged
    cursors and full searches are built on top of those.

    Args:
        config: the membership configuration for this directory

    """

    def __init__(self, config: MembershipConfig) -> None:
        self.config = config

    @property
    def endpoint(self) -> str:
        """
        ``host:port`` of the directory this client talks to.
        """
        return self.config.endpoint

    @abstractmethod
    def fetch_page(
        self, query: SearchQuery, page_size: int, cookie: bytes | None = None
    ) -> SearchPage:
        """
        Run one page of ``query``.

        Args:
            query: the search to run
            page_size: number of entries to ask for
            cookie: the cookie returned with the previous page, ``None`` for
                the first page

        Raises:
            DirectoryTimeout: the server did not answer in time
            DirectoryError: any other transport or protocol failure

        Returns:
            The page.  Its ``cookie`` is empty when there are no more pages.

        """

    @abstractmethod
    def abandon(self, query: SearchQuery, page: SearchPage) -> None:
        """
        Tell the server we are not going to read the rest of ``query``, whose
        most recent page was ``page``.

        Raises:
            DirectoryError: the server could not be told

        """

    @contextmanager
    def connected(self) -> Iterator["DirectoryClient"]:
        """
        Context manager that keeps one connection open for its duration, so
        that a run of searches (and every page of a paged search) happen on
        the same connection.  Nested uses share the outermost connection.
        """
        yield self

    def search_paged(
        self, query: SearchQuery, page_size: int | None = None
    ) -> PagedSearchCursor:
        """
        Start a paged search and return its cursor.

        Args:
            query: the search to run

        Keyword Args:
            page_size: entries per page; defaults to ``config.page_size``

        Raises:
            ValueError: ``page_size`` is not positive
            DirectorySearchFailed: the first page could not be fetched

        """
        if page_size is None:
            page_size = self.config.page_size
        return PagedSearchCursor(self, query, page_size)

    def search(self, query: SearchQuery) -> list[DirectoryEntry]:
        """
        Run ``query`` to completion and return every entry it matched, in
        server order.

        Raises:
            DirectorySearchFailed: one of the pages could not be fetched

        """
        with self.search_paged(query) as cursor:
            return list(cursor)


def atomic(func: Callable) -> Callable:
    """
    Decorator for :py:class:`PythonLdapDirectoryClient` methods that need to
    talk to the LDAP server.  If the current thread has no connection yet, one
    is opened for the call and closed afterwards.
    """

    @wraps(func)
    def wrapper(self, *args, **kwargs) -> Any:
        if self.has_connection():
            # Ensure we're not currently in a wrapped function
            return func(self, *args, **kwargs)
        self.connect()
        try:
            retval = func(self, *args, **kwargs)
        finally:
            # We do this in a finally: branch so that the ldap
            # connection gets cleaned up no matter what happens in `func()`.
            self.disconnect()
        return retval

    return wrapper


class PythonLdapDirectoryClient(DirectoryClient):
    """
    :py:class:`DirectoryClient` on top of python-ldap.

    This class is thread-safe -- it will use a different LDAP connection for
    each thread, because python-ldap connection objects must not be shared
    between threads.

    Args:
        config: the membership configuration for this directory

    Keyword Args:
        is_binary: predicate deciding whether values of an attribute stay
            ``bytes``; defaults to ``config.is_binary``
        capabilities: server capability detector; one is built if not given

    """

    def __init__(
        self,
        config: MembershipConfig,
        is_binary: Callable[[str], bool] | None = None,
        capabilities: ServerCapabilities | None = None,
    ) -> None:
        super().__init__(config)
        self.is_binary = is_binary or config.is_binary
        self.capabilities = capabilities or ServerCapabilities(
            default_page_size=config.page_size
        )
        # keys in this dictionary get manipulated by .connect() and .disconnect()
        self._ldap_objects: dict[threading.Thread, Any] = {}
        # nesting depth of connected() per thread
        self._depth: dict[threading.Thread, int] = {}

    # -----------------------
    # Connection handling
    # -----------------------

    def has_connection(self) -> bool:
        """
        Check if the current thread has an active LDAP connection.
        """
        return threading.current_thread() in self._ldap_objects

    @property
    def connection(self) -> Any:
        """
        Get the current thread's LDAP connection object.
        """
        return self._ldap_objects[threading.current_thread()]

    def _configure(self, ldap_object: Any) -> None:
        """
        Set the connection options of a new LDAP connection object.

        Raises:
            OSError: a configured TLS certificate or key file is missing
            ldap.LDAPError: an option was refused

        """
        config = self.config
        if config.follow_referrals:
            ldap_object.set_option(ldap.OPT_REFERRALS, 1)
        else:
            ldap_object.set_option(ldap.OPT_REFERRALS, 0)
        ldap_object.set_option(ldap.OPT_NETWORK_TIMEOUT, config.timeout)
        if config.sizelimit:
            ldap_object.set_option(ldap.OPT_SIZELIMIT, config.sizelimit)
        if config.tls_verify == "always":
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_DEMAND)
        else:
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_NEVER)
        for path, option, label in (
            (config.tls_ca_certfile, ldap.OPT_X_TLS_CACERTFILE, "CA Certificate file"),
            (config.tls_certfile, ldap.OPT_X_TLS_CERTFILE, "TLS Certificate file"),
            (config.tls_keyfile, ldap.OPT_X_TLS_KEYFILE, "TLS Key file"),
        ):
            if not path:
                continue
            if not Path(path).exists():
                msg = f"{label} does not exist: {path}"
                raise OSError(msg)
            if not Path(path).is_file():
                msg = f"{label} is not a file: {path}"
                raise OSError(msg)
            ldap_object.set_option(option, path)
        ldap_object.set_option(ldap.OPT_X_TLS_NEWCTX, 0)

    def _connect(self) -> Any:
        """
        Create, configure and bind a new LDAP connection object.

        Raises:
            DirectoryError: the connection could not be set up, the server
                could not be reached or it refused the bind

        Returns:
            A bound ``LDAPObject``.

        """
        config = self.config
        try:
            ldap_object = ldap.initialize(config.url)
            self._configure(ldap_object)
        except (ldap.LDAPError, OSError) as e:
            logger.warning(
                "ldapmembership.client.setup.failed endpoint=%s error=%s",
                self.endpoint,
                e,
            )
            msg = f"Could not set up a connection to {self.endpoint}: {e}"
            raise DirectoryError(msg) from e
        try:
            if config.use_starttls:
                ldap_object.start_tls_s()
            ldap_object.simple_bind_s(config.user, config.password)
        except ldap.LDAPError as e:
            logger.warning(
                "ldapmembership.client.bind.failed endpoint=%s user=%s error=%s",
                self.endpoint,
                config.user,
                e,
            )
            msg = f"Could not bind to {self.endpoint}: {e}"
            raise DirectoryError(msg) from e
        logger.debug("ldapmembership.client.connect endpoint=%s", self.endpoint)
        return ldap_object

    def connect(self) -> None:
        """
        Set the per-thread LDAP connection object.  Used by the
        :py:func:`atomic` decorator and :py:meth:`connected`.
        """
        self._ldap_objects[threading.current_thread()] = self._connect()

    def disconnect(self) -> None:
        """
        Unbind and forget the current thread's LDAP connection.
        """
        ldap_object = self._ldap_objects.pop(threading.current_thread())
        with suppress(ldap.LDAPError):
            ldap_object.unbind_s()

    @contextmanager
    def connected(self) -> Iterator["PythonLdapDirectoryClient"]:
        thread = threading.current_thread()
        if not self.has_connection():
            self.connect()
        self._depth[thread] = self._depth.get(thread, 0) + 1
        try:
            yield self
        finally:
            self._depth[thread] -= 1
            if not self._depth[thread]:
                del self._depth[thread]
                self.disconnect()

    # -----------------------
    # Searching
    # -----------------------

    def _get_pctrls(self, serverctrls: list[Any] | None) -> list[Any]:
        """
        Lookup the paged results controls among the returned controls.  These
        carry the cookie we need to ask for the next page.
        """
        return [
            c
            for c in serverctrls or []
            if c.controlType == SimplePagedResultsControl.controlType
        ]

    def _use_paging(self, query: SearchQuery) -> bool:
        if query.scope == Scope.BASE:
            return False
        if self.config.paged_search is not None:
            return self.config.paged_search
        return self.capabilities.supports_paging(self.connection, self.endpoint)

    def _decode(self, attrs: dict[str, list[bytes]]) -> AttributeMap:
        decoded: AttributeMap = {}
        for name, values in attrs.items():
            if self.is_binary(name):
                decoded[name] = list(values)
                continue
            decoded[name] = []
            for value in values:
                try:
                    decoded[name].append(value.decode("utf-8"))
                except UnicodeDecodeError:
                    decoded[name].append(value)
        return decoded

    def _to_entries(self, rdata: list[LDAPData]) -> list[DirectoryEntry]:
        # AD returns an rdata at the end that is a reference that we
        # want to ignore
        return [
            DirectoryEntry(dn, self._decode(attrs))
            for dn, attrs in rdata
            if isinstance(attrs, dict)
        ]

    @atomic
    def fetch_page(
        self, query: SearchQuery, page_size: int, cookie: bytes | None = None
    ) -> SearchPage:
        controls = []
        msgid = None
        try:
            # Reading the Root DSE here can fail just like the search itself
            if self._use_paging(query):
                size = min(page_size, self.capabilities.page_size_limit(self.connection))
                controls.append(
                    SimplePagedResultsControl(True, size=size, cookie=cookie or b"")  # noqa: FBT003
                )
            msgid = self.connection.search_ext(
                query.base,
                int(query.scope),
                query.filterstr,
                list(query.attribute_names) or None,
                attrsonly=int(query.types_only),
                serverctrls=controls or None,
                timeout=self.config.timeout,
                sizelimit=self.config.sizelimit,
            )
            _, rdata, _, serverctrls = self.connection.result3(
                msgid, timeout=self.config.timeout
            )
        except ldap.NO_SUCH_OBJECT:
            # The search base does not exist: nothing matched.
            return SearchPage([], None, msgid)
        except (ldap.TIMEOUT, ldap.TIMELIMIT_EXCEEDED) as e:
            if msgid is not None:
                with suppress(ldap.LDAPError):
                    self.connection.abandon(msgid)
            msg = (
                f"LDAP search timed out after {self.config.timeout}s: "
                f"base={query.base!r} filter={query.filterstr!r}"
            )
            raise DirectoryTimeout(msg) from e
        except ldap.LDAPError as e:
            msg = f"LDAP search failed: base={query.base!r} filter={query.filterstr!r}: {e}"
            raise DirectoryError(msg) from e
        paged_controls = self._get_pctrls(serverctrls)
        next_cookie = None
        if paged_controls and paged_controls[0].cookie:
            next_cookie = paged_controls[0].cookie
        return SearchPage(self._to_entries(rdata), next_cookie, msgid)

    @atomic
    def abandon(self, query: SearchQuery, page: SearchPage) -> None:
        try:
            if page.handle is not None:
                self.connection.abandon(page.handle)
            if page.cookie:
                # A page size of 0 with the last cookie releases the server's
                # paging context (RFC 2696, section 3).
                control = SimplePagedResultsControl(True, size=0, cookie=page.cookie)  # noqa: FBT003
                msgid = self.connection.search_ext(
                    query.base,
                    int(query.scope),
                    query.filterstr,
                    list(query.attribute_names) or None,
                    serverctrls=[control],
                    timeout=self.config.timeout,
                )
                self.connection.result3(msgid, timeout=self.config.timeout)
        except ldap.LDAPError as e:
            msg = f"Could not abandon search base={query.base!r}: {e}"
            raise DirectoryError(msg) from e

    def __repr__(self) -> str:
        return f"<PythonLdapDirectoryClient: {self.endpoint}>"
