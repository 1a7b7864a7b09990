"""
Directory server capability detection.

:py:class:`ServerCapabilities` reads the Root DSE once per client, works out
which directory product we are talking to, whether it supports the simple
paged results control and how large a page it will hand out, and remembers
the answer for a while.
"""

import logging
import threading
import time
from typing import Any

import ldap

logger = logging.getLogger(__name__)


class ServerCapabilities:
    """
    Detection and caching of the capabilities of one directory server.

    One instance belongs to one
    :py:class:`~ldapmembership.client.PythonLdapDirectoryClient`; nothing is
    shared at class level.

    Args:
        default_page_size: page size limit assumed when the server does not
            advertise one
        ttl: seconds before the Root DSE is read again

    """

    #: OID of the simple paged results control (RFC 2696)
    PAGING_OID = "1.2.840.113556.1.4.319"

    #: Root DSE attributes we care about
    ROOT_DSE_ATTRIBUTES = [  # noqa: RUF012
        "vendorName",
        "forestFunctionality",
        "sizelimit",
        "MaxPageSize",
        "nsslapd-sizelimit",
        "supportedControl",
    ]

    #: Smallest page size we will ever request
    MIN_PAGE_SIZE = 10

    def __init__(self, default_page_size: int = 1000, ttl: int = 3600) -> None:
        self.default_page_size = default_page_size
        self.ttl = ttl
        self._info: dict[str, Any] | None = None
        self._lock = threading.Lock()
        self._logged_features: set[str] = set()

    def _is_cache_valid(self) -> bool:
        if self._info is None:
            return False
        return (time.time() - self._info["cached_at"]) < self.ttl

    def get_server_info(self, connection: Any) -> dict[str, Any]:
        """
        Get server information from the Root DSE, querying the server only when
        our copy is missing or stale.

        Args:
            connection: a bound python-ldap connection

        Raises:
            ldap.SERVER_DOWN: the server went away
            ldap.CONNECT_ERROR: the connection could not be used

        Returns:
            A dict with ``flavor``, ``page_size``, ``capabilities`` and
            ``cached_at`` keys.

        """
        with self._lock:
            if self._is_cache_valid():
                return self._info  # type: ignore[return-value]
            try:
                result = connection.search_s(
                    "", ldap.SCOPE_BASE, "(objectClass=*)", self.ROOT_DSE_ATTRIBUTES
                )
            except ldap.LDAPError as e:
                if isinstance(e, (ldap.SERVER_DOWN, ldap.CONNECT_ERROR)):
                    raise
                logger.warning("ldapmembership.capabilities.root-dse.failed error=%s", e)
                return self._default_server_info()
            if not result or not isinstance(result[0][1], dict):
                info = self._default_server_info()
            else:
                info = self.parse_server_info(result[0][1])
            info["cached_at"] = time.time()
            self._info = info
            return info

    def parse_server_info(self, root_dse_attrs: dict[str, Any]) -> dict[str, Any]:
        """
        Turn raw Root DSE attributes into our server information dict.
        """
        flavor = self.detect_flavor(root_dse_attrs)
        oids = {
            value.decode("utf-8", errors="ignore")
            for value in root_dse_attrs.get("supportedControl", [])
        }
        return {
            "flavor": flavor,
            "page_size": self._determine_page_size(flavor, root_dse_attrs),
            "capabilities": {
                "paged results": self.PAGING_OID in oids,
            },
        }

    @staticmethod
    def detect_flavor(root_dse_attrs: dict[str, Any]) -> str:
        """
        Detect the directory product from its Root DSE.

        Returns:
            ``"active_directory"``, ``"389"``, ``"openldap"``, the raw vendor
            name, or ``"unknown"``.

        """
        if "forestFunctionality" in root_dse_attrs:
            return "active_directory"
        vendor_names = root_dse_attrs.get("vendorName", [])
        if not vendor_names:
            return "unknown"
        vendor_name = vendor_names[0].decode("utf-8", errors="ignore")
        if any(
            marker in vendor_name
            for marker in ("Fedora Project", "Red Hat", "Oracle", "ForgeRock", "389")
        ):
            return "389"
        if "OpenLDAP Foundation" in vendor_name:
            return "openldap"
        return vendor_name

    def _determine_page_size(self, flavor: str, root_dse_attrs: dict[str, Any]) -> int:
        attribute = {
            "active_directory": "MaxPageSize",
            "389": "nsslapd-sizelimit",
            "openldap": "sizelimit",
        }.get(flavor)
        if attribute is None:
            return self.default_page_size
        try:
            size = int(root_dse_attrs.get(attribute, [b"1000"])[0].decode("utf-8"))
        except (ValueError, UnicodeDecodeError, IndexError):
            return self.default_page_size
        # 389 and OpenLDAP use -1 for "no limit"
        if size <= 0:
            return self.default_page_size
        return max(size, self.MIN_PAGE_SIZE)

    def _default_server_info(self) -> dict[str, Any]:
        return {
            "flavor": "unknown",
            "page_size": self.default_page_size,
            "capabilities": {
                "paged results": False,
            },
            "cached_at": time.time(),
        }

    def _log_capability(self, endpoint: str, feature_name: str) -> None:
        if feature_name not in self._logged_features:
            logger.info(
                "ldapmembership.capabilities.detected endpoint=%s feature=%s",
                endpoint,
                feature_name,
            )
            self._logged_features.add(feature_name)

    def supports_paging(self, connection: Any, endpoint: str = "") -> bool:
        """
        Return ``True`` if the server advertises the paged results control.
        """
        supported = self.get_server_info(connection)["capabilities"]["paged results"]
        if supported:
            self._log_capability(endpoint, "paged results")
        return supported

    def page_size_limit(self, connection: Any) -> int:
        """
        Return the largest page the server will hand out.
        """
        return self.get_server_info(connection)["page_size"]

    def clear(self) -> None:
        """
        Forget what we know, so that the next question re-reads the Root DSE.
        """
        with self._lock:
            self._info = None
            self._logged_features.clear()
