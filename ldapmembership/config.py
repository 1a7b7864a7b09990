"""
Configuration for directory access and membership resolution.

:py:class:`MembershipConfig` is built explicitly and handed to the client,
the resolver and the cache.  The usual way to get one is
:py:meth:`MembershipConfig.from_settings`, which reads the same
``settings.LDAP_SERVERS`` structure used by django-ldaporm::

    LDAP_SERVERS = {
        "default": {
            "basedn": "dc=example,dc=com",
            "read": {
                "url": "ldaps://ldap.example.com",
                "user": "cn=reader,dc=example,dc=com",
                "password": "secret",
                "use_starttls": False,
                "tls_verify": "always",
                "timeout": 15.0,
                "sizelimit": 0,
                "follow_referrals": False,
            },
            "groups": {
                "uid_attribute": "sAMAccountName",
                "group_classes": ["group"],
                "member_fields": ["member"],
                "resolve_subgroups": True,
                "page_size": 500,
                "cache_ttl": 21600,
            },
        }
    }
"""

from collections.abc import Iterable
from typing import Any

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from ldapurl import LDAPUrl

#: Object classes that mark an entry as a group.
DEFAULT_GROUP_CLASSES: tuple[str, ...] = (
    "group",
    "groupofnames",
    "groupofuniquenames",
    "dynamicgroup",
    "dynamicgroupaux",
    "groupwisedistributionlist",
    "posixgroup",
    "apple-group",
)
#: Attributes of a group entry that list its members.
DEFAULT_MEMBER_FIELDS: tuple[str, ...] = ("member", "uniquemember", "memberuid")
#: Attributes whose values are never decoded to text.
DEFAULT_BINARY_ATTRIBUTES: tuple[str, ...] = (
    "objectGUID",
    "objectSid",
    "thumbnailPhoto",
    "jpegPhoto",
)
DEFAULT_UID_ATTRIBUTE = "cn"
DEFAULT_USER_SEARCH_FORMAT = "({0}={1})"
DEFAULT_PAGE_SIZE = 500
DEFAULT_CACHE_TTL = 6 * 60 * 60
DEFAULT_TIMEOUT = 15.0


def _get_setting(name: str, default: Any) -> Any:
    """
    Read ``LDAPMEMBERSHIP_<name>`` from the Django settings.
    """
    return getattr(settings, f"LDAPMEMBERSHIP_{name}", default)


def _casefold(values: Iterable[str]) -> tuple[str, ...]:
    """
    Lowercase ``values``, dropping blanks and duplicates but keeping order.
    """
    folded: list[str] = []
    for value in values:
        value = value.strip().lower()  # noqa: PLW2901
        if value and value not in folded:
            folded.append(value)
    return tuple(folded)


class MembershipConfig:
    """
    Read-only configuration consumed by the directory client, the group
    resolver and the membership cache.

    Keyword Args:
        url: LDAP url of the server, e.g. ``ldaps://ldap.example.com:636``
        basedn: base DN for filter and unique id searches
        user: bind DN; ``None`` for an anonymous bind
        password: bind password
        use_starttls: negotiate TLS with STARTTLS after connecting
        tls_verify: ``"never"`` or ``"always"``
        tls_ca_certfile: path to a CA certificate bundle
        tls_certfile: path to a client certificate
        tls_keyfile: path to the client certificate key
        follow_referrals: let libldap chase referrals
        timeout: network and operation timeout in seconds
        sizelimit: maximum number of entries per search, 0 for no limit
        page_size: entries requested per page of a paged search
        paged_search: ``True``/``False`` to force paging on or off, ``None``
            to ask the server's Root DSE
        group_classes: object classes that identify a group
        member_fields: group attributes that list members
        uid_attribute: attribute holding a user's unique id
        resolve_subgroups: expand nested groups below the top level
        cache_ttl: lifetime of a cached membership map in seconds
        binary_attributes: attributes whose values stay ``bytes``
        user_search_format: :py:meth:`str.format` template for the unique id
            search; ``{0}`` is the attribute, ``{1}`` the escaped value

    Raises:
        ImproperlyConfigured: if a value is missing or out of range

    """

    def __init__(  # noqa: PLR0913
        self,
        url: str,
        basedn: str,
        user: str | None = None,
        password: str | None = None,
        use_starttls: bool = True,
        tls_verify: str = "never",
        tls_ca_certfile: str | None = None,
        tls_certfile: str | None = None,
        tls_keyfile: str | None = None,
        follow_referrals: bool = False,
        timeout: float = DEFAULT_TIMEOUT,
        sizelimit: int = 0,
        page_size: int = DEFAULT_PAGE_SIZE,
        paged_search: bool | None = None,
        group_classes: Iterable[str] = DEFAULT_GROUP_CLASSES,
        member_fields: Iterable[str] = DEFAULT_MEMBER_FIELDS,
        uid_attribute: str = DEFAULT_UID_ATTRIBUTE,
        resolve_subgroups: bool = True,
        cache_ttl: int = DEFAULT_CACHE_TTL,
        binary_attributes: Iterable[str] = DEFAULT_BINARY_ATTRIBUTES,
        user_search_format: str = DEFAULT_USER_SEARCH_FORMAT,
    ) -> None:
        #: LDAP url of the directory server
        self.url: str = url
        #: Base DN for filter and unique id searches
        self.basedn: str = basedn
        self.user: str | None = user
        self.password: str | None = password
        self.use_starttls: bool = use_starttls
        self.tls_verify: str = tls_verify
        self.tls_ca_certfile: str | None = tls_ca_certfile
        self.tls_certfile: str | None = tls_certfile
        self.tls_keyfile: str | None = tls_keyfile
        self.follow_referrals: bool = follow_referrals
        #: Network and per-operation timeout, in seconds
        self.timeout: float = float(timeout)
        #: Maximum entries returned by one search; 0 means no limit
        self.sizelimit: int = int(sizelimit)
        self.page_size: int = int(page_size)
        self.paged_search: bool | None = paged_search
        #: Lowercased object classes that identify a group
        self.group_classes: tuple[str, ...] = _casefold(group_classes)
        #: Lowercased member attributes, in configured order
        self.member_fields: tuple[str, ...] = _casefold(member_fields)
        self.uid_attribute: str = uid_attribute
        #: When ``False`` nested members are recorded verbatim, not expanded
        self.resolve_subgroups: bool = resolve_subgroups
        #: Lifetime of a cached membership map, in seconds
        self.cache_ttl: int = int(cache_ttl)
        self.binary_attributes: frozenset[str] = frozenset(
            name.lower() for name in binary_attributes
        )
        self.user_search_format: str = user_search_format
        self.validate()

    def validate(self) -> None:
        """
        Check the configuration for consistency.

        Raises:
            ImproperlyConfigured: if a value is missing or out of range

        """
        if not self.url:
            msg = "LDAP membership configuration needs a 'url'"
            raise ImproperlyConfigured(msg)
        if not self.basedn:
            msg = "LDAP membership configuration needs a 'basedn'"
            raise ImproperlyConfigured(msg)
        if self.tls_verify not in ("never", "always"):
            msg = f"Invalid tls_verify value: {self.tls_verify}"
            raise ImproperlyConfigured(msg)
        if self.page_size <= 0:
            msg = f"page_size ({self.page_size}) must be positive"
            raise ImproperlyConfigured(msg)
        if self.cache_ttl <= 0:
            msg = f"cache_ttl ({self.cache_ttl}) must be positive"
            raise ImproperlyConfigured(msg)
        if self.timeout <= 0:
            msg = f"timeout ({self.timeout}) must be positive"
            raise ImproperlyConfigured(msg)
        if self.sizelimit < 0:
            msg = f"sizelimit ({self.sizelimit}) cannot be negative"
            raise ImproperlyConfigured(msg)
        if not self.group_classes:
            msg = "group_classes cannot be empty"
            raise ImproperlyConfigured(msg)
        if not self.member_fields:
            msg = "member_fields cannot be empty"
            raise ImproperlyConfigured(msg)
        if not self.uid_attribute:
            msg = "uid_attribute cannot be empty"
            raise ImproperlyConfigured(msg)

    @classmethod
    def from_settings(cls, server: str = "default", key: str = "read") -> "MembershipConfig":
        """
        Build a configuration from ``settings.LDAP_SERVERS[server]``.

        Args:
            server: key into ``settings.LDAP_SERVERS``
            key: which connection dict of that server to use

        Raises:
            ImproperlyConfigured: if the settings are missing or invalid

        Returns:
            A validated configuration.

        """
        try:
            server_config = settings.LDAP_SERVERS[server]
        except AttributeError as e:
            msg = "settings.LDAP_SERVERS does not exist!"
            raise ImproperlyConfigured(msg) from e
        except KeyError as e:
            msg = f"settings.LDAP_SERVERS has no key '{server}'"
            raise ImproperlyConfigured(msg) from e
        try:
            connection = server_config[key]
        except KeyError as e:
            msg = f"settings.LDAP_SERVERS['{server}'] has no '{key}' key"
            raise ImproperlyConfigured(msg) from e
        try:
            url = connection["url"]
        except KeyError as e:
            msg = f"settings.LDAP_SERVERS['{server}']['{key}'] has no 'url' key"
            raise ImproperlyConfigured(msg) from e
        groups = server_config.get("groups", {})
        return cls(
            url=url,
            basedn=groups.get("basedn", server_config.get("basedn", "")),
            user=connection.get("user"),
            password=connection.get("password"),
            use_starttls=connection.get("use_starttls", True),
            tls_verify=connection.get("tls_verify", "never"),
            tls_ca_certfile=connection.get("tls_ca_certfile"),
            tls_certfile=connection.get("tls_certfile"),
            tls_keyfile=connection.get("tls_keyfile"),
            follow_referrals=connection.get("follow_referrals", False),
            timeout=connection.get("timeout", _get_setting("TIMEOUT", DEFAULT_TIMEOUT)),
            sizelimit=connection.get("sizelimit") or 0,
            page_size=groups.get("page_size", _get_setting("PAGE_SIZE", DEFAULT_PAGE_SIZE)),
            paged_search=groups.get("paged_search"),
            group_classes=groups.get("group_classes", DEFAULT_GROUP_CLASSES),
            member_fields=groups.get("member_fields", DEFAULT_MEMBER_FIELDS),
            uid_attribute=groups.get("uid_attribute", DEFAULT_UID_ATTRIBUTE),
            resolve_subgroups=groups.get("resolve_subgroups", True),
            cache_ttl=groups.get("cache_ttl", _get_setting("CACHE_TTL", DEFAULT_CACHE_TTL)),
            binary_attributes=groups.get("binary_attributes", DEFAULT_BINARY_ATTRIBUTES),
            user_search_format=groups.get("user_search_format", DEFAULT_USER_SEARCH_FORMAT),
        )

    @property
    def endpoint(self) -> str:
        """
        ``host:port`` of the directory server.
        """
        url = LDAPUrl(self.url)
        hostport = url.hostport or "localhost"
        if ":" in hostport.rsplit("]", 1)[-1]:
            return hostport.lower()
        port = 636 if url.urlscheme == "ldaps" else 389
        return f"{hostport.lower()}:{port}"

    @property
    def cache_key(self) -> str:
        """
        Identity of the membership cache for this configuration.  Two
        directories, or two unique id conventions on the same directory, never
        share cached memberships.
        """
        return f"{self.uid_attribute}.{self.endpoint}"

    def is_binary(self, attribute_name: str) -> bool:
        """
        Return ``True`` if values of ``attribute_name`` must stay ``bytes``.
        Any ``;subtype`` suffix is ignored.
        """
        return attribute_name.split(";", 1)[0].lower() in self.binary_attributes

    def __repr__(self) -> str:
        return f"<MembershipConfig: {self.url} basedn={self.basedn}>"
