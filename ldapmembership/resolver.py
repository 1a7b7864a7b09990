"""
Recursive group membership resolution.

:py:class:`GroupResolver` takes an identifier that may be a DN, a search
filter or a bare unique id, works out whether it names a group, and if so
walks the group's members (and the members of its nested groups) into a flat
:py:data:`~ldapmembership.typing.MembershipMap`.
"""

import enum
import logging
from collections.abc import Iterator
from typing import TYPE_CHECKING, NamedTuple

import ldap.dn
from ldap_filter import Filter, ParseError

from .config import MembershipConfig
from .exceptions import DirectorySearchFailed, InvalidFilterSyntax, MalformedRange
from .query import DirectoryEntry, Scope, SearchQuery
from .ranges import RangedAttributeReassembler, split_ranged_attribute_name
from .typing import MembershipMap, SubgroupTrail

if TYPE_CHECKING:
    from .client import DirectoryClient

logger = logging.getLogger(__name__)


def escape_filter_value(value: str) -> str:
    """
    Escape ``value`` for use as an assertion value in a search filter.
    """
    return Filter.escape(value)


def escape_dn_value(value: str) -> str:
    """
    Escape ``value`` for use as an attribute value in a DN.
    """
    return ldap.dn.escape_dn_chars(value)


def is_dn(value: str) -> bool:
    """
    Return ``True`` if ``value`` is a syntactically valid, non-empty DN.
    """
    # ldap.dn.is_dn("") is True: the empty DN is the Root DSE
    return bool(value.strip()) and ldap.dn.is_dn(value)


def parse_filter(value: str) -> Filter:
    """
    Parse ``value`` as an LDAP search filter.

    Raises:
        InvalidFilterSyntax: ``value`` is not a filter

    """
    try:
        return Filter.parse(value)
    except ParseError as e:
        msg = f"Not a valid LDAP filter: {value!r}"
        raise InvalidFilterSyntax(msg) from e


class IdentifierKind(enum.Enum):
    """
    The shapes an identifier handed to the resolver can take.
    """

    DN = "dn"
    FILTER = "filter"
    UNIQUE_ID = "uid"


class IdentifierClassification(NamedTuple):
    """
    The outcome of classifying an identifier.  ``filter_error`` says why the
    identifier did not parse as a filter, when it did not.
    """

    identifier: str
    kind: IdentifierKind
    filter_error: str | None = None

    @property
    def is_dn(self) -> bool:
        return self.kind is IdentifierKind.DN

    @property
    def is_filter(self) -> bool:
        return self.kind is IdentifierKind.FILTER


def classify_identifier(
    identifier: str, allow_dn: bool = True
) -> IdentifierClassification:
    """
    Decide whether ``identifier`` is a DN, a search filter or a unique id.

    A DN wins over a filter: ``cn=foo`` is both a valid DN and a valid bare
    filter.

    Keyword Args:
        allow_dn: set to ``False`` to only consider the filter and unique id
            interpretations

    """
    if allow_dn and is_dn(identifier):
        return IdentifierClassification(identifier, IdentifierKind.DN)
    try:
        parse_filter(identifier)
    except InvalidFilterSyntax as e:
        return IdentifierClassification(identifier, IdentifierKind.UNIQUE_ID, str(e))
    return IdentifierClassification(identifier, IdentifierKind.FILTER)


class GroupResolver:
    """
    Resolve identifiers into group members.

    Args:
        client: the directory to search

    Keyword Args:
        config: the membership configuration; defaults to the client's

    """

    def __init__(
        self, client: "DirectoryClient", config: MembershipConfig | None = None
    ) -> None:
        self.client = client
        self.config: MembershipConfig = config or client.config
        self.reassembler = RangedAttributeReassembler(client)

    @property
    def projection(self) -> tuple[str, ...]:
        """
        The attributes we ask for on every membership search.
        """
        return ("objectClass", *self.config.member_fields, self.config.uid_attribute)

    # -----------------------
    # Entry inspection
    # -----------------------

    def is_group(self, entry: DirectoryEntry) -> bool:
        """
        Return ``True`` if one of ``entry``'s object classes is a configured
        group class.
        """
        return entry.has_value("objectClass", self.config.group_classes)

    def get_uid(self, entry: DirectoryEntry) -> str | None:
        value = entry.get_first(self.config.uid_attribute)
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        return value

    def iter_member_values(self, entry: DirectoryEntry) -> Iterator[str]:
        """
        Yield every member value of the group ``entry``, member field by member
        field in configured order.  Range-chunked member attributes are
        completed with further lookups.
        """
        for field in self.config.member_fields:
            for name in entry:
                try:
                    base, found = split_ranged_attribute_name(name)
                except MalformedRange:
                    logger.warning(
                        "ldapmembership.resolver.malformed-range dn=%s attribute=%s",
                        entry.dn,
                        name,
                    )
                    base, found = name.split(";", 1)[0], None
                if base.lower() != field:
                    continue
                values = list(entry.get_values(name))
                if found is not None and not found.is_last:
                    try:
                        values.extend(
                            self.reassembler.collect(entry.dn, base, found.upper + 1)  # type: ignore[operator]
                        )
                    except DirectorySearchFailed as e:
                        logger.warning(
                            "ldapmembership.resolver.range.failed dn=%s attribute=%s error=%s",
                            entry.dn,
                            base,
                            e,
                        )
                for value in values:
                    if isinstance(value, str) and value.strip():
                        yield value

    # -----------------------
    # Unique id lookups
    # -----------------------

    def user_filter(self, uid: str) -> str:
        """
        Build the search filter that finds the entry whose unique id is
        ``uid``.
        """
        return self.config.user_search_format.format(
            self.config.uid_attribute, escape_filter_value(uid)
        )

    def search_user_attributes_by_uid(
        self, uid: str, attributes: tuple[str, ...] | list[str] = ()
    ) -> DirectoryEntry | None:
        """
        Find the entry whose unique id is ``uid``.

        Args:
            uid: the unique id value

        Keyword Args:
            attributes: attributes to fetch; all user attributes if empty

        Raises:
            DirectorySearchFailed: the search failed

        Returns:
            The first matching entry, or ``None``.

        """
        query = SearchQuery(
            base=self.config.basedn,
            scope=Scope.SUBTREE,
            filter=self.user_filter(uid),
            attribute_names=tuple(attributes),
        )
        with self.client.search_paged(query) as cursor:
            entry = cursor.next_entry() if cursor.has_more() else None
        return entry

    def search_user_dn_by_uid(self, uid: str) -> str | None:
        """
        Return the DN of the entry whose unique id is ``uid``, or ``None``.

        Raises:
            DirectorySearchFailed: the search failed

        """
        # "1.1" asks the server for no attributes at all
        entry = self.search_user_attributes_by_uid(uid, ("1.1",))
        return entry.dn if entry is not None else None

    # -----------------------
    # Resolution
    # -----------------------

    def resolve(
        self,
        identifier: str,
        member_map: MembershipMap,
        subgroup_trail: SubgroupTrail,
    ) -> bool:
        """
        Resolve ``identifier`` into members.

        Every user found is added to ``member_map`` (lowercased DN ->
        lowercased unique id) and every group visited to ``subgroup_trail``.
        Both are updated in place.

        A search failure below the top level is logged and contributes
        nothing; the members found so far are kept.

        Args:
            identifier: a DN, a search filter or a unique id
            member_map: members found so far
            subgroup_trail: lowercased DNs of the groups visited so far; empty
                for a top level call

        Raises:
            DirectorySearchFailed: the search for a top level ``identifier``
                itself failed

        Returns:
            Whether ``identifier`` is a group.

        """
        return self._resolve(identifier, member_map, subgroup_trail, not subgroup_trail)

    def _resolve(
        self,
        identifier: str,
        member_map: MembershipMap,
        subgroup_trail: SubgroupTrail,
        top_level: bool,
    ) -> bool:
        identifier = identifier.strip()
        if not identifier:
            return False
        classification = classify_identifier(identifier)
        size_before = len(member_map)
        if classification.is_dn:
            key = identifier.lower()
            if key in member_map:
                logger.debug("ldapmembership.resolver.already-resolved dn=%s", identifier)
                return False
            if subgroup_trail and not self.config.resolve_subgroups:
                logger.debug("ldapmembership.resolver.subgroups-disabled dn=%s", identifier)
                member_map[key] = identifier
                return False
            if key in subgroup_trail:
                logger.debug("ldapmembership.resolver.cycle dn=%s", identifier)
                return True
            query = SearchQuery(
                base=identifier, scope=Scope.SUBTREE, attribute_names=self.projection
            )
            is_group = self._resolve_query(query, member_map, subgroup_trail, top_level)
            if is_group or len(member_map) != size_before:
                return is_group
            logger.debug("ldapmembership.resolver.dn-fallthrough dn=%s", identifier)
            classification = classify_identifier(identifier, allow_dn=False)
        if classification.is_filter:
            query = SearchQuery(
                base=self.config.basedn,
                scope=Scope.SUBTREE,
                filter=identifier,
                attribute_names=self.projection,
            )
            return self._resolve_query(query, member_map, subgroup_trail, top_level)
        return self._resolve_uid(identifier, member_map, subgroup_trail, top_level)

    def _resolve_uid(
        self,
        uid: str,
        member_map: MembershipMap,
        subgroup_trail: SubgroupTrail,
        top_level: bool,
    ) -> bool:
        try:
            dn = self.search_user_dn_by_uid(uid)
        except DirectorySearchFailed as e:
            if top_level:
                raise
            logger.warning("ldapmembership.resolver.uid.failed uid=%s error=%s", uid, e)
            return False
        if dn is None or dn.lower() == uid.lower():
            logger.debug("ldapmembership.resolver.uid.not-found uid=%s", uid)
            return False
        key = dn.lower()
        if key in member_map:
            return False
        if subgroup_trail and not self.config.resolve_subgroups:
            member_map[key] = dn
            return False
        return self._resolve(dn, member_map, subgroup_trail, top_level)

    def _resolve_query(
        self,
        query: SearchQuery,
        member_map: MembershipMap,
        subgroup_trail: SubgroupTrail,
        top_level: bool,
    ) -> bool:
        """
        Run ``query`` and resolve every entry it returns.

        Returns:
            Whether the first entry returned is a group.

        """
        classification: bool | None = None
        try:
            with self.client.search_paged(query) as cursor:
                while cursor.has_more():
                    entry = cursor.next_entry()
                    is_group = self._resolve_entry(entry, member_map, subgroup_trail)
                    if classification is None:
                        classification = is_group
        except DirectorySearchFailed as e:
            if top_level and classification is None:
                raise
            logger.warning(
                "ldapmembership.resolver.search.failed base=%s filter=%s page=%d error=%s",
                query.base,
                query.filterstr,
                e.page_index,
                e,
            )
        return bool(classification)

    def _resolve_entry(
        self,
        entry: DirectoryEntry,
        member_map: MembershipMap,
        subgroup_trail: SubgroupTrail,
    ) -> bool:
        key = entry.dn.lower()
        if self.is_group(entry):
            if key in subgroup_trail:
                logger.debug("ldapmembership.resolver.cycle dn=%s", entry.dn)
                return True
            logger.debug("ldapmembership.resolver.group dn=%s", entry.dn)
            subgroup_trail.add(key)
            for member in self.iter_member_values(entry):
                self._resolve(member, member_map, subgroup_trail, False)
            return True
        uid = self.get_uid(entry)
        if uid is None:
            logger.warning(
                "ldapmembership.resolver.no-uid dn=%s attribute=%s",
                entry.dn,
                self.config.uid_attribute,
            )
            return False
        if key not in member_map:
            logger.debug("ldapmembership.resolver.member dn=%s uid=%s", entry.dn, uid)
            member_map[key] = uid.lower()
        return False

    def resolve_top_level(self, identifier: str) -> tuple[bool, MembershipMap]:
        """
        Resolve ``identifier`` from scratch.

        Raises:
            DirectorySearchFailed: the search for ``identifier`` itself failed

        Returns:
            ``(is_group, member_map)``.

        """
        member_map: MembershipMap = {}
        subgroup_trail: SubgroupTrail = set()
        with self.client.connected():
            is_group = self.resolve(identifier, member_map, subgroup_trail)
        logger.debug(
            "ldapmembership.resolver.resolved identifier=%s group=%s members=%d subgroups=%d",
            identifier,
            is_group,
            len(member_map),
            len(subgroup_trail),
        )
        return is_group, member_map
