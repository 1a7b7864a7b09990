"""
The public face of ldapmembership.

:py:class:`MembershipService` ties a directory client, a
:py:class:`~ldapmembership.resolver.GroupResolver` and a
:py:class:`~ldapmembership.cache.MembershipCache` together and answers the
questions authentication backends and administrative tools ask::

    service = MembershipService.from_settings("default")
    if service.is_member_of_any(username, settings.STAFF_GROUP_DNS):
        ...

Callers only ever see a boolean, a mapping or a
:py:class:`~ldapmembership.exceptions.MembershipResolutionError`.
"""

import logging
import re
from collections.abc import Iterable, Mapping
from typing import Any

from django.core.signals import setting_changed

from .cache import MembershipCache, TTLStore
from .client import DirectoryClient, PythonLdapDirectoryClient
from .config import MembershipConfig
from .exceptions import LdapMembershipError, MembershipResolutionError
from .resolver import GroupResolver, is_dn
from .signals import membership_cache_invalidated
from .typing import MembershipMap

logger = logging.getLogger(__name__)


class MembershipService:
    """
    Group membership questions against one directory.

    Args:
        client: the directory to ask

    Keyword Args:
        config: the membership configuration; defaults to the client's
        store: where resolved memberships are cached; in process memory if not
            given
        clock: passed through to :py:class:`~ldapmembership.cache.MembershipCache`
        watch_settings: drop the cache whenever ``LDAP_SERVERS`` or an
            ``LDAPMEMBERSHIP_*`` setting changes

    """

    def __init__(
        self,
        client: DirectoryClient,
        config: MembershipConfig | None = None,
        store: TTLStore | None = None,
        clock: Any = None,
        watch_settings: bool = True,
    ) -> None:
        self.client = client
        self.config: MembershipConfig = config or client.config
        self.resolver = GroupResolver(client, self.config)
        self.cache = MembershipCache(
            self.resolver.resolve_top_level,
            self.config.cache_key,
            self.config.cache_ttl,
            store=store,
            clock=clock,
        )
        if watch_settings:
            setting_changed.connect(self._on_setting_changed, weak=True)

    @classmethod
    def from_settings(
        cls, server: str = "default", key: str = "read", store: TTLStore | None = None
    ) -> "MembershipService":
        """
        Build a service for ``settings.LDAP_SERVERS[server]``, using the
        python-ldap client.

        Raises:
            ImproperlyConfigured: the settings are missing or invalid

        """
        config = MembershipConfig.from_settings(server, key=key)
        return cls(PythonLdapDirectoryClient(config), config=config, store=store)

    def _on_setting_changed(self, sender: Any, setting: str, **kwargs: Any) -> None:  # noqa: ARG002
        if setting == "LDAP_SERVERS" or setting.startswith("LDAPMEMBERSHIP_"):
            logger.info(
                "ldapmembership.membership.setting-changed setting=%s key=%s",
                setting,
                self.config.cache_key,
            )
            self.invalidate_membership_cache()

    # -----------------------
    # Public entry points
    # -----------------------

    def resolve_top_level_group(self, identifier: str) -> tuple[bool, MembershipMap]:
        """
        Resolve ``identifier`` (a DN, a search filter or a unique id) from
        scratch, bypassing the cache.

        Raises:
            MembershipResolutionError: the directory could not be searched for
                ``identifier``

        Returns:
            ``(is_group, member_map)``.

        """
        try:
            return self.resolver.resolve_top_level(identifier)
        except LdapMembershipError as e:
            msg = f"Could not resolve {identifier}: {e}"
            raise MembershipResolutionError(msg) from e

    def get_members(self, group_dn: str) -> MembershipMap:
        """
        Return the members of ``group_dn``, from the cache when possible.

        Raises:
            MembershipResolutionError: the group could not be resolved

        """
        return self.cache.get_members(group_dn)

    def is_member_of_group(self, member: str, group_dn: str) -> bool:
        """
        Return ``True`` if ``member`` is a member of ``group_dn``, directly or
        through nested groups.

        Args:
            member: the member's DN, or its unique id
            group_dn: the group to look in

        Raises:
            MembershipResolutionError: the group could not be resolved

        """
        members = self.get_members(group_dn)
        if is_dn(member):
            return self.find_dn_in_group(member, members) is not None
        return self.find_uid_in_group(member, members) is not None

    def is_member_of_any(self, member: str, group_dns: Iterable[str]) -> bool:
        """
        Return ``True`` if ``member`` is a member of at least one of
        ``group_dns``.  Stops at the first match.

        Raises:
            MembershipResolutionError: one of the groups checked could not be
                resolved

        """
        return any(self.is_member_of_group(member, group_dn) for group_dn in group_dns)

    def invalidate_membership_cache(self) -> None:
        """
        Drop every cached membership of this service.
        """
        self.cache.invalidate_all()
        membership_cache_invalidated.send(
            sender=self.__class__, service=self, cache_key=self.config.cache_key
        )

    # -----------------------
    # Helpers
    # -----------------------

    def find_uid_in_group(self, uid: str, members: MembershipMap) -> str | None:
        """
        Find the member whose unique id is ``uid``.

        A member matches if its stored unique id equals ``uid``, ignoring case,
        or if its DN starts with ``<uid_attribute>=<uid>,``.

        Returns:
            The member's DN (lowercased), or ``None``.

        """
        pattern = re.compile(
            rf"^{re.escape(self.config.uid_attribute)}={re.escape(uid.lower())} *,",
            re.IGNORECASE,
        )
        for dn, member_uid in members.items():
            if uid.lower() == member_uid.lower() or pattern.match(dn):
                return dn
        return None

    def find_dn_in_group(self, dn: str, members: MembershipMap) -> str | None:
        """
        Return ``dn`` if it is one of ``members``, else ``None``.
        """
        if dn.strip().lower() in members:
            return dn
        return None

    def is_in_group(
        self, group_dn: str, uid: str | None = None, dn: str | None = None
    ) -> str | None:
        """
        Look for a member of ``group_dn`` by DN (if ``dn`` is given) or by
        unique id.

        A group whose members cannot be retrieved matches nobody, so that an
        unreachable exclusion group never locks everyone out.

        Returns:
            The matching member DN, or ``None``.

        """
        if not group_dn:
            return None
        try:
            members = self.get_members(group_dn)
        except MembershipResolutionError as e:
            logger.warning(
                "ldapmembership.membership.group-unavailable group=%s error=%s",
                group_dn,
                e,
            )
            return None
        if dn is not None:
            return self.find_dn_in_group(dn, members)
        if uid is not None:
            return self.find_uid_in_group(uid, members)
        return None

    def plan_group_sync(
        self,
        member: str,
        current_groups: Iterable[str],
        group_mappings: Mapping[str, Iterable[str]],
    ) -> tuple[set[str], set[str]]:
        """
        Work out which application groups ``member`` must join or leave so
        that its application group memberships follow its directory ones.

        Args:
            member: the member's DN, or its unique id
            current_groups: the application groups the member is in now
            group_mappings: application group name -> the directory group DNs
                that grant it

        Raises:
            MembershipResolutionError: one of the mapped groups could not be
                resolved

        Returns:
            ``(to_add, to_remove)``.  Application groups with no mapping are
            never touched.

        """
        current = set(current_groups)
        to_add: set[str] = set()
        to_remove: set[str] = set()
        for group_name, group_dns in group_mappings.items():
            is_member = self.is_member_of_any(member, group_dns)
            if group_name in current and not is_member:
                to_remove.add(group_name)
            elif group_name not in current and is_member:
                to_add.add(group_name)
        logger.debug(
            "ldapmembership.membership.sync member=%s add=%s remove=%s",
            member,
            sorted(to_add),
            sorted(to_remove),
        )
        return to_add, to_remove

    def __repr__(self) -> str:
        return f"<MembershipService: {self.config.cache_key}>"
