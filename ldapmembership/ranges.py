"""
Ranged attribute retrieval.

Active Directory refuses to return more than a few thousand values of a
multi-valued attribute in one response.  Instead it returns a slice under a
name like ``member;range=0-1499`` (and an empty ``member``), and expects the
client to ask for ``member;range=1500-*`` and so on until a slice ends with
``*``.  :py:class:`RangedAttributeReassembler` does that asking.
"""

import logging
import re
from collections.abc import Iterator
from typing import TYPE_CHECKING

from .exceptions import MalformedRange
from .query import DirectoryEntry, Scope, SearchQuery
from .typing import AttributeValue

if TYPE_CHECKING:
    from .client import DirectoryClient

logger = logging.getLogger(__name__)

RANGE_RE = re.compile(r"^range=(?P<lower>\d+)-(?P<upper>\d+|\*)$", re.IGNORECASE)


class Range:
    """
    The ``range=<lower>-<upper>`` subtype of an attribute name.  ``upper`` is
    ``None`` when the server said ``*``, which means "this is the last slice".
    """

    __slots__ = ("lower", "upper")

    def __init__(self, lower: int, upper: int | None = None) -> None:
        self.lower = lower
        self.upper = upper

    @classmethod
    def parse(cls, option: str) -> "Range":
        """
        Parse a ``range=...`` option.

        Raises:
            ValueError: ``option`` is not a well formed range

        """
        match = RANGE_RE.match(option.strip())
        if not match:
            msg = f"Not a range option: {option!r}"
            raise ValueError(msg)
        lower = int(match.group("lower"))
        upper = None if match.group("upper") == "*" else int(match.group("upper"))
        if upper is not None and upper < lower:
            msg = f"Range upper bound is below its lower bound: {option!r}"
            raise ValueError(msg)
        return cls(lower, upper)

    @property
    def is_last(self) -> bool:
        return self.upper is None

    def __str__(self) -> str:
        upper = "*" if self.upper is None else str(self.upper)
        return f"range={self.lower}-{upper}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Range):
            return NotImplemented
        return (self.lower, self.upper) == (other.lower, other.upper)

    def __hash__(self) -> int:
        return hash((self.lower, self.upper))

    def __repr__(self) -> str:
        return f"<Range: {self}>"


def split_ranged_attribute_name(name: str) -> tuple[str, Range | None]:
    """
    Split an attribute name as returned by the server into its base name and
    its range, if it has one.  Other ``;`` options are kept on the base name.

    Example:
        >>> split_ranged_attribute_name("member;range=0-1499")
        ('member', <Range: range=0-1499>)
        >>> split_ranged_attribute_name("member")
        ('member', None)

    Raises:
        MalformedRange: the name has a ``range=`` option that does not parse

    """
    base, *options = name.split(";")
    kept = [base]
    found: Range | None = None
    for option in options:
        if option.lower().startswith("range="):
            try:
                found = Range.parse(option)
            except ValueError as e:
                raise MalformedRange(name) from e
        else:
            kept.append(option)
    return ";".join(kept), found


class RangedAttributeRequest:
    """
    Progress of the retrieval of one ranged attribute of one entry.
    """

    def __init__(self, entry_dn: str, attribute_name: str, lower_bound: int = 0) -> None:
        self.entry_dn = entry_dn
        self.attribute_name = attribute_name
        self.values: list[AttributeValue] = []
        self.next_lower_bound = lower_bound
        self.done = False
        self.round_trips = 0

    @property
    def requested_attribute(self) -> str:
        return f"{self.attribute_name};{Range(self.next_lower_bound)}"

    def __repr__(self) -> str:
        return (
            f"<RangedAttributeRequest: {self.entry_dn} {self.requested_attribute} "
            f"values={len(self.values)} done={self.done}>"
        )


class RangedAttributeReassembler:
    """
    Collect every value of a range-chunked attribute.

    Args:
        client: the directory client to query

    """

    def __init__(self, client: "DirectoryClient") -> None:
        self.client = client

    def _find_slice(
        self, entry: DirectoryEntry, request: RangedAttributeRequest
    ) -> tuple[Range | None, tuple[AttributeValue, ...]] | None:
        """
        Find the slice of ``request.attribute_name`` in ``entry``.

        Returns:
            ``None`` if the entry carries no such attribute, otherwise
            ``(range, values)``; ``range`` is ``None`` when the server answered
            without a range subtype, i.e. with every remaining value.

        Raises:
            MalformedRange: the slice's range subtype does not parse

        """
        wanted = request.attribute_name.lower()
        for name in entry:
            base, found = split_ranged_attribute_name(name)
            if base.lower() != wanted:
                continue
            values = entry.get_values(name)
            if found is None and not values:
                # AD sends the plain attribute empty next to the ranged one
                continue
            return found, values
        return None

    def _step(self, request: RangedAttributeRequest) -> None:
        query = SearchQuery(
            base=request.entry_dn,
            scope=Scope.BASE,
            attribute_names=(request.requested_attribute,),
        )
        request.round_trips += 1
        entries = self.client.search(query)
        found = None
        for entry in entries:
            try:
                found = self._find_slice(entry, request)
            except MalformedRange as e:
                logger.warning(
                    "ldapmembership.ranges.malformed dn=%s attribute=%s",
                    request.entry_dn,
                    e.attribute_name,
                )
                request.done = True
                return
            if found is not None:
                break
        if found is None:
            request.done = True
            return
        slice_range, values = found
        if (
            slice_range is not None
            and not slice_range.is_last
            and slice_range.upper < request.next_lower_bound  # type: ignore[operator]
        ):
            # The server went backwards; stop rather than loop forever.
            logger.warning(
                "ldapmembership.ranges.no-progress dn=%s attribute=%s range=%s",
                request.entry_dn,
                request.attribute_name,
                slice_range,
            )
            request.done = True
            return
        request.values.extend(values)
        logger.debug(
            "ldapmembership.ranges.slice dn=%s attribute=%s range=%s values=%d",
            request.entry_dn,
            request.attribute_name,
            slice_range,
            len(values),
        )
        if slice_range is None or slice_range.is_last:
            request.done = True
            return
        request.next_lower_bound = slice_range.upper + 1  # type: ignore[operator]

    def iter_values(
        self, entry_dn: str, attribute_name: str, lower_bound: int = 0
    ) -> Iterator[AttributeValue]:
        """
        Yield the values of ``attribute_name`` on ``entry_dn`` slice by slice,
        starting at value number ``lower_bound``.

        Raises:
            DirectorySearchFailed: one of the lookups failed

        """
        request = RangedAttributeRequest(entry_dn, attribute_name, lower_bound)
        while not request.done:
            already = len(request.values)
            self._step(request)
            yield from request.values[already:]

    def collect(
        self, entry_dn: str, attribute_name: str, lower_bound: int = 0
    ) -> list[AttributeValue]:
        """
        Return every value of ``attribute_name`` on ``entry_dn``, in server
        order, starting at value number ``lower_bound``.

        Args:
            entry_dn: DN of an entry we have already fetched
            attribute_name: the attribute name without any range subtype

        Keyword Args:
            lower_bound: index of the first value wanted

        Raises:
            DirectorySearchFailed: one of the lookups failed

        """
        return list(self.iter_values(entry_dn, attribute_name, lower_bound))
