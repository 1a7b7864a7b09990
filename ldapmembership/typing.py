"""
LDAP membership type definitions.

This module provides type aliases for raw python-ldap data and for the
structures produced while resolving group membership, using Python 3.10+
type hinting conventions.
"""

LDAPData = tuple[str, dict[str, list[bytes]]]
AttributeValue = str | bytes
AttributeMap = dict[str, list[AttributeValue]]
#: lowercased member DN -> lowercased unique id ("" when unknown)
MembershipMap = dict[str, str]
#: lowercased group DNs visited during one top-level resolution
SubgroupTrail = set[str]
