"""
Recursive LDAP/Active Directory group membership resolution for Django.
"""

__version__ = "1.0.0"
