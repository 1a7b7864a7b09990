"""
Signals sent by ldapmembership.
"""

from django.dispatch import Signal

#: Sent after a :py:class:`~ldapmembership.membership.MembershipService` has
#: dropped every cached membership.  ``sender`` is the service class; the
#: ``service`` and ``cache_key`` keyword arguments identify which cache.
membership_cache_invalidated = Signal()
