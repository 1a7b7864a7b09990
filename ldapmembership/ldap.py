# This file is here so that we can patch the ldap module in our tests.
# The directory client calls ``ldap.initialize`` through this module, so tests
# can replace it with a mock connection factory without touching python-ldap.
import ldap
from ldap import *  # noqa: F403

__version__ = ldap.__version__
