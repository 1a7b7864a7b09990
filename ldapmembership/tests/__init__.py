import django
from django.conf import settings

# Configure Django settings before any test module imports ldapmembership code
if not settings.configured:
    settings.configure(
        LDAP_SERVERS={
            "test_server": {
                "basedn": "o=example",
                "read": {
                    "url": "ldap://localhost:389",
                    "user": "cn=admin,o=example",
                    "password": "admin",
                    "use_starttls": False,
                    "tls_verify": "never",
                    "timeout": 15.0,
                    "sizelimit": 1000,
                    "follow_referrals": False,
                },
                "groups": {
                    "uid_attribute": "cn",
                    "page_size": 100,
                    "cache_ttl": 600,
                },
            },
            "ad_server": {
                "basedn": "dc=example,dc=com",
                "read": {
                    "url": "ldaps://ad.example.com",
                    "user": "cn=reader,dc=example,dc=com",
                    "password": "secret",
                    "use_starttls": False,
                },
                "groups": {
                    "uid_attribute": "sAMAccountName",
                    "group_classes": ["group"],
                    "member_fields": ["member"],
                },
            },
        },
        CACHES={
            "default": {
                "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
                "LOCATION": "ldapmembership-tests",
            }
        },
        USE_TZ=True,
    )
    django.setup()
