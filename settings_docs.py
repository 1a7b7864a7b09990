"""
Minimal Django settings for Sphinx documentation generation.

This settings file is designed to allow Sphinx autodoc to import ldapmembership
without requiring a directory server or a running Django application.
"""

from pathlib import Path

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = "django-insecure-docs-only-key-for-sphinx"  # noqa: S105

# SECURITY WARNING: don't run with debug turned on in production!
DEBUG = True

ALLOWED_HOSTS: list[str] = []

# Application definition
DJANGO_APPS = [
    "django.contrib.contenttypes",
]

THIRD_PARTY_APPS = [
    "ldapmembership",
]

INSTALLED_APPS = [*DJANGO_APPS, *THIRD_PARTY_APPS]

# Database - Use in-memory SQLite for docs
DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

# Internationalization
LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

# LDAP configuration (minimal for docs)
LDAP_SERVERS = {
    "default": {
        "basedn": "dc=example,dc=com",
        "read": {
            "url": "ldap://localhost",
            "user": "cn=admin,dc=example,dc=com",
            "password": "password",
        },
        "groups": {
            "uid_attribute": "uid",
            "member_fields": ["member", "uniqueMember", "memberUid"],
            "cache_ttl": 21600,
        },
    }
}

LDAPMEMBERSHIP_PAGE_SIZE = 500

# Disable cache for docs
CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.dummy.DummyCache",
    }
}

# Disable logging for docs
LOGGING = {
    "version": 1,
    "disable_existing_loggers": True,
    "handlers": {
        "null": {
            "class": "logging.NullHandler",
        },
    },
    "root": {
        "handlers": ["null"],
    },
}
