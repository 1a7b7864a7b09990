"""
Tests for ServerCapabilities.
"""

import unittest
from unittest.mock import Mock, patch

import ldap

from ldapmembership.capabilities import ServerCapabilities

PAGING = ServerCapabilities.PAGING_OID.encode()


class TestServerCapabilities(unittest.TestCase):
    """Test server capability detection."""

    def setUp(self):
        """Set up test fixtures."""
        self.mock_connection = Mock()
        self.capabilities = ServerCapabilities(default_page_size=500)

    def root_dse(self, attrs):
        self.mock_connection.search_s.return_value = [("", attrs)]

    def test_detect_openldap_server(self):
        """Test OpenLDAP server detection."""
        self.root_dse({"vendorName": [b"OpenLDAP Foundation"], "sizelimit": [b"1000"]})
        info = self.capabilities.get_server_info(self.mock_connection)
        self.assertEqual(info["flavor"], "openldap")

    def test_detect_active_directory_server(self):
        """Test Active Directory server detection."""
        self.root_dse({"forestFunctionality": [b"3"], "MaxPageSize": [b"1000"]})
        self.assertEqual(
            self.capabilities.get_server_info(self.mock_connection)["flavor"], "active_directory"
        )

    def test_detect_389_variants(self):
        """Test 389 Directory Server detection, including its relatives."""
        for vendor in (b"Fedora Project", b"Red Hat, Inc.", b"Oracle Corporation", b"ForgeRock AS"):
            with self.subTest(vendor=vendor):
                self.assertEqual(
                    ServerCapabilities.detect_flavor({"vendorName": [vendor]}), "389"
                )

    def test_detect_other_vendor(self):
        self.assertEqual(
            ServerCapabilities.detect_flavor({"vendorName": [b"Acme Directory"]}),
            "Acme Directory",
        )

    def test_detect_unknown_server(self):
        self.assertEqual(ServerCapabilities.detect_flavor({}), "unknown")

    def test_paging_supported(self):
        self.root_dse({"vendorName": [b"OpenLDAP Foundation"], "supportedControl": [PAGING]})
        with self.assertLogs("ldapmembership.capabilities", level="INFO") as logs:
            self.assertTrue(
                self.capabilities.supports_paging(self.mock_connection, "ldap.example.com:389")
            )
        self.assertIn("ldapmembership.capabilities.detected", logs.output[0])
        self.assertIn("endpoint=ldap.example.com:389", logs.output[0])

    def test_paging_feature_is_logged_once(self):
        self.root_dse({"supportedControl": [PAGING]})
        with patch("ldapmembership.capabilities.logger") as logger:
            self.capabilities.supports_paging(self.mock_connection)
            self.capabilities.supports_paging(self.mock_connection)
        self.assertEqual(logger.info.call_count, 1)

    def test_paging_not_supported(self):
        self.root_dse({"vendorName": [b"OpenLDAP Foundation"], "supportedControl": [b"1.2.3"]})
        self.assertFalse(self.capabilities.supports_paging(self.mock_connection))

    def test_page_size_limits(self):
        """Test page size detection for each flavor."""
        cases = [
            ({"forestFunctionality": [b"3"], "MaxPageSize": [b"1500"]}, 1500),
            ({"vendorName": [b"Fedora Project"], "nsslapd-sizelimit": [b"2000"]}, 2000),
            ({"vendorName": [b"OpenLDAP Foundation"], "sizelimit": [b"750"]}, 750),
            ({"vendorName": [b"OpenLDAP Foundation"], "sizelimit": [b"-1"]}, 500),
            ({"vendorName": [b"OpenLDAP Foundation"], "sizelimit": [b"3"]}, 10),
            ({"vendorName": [b"OpenLDAP Foundation"], "sizelimit": [b"lots"]}, 500),
            ({"vendorName": [b"Acme Directory"]}, 500),
        ]
        for attrs, expected in cases:
            with self.subTest(attrs=attrs):
                self.assertEqual(self.capabilities.parse_server_info(attrs)["page_size"], expected)

    def test_root_dse_is_cached(self):
        self.root_dse({"vendorName": [b"OpenLDAP Foundation"], "sizelimit": [b"750"]})
        self.capabilities.page_size_limit(self.mock_connection)
        self.capabilities.get_server_info(self.mock_connection)
        self.capabilities.supports_paging(self.mock_connection)
        self.assertEqual(self.mock_connection.search_s.call_count, 1)
        args = self.mock_connection.search_s.call_args[0]
        self.assertEqual(args[0], "")
        self.assertEqual(args[1], ldap.SCOPE_BASE)

    def test_cache_expires(self):
        self.root_dse({"vendorName": [b"OpenLDAP Foundation"]})
        capabilities = ServerCapabilities(ttl=60)
        with patch("ldapmembership.capabilities.time.time", return_value=1000.0):
            capabilities.get_server_info(self.mock_connection)
        with patch("ldapmembership.capabilities.time.time", return_value=1059.0):
            capabilities.get_server_info(self.mock_connection)
        self.assertEqual(self.mock_connection.search_s.call_count, 1)
        with patch("ldapmembership.capabilities.time.time", return_value=1060.0):
            capabilities.get_server_info(self.mock_connection)
        self.assertEqual(self.mock_connection.search_s.call_count, 2)

    def test_clear(self):
        self.root_dse({"vendorName": [b"OpenLDAP Foundation"]})
        self.capabilities.get_server_info(self.mock_connection)
        self.capabilities.clear()
        self.capabilities.get_server_info(self.mock_connection)
        self.assertEqual(self.mock_connection.search_s.call_count, 2)

    def test_instances_do_not_share_state(self):
        self.root_dse({"forestFunctionality": [b"3"]})
        self.capabilities.get_server_info(self.mock_connection)
        other_connection = Mock()
        other_connection.search_s.return_value = [("", {"vendorName": [b"OpenLDAP Foundation"]})]
        info = ServerCapabilities().get_server_info(other_connection)
        self.assertEqual(info["flavor"], "openldap")

    def test_root_dse_failure_falls_back_to_defaults(self):
        self.mock_connection.search_s.side_effect = ldap.INSUFFICIENT_ACCESS({"desc": "Insufficient access"})
        with self.assertLogs("ldapmembership.capabilities", level="WARNING") as logs:
            self.assertFalse(self.capabilities.supports_paging(self.mock_connection))
        self.assertIn("ldapmembership.capabilities.root-dse.failed", logs.output[0])
        self.assertEqual(self.capabilities.page_size_limit(self.mock_connection), 500)

    def test_server_down_propagates(self):
        self.mock_connection.search_s.side_effect = ldap.SERVER_DOWN({"desc": "Can't contact LDAP server"})
        with self.assertRaises(ldap.SERVER_DOWN):
            self.capabilities.get_server_info(self.mock_connection)

    def test_empty_root_dse(self):
        self.mock_connection.search_s.return_value = []
        info = self.capabilities.get_server_info(self.mock_connection)
        self.assertEqual(info["flavor"], "unknown")
        self.assertEqual(self.capabilities.page_size_limit(self.mock_connection), 500)
