import unittest
from datetime import datetime, timezone

from directory_access.mapping.attribute_mapper import (
    FILETIME_NEVER,
    NEVER_LABEL,
    build_dn,
    format_timestamp,
    is_enabled,
    is_locked,
    ou_path,
    parent_dn,
    rdn_attribute,
    rdn_value,
    read_flags,
    read_multi_valued,
    read_raw,
    read_scalar,
    read_timestamp,
    read_timestamp_attribute,
    same_dn,
    split_dn,
)

# 2024-01-15T10:30:00Z as FILETIME ticks
JAN_15_2024 = 133497882000000000


class TestAttributeMapper(unittest.TestCase):

    # ----- Raw and scalar reads -----

    def test_read_raw_is_case_insensitive(self):
        """Test that attribute names match regardless of casing."""
        record = {"DistinguishedName": "CN=a,DC=corp"}
        self.assertEqual(read_raw(record, "distinguishedName"), "CN=a,DC=corp")
        self.assertIsNone(read_raw(record, "mail"))
        self.assertIsNone(read_raw(None, "mail"))

    def test_read_scalar_takes_first_value(self):
        """Test that a list value yields its first element."""
        self.assertEqual(read_scalar({"mail": ["a@x", "b@x"]}, "mail"), "a@x")

    def test_read_scalar_bad_value_returns_default(self):
        """Test that a failed conversion returns the default instead of raising."""
        self.assertEqual(read_scalar({"userAccountControl": "abc"}, "userAccountControl", cast=int, default=7), 7)
        self.assertEqual(read_scalar({"LockedOut": "maybe"}, "LockedOut", cast=bool, default=False), False)

    def test_read_scalar_bool_strings(self):
        """Test boolean coercion of text values."""
        self.assertTrue(read_scalar({"Enabled": "True"}, "Enabled", cast=bool))
        self.assertFalse(read_scalar({"Enabled": "false"}, "Enabled", cast=bool))

    def test_read_scalar_decodes_bytes(self):
        """Test that byte values become text."""
        self.assertEqual(read_scalar({"cn": b"J\xc3\xa9r\xc3\xb4me"}, "cn"), "Jérôme")

    def test_read_multi_valued_keeps_order_and_duplicates(self):
        """Test that multi-valued attributes are returned exactly as held."""
        record = {"memberOf": ["CN=B,DC=corp", "CN=A,DC=corp", "CN=B,DC=corp"]}
        self.assertEqual(read_multi_valued(record, "memberof"), ["CN=B,DC=corp", "CN=A,DC=corp", "CN=B,DC=corp"])

    def test_read_multi_valued_single_and_missing(self):
        """Test scalar, empty and missing multi-valued reads."""
        self.assertEqual(read_multi_valued({"member": "CN=A,DC=corp"}, "member"), ["CN=A,DC=corp"])
        self.assertEqual(read_multi_valued({"member": ""}, "member"), [])
        self.assertEqual(read_multi_valued({}, "member"), [])

    # ----- Flags -----

    def test_flags(self):
        """Test the enabled and locked bit checks."""
        self.assertTrue(is_enabled(512))
        self.assertFalse(is_enabled(514))
        self.assertTrue(is_enabled(None))
        self.assertTrue(is_locked(0x10))
        self.assertFalse(is_locked(0x2))

    def test_read_flags_malformed_is_zero(self):
        """Test that missing or malformed flags read as zero."""
        self.assertEqual(read_flags({}, "userAccountControl"), 0)
        self.assertEqual(read_flags({"userAccountControl": "x"}, "userAccountControl"), 0)
        self.assertEqual(read_flags({"userAccountControl": "514"}, "userAccountControl"), 514)

    # ----- Timestamps -----

    def test_filetime_conversion(self):
        """Test FILETIME integers and strings."""
        expected = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)
        self.assertEqual(read_timestamp(JAN_15_2024), expected)
        self.assertEqual(read_timestamp(str(JAN_15_2024)), expected)
        self.assertEqual(read_timestamp([JAN_15_2024]), expected)

    def test_never_sentinels_map_to_none(self):
        """Test that zero and the maximum FILETIME both mean never."""
        self.assertIsNone(read_timestamp(0))
        self.assertIsNone(read_timestamp("0"))
        self.assertIsNone(read_timestamp(FILETIME_NEVER))
        self.assertIsNone(read_timestamp(datetime(1601, 1, 1, tzinfo=timezone.utc)))
        self.assertIsNone(read_timestamp(datetime(9999, 12, 31, 23, 59, 59)))

    def test_never_renders_as_label(self):
        """Test the display rendering of a never timestamp."""
        self.assertEqual(format_timestamp(read_timestamp(FILETIME_NEVER)), NEVER_LABEL)
        self.assertEqual(
            format_timestamp(datetime(2024, 1, 15, tzinfo=timezone.utc)),
            "2024-01-15T00:00:00+00:00",
        )

    def test_decoded_datetimes(self):
        """Test datetimes produced by the protocol library."""
        naive = datetime(2024, 5, 1, 8, 0)
        self.assertEqual(read_timestamp(naive), naive.replace(tzinfo=timezone.utc))

    def test_text_formats(self):
        """Test /Date()/ and ISO timestamps."""
        self.assertEqual(
            read_timestamp("/Date(1705314600000)/"),
            datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc),
        )
        self.assertEqual(
            read_timestamp("2024-01-15T10:30:00Z"),
            datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc),
        )

    def test_unparseable_timestamp_is_none(self):
        """Test that garbage never raises."""
        self.assertIsNone(read_timestamp("yesterday-ish"))
        self.assertIsNone(read_timestamp(True))
        self.assertIsNone(read_timestamp(""))
        self.assertIsNone(read_timestamp(-5))

    def test_first_real_timestamp_wins(self):
        """Test the fallback between timestamp attributes."""
        record = {"lastLogonTimestamp": 0, "lastLogon": JAN_15_2024}
        self.assertEqual(
            read_timestamp_attribute(record, "lastLogonTimestamp", "lastLogon"),
            datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc),
        )
        self.assertIsNone(read_timestamp_attribute({}, "lastLogonTimestamp", "lastLogon"))

    # ----- Distinguished names -----

    def test_split_dn_respects_escaped_commas(self):
        """Test that escaped commas stay inside their RDN."""
        self.assertEqual(
            split_dn("OU=Sales\\, East,DC=corp,DC=com"),
            ["OU=Sales\\, East", "DC=corp", "DC=com"],
        )

    def test_dn_parts(self):
        """Test parent, RDN value and RDN attribute extraction."""
        dn = "CN=Doe\\, John,OU=Staff,DC=corp,DC=com"
        self.assertEqual(parent_dn(dn), "OU=Staff,DC=corp,DC=com")
        self.assertEqual(rdn_value(dn), "Doe, John")
        self.assertEqual(rdn_attribute(dn), "CN")
        self.assertIsNone(parent_dn("DC=com"))

    def test_dn_escapes_and_spacing(self):
        """Test hex escapes, spaces after separators and multi-valued RDNs."""
        self.assertEqual(rdn_value("OU=Sales\\2C East,DC=corp"), "Sales, East")
        self.assertEqual(split_dn("CN=John, OU=Staff , DC=corp"), ["CN=John", "OU=Staff", "DC=corp"])
        self.assertEqual(split_dn("CN=John+UID=jdoe,DC=corp"), ["CN=John+UID=jdoe", "DC=corp"])
        self.assertEqual(ou_path("CN=John,OU=Sales\\, East,OU=Staff,DC=corp"), "Staff > Sales, East")

    def test_dn_with_inner_hash(self):
        """Test names containing '#' as the directory returns them."""
        self.assertEqual(rdn_value("OU=C#Devs,DC=corp"), "C#Devs")
        self.assertEqual(parent_dn("OU=C#Devs,DC=corp"), "DC=corp")
        self.assertEqual(build_dn("OU", "C# Devs", "DC=corp"), "OU=C\\# Devs,DC=corp")
        self.assertEqual(build_dn("OU", "#Ops", "DC=corp"), "OU=\\#Ops,DC=corp")
        self.assertTrue(same_dn("OU=C#Devs,DC=corp", "OU=C\\#Devs,DC=corp"))

    def test_unparseable_dn(self):
        """Test that text which is not a DN yields no parts instead of raising."""
        self.assertEqual(split_dn("jdoe@corp.example.com"), [])
        self.assertEqual(split_dn(""), [])
        self.assertEqual(rdn_value("jdoe"), "")
        self.assertEqual(rdn_attribute("jdoe"), "")
        self.assertFalse(same_dn("jdoe", "jdoe"))

    def test_ou_path(self):
        """Test the root-first OU path."""
        self.assertEqual(
            ou_path("CN=John,OU=Contractors,OU=Staff,DC=corp,DC=com"),
            "Staff > Contractors",
        )
        self.assertEqual(ou_path("CN=John,CN=Users,DC=corp,DC=com"), "")

    def test_same_dn(self):
        """Test case- and spacing-insensitive DN comparison."""
        self.assertTrue(same_dn("CN=John,OU=Staff,DC=corp", "cn=john, ou=staff, dc=corp"))
        self.assertFalse(same_dn("CN=John,OU=Staff,DC=corp", "CN=John,DC=corp"))
        self.assertFalse(same_dn(None, "CN=John"))

    def test_build_dn_escapes_value(self):
        """Test that special characters in a new name are escaped."""
        self.assertEqual(build_dn("OU", "Sales, East", "DC=corp"), "OU=Sales\\, East,DC=corp")


if __name__ == "__main__":
    unittest.main()
