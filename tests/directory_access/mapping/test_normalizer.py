import unittest
from datetime import datetime, timezone

from directory_access.mapping.normalizer import (
    password_change_required,
    record_enabled,
    record_locked,
    to_details,
    to_group_record,
    to_object_ref,
    to_ou_node,
    to_user_record,
)
from directory_access.models.directory_models import DirectoryObjectRef, ObjectClass

USER_DN = "CN=John Doe,OU=Staff,DC=corp,DC=example,DC=com"


class TestNormalizer(unittest.TestCase):

    def setUp(self):
        self.ldap_user = {
            "dn": USER_DN,
            "distinguishedName": USER_DN,
            "objectClass": ["top", "person", "organizationalPerson", "user"],
            "name": "John Doe",
            "sAMAccountName": "jdoe",
            "userPrincipalName": "jdoe@corp.example.com",
            "displayName": "John Doe",
            "mail": "jdoe@corp.example.com",
            "userAccountControl": 512,
            "lastLogonTimestamp": 133497882000000000,
            "pwdLastSet": 133497882000000000,
            "accountExpires": 0x7FFFFFFFFFFFFFFF,
            "lockoutTime": 0,
            "memberOf": ["CN=Helpdesk,OU=Groups,DC=corp,DC=example,DC=com"],
        }
        # Shape produced by the scripted backend
        self.scripted_user = {
            "DistinguishedName": USER_DN,
            "ObjectClass": "user",
            "Name": "John Doe",
            "SamAccountName": "jdoe",
            "Enabled": True,
            "LockedOut": True,
            "LastLogonDate": "2024-01-15T10:30:00.0000000Z",
        }

    # ----- Users -----

    def test_ldap_user_record(self):
        """Test normalizing an LDAP user entry."""
        user = to_user_record(self.ldap_user)

        self.assertEqual(user.distinguished_name, USER_DN)
        self.assertEqual(user.object_class, ObjectClass.USER)
        self.assertEqual(user.sam_account_name, "jdoe")
        self.assertTrue(user.enabled)
        self.assertIsNone(user.locked)
        self.assertEqual(user.last_logon_at, datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc))
        self.assertIsNone(user.account_expires_at)
        self.assertEqual(user.group_memberships, ["CN=Helpdesk,OU=Groups,DC=corp,DC=example,DC=com"])

    def test_scripted_user_record(self):
        """Test that PascalCase records from the scripted backend normalize the same way."""
        user = to_user_record(self.scripted_user)

        self.assertEqual(user.distinguished_name, USER_DN)
        self.assertEqual(user.sam_account_name, "jdoe")
        self.assertTrue(user.enabled)
        self.assertTrue(user.locked)
        self.assertEqual(user.email, "")
        self.assertIsNone(user.last_logon_at)

    def test_missing_account_control_defaults_enabled(self):
        """Test that an entry without flags reads as enabled."""
        self.assertTrue(record_enabled({"distinguishedName": USER_DN}))
        self.assertFalse(record_enabled({"userAccountControl": "514"}))
        self.assertFalse(record_enabled({"Enabled": "False"}))

    def test_lock_state_sources(self):
        """Test which lock indicators a raw record is trusted for."""
        self.assertTrue(record_locked({"LockedOut": "True", "lockoutTime": 0}))
        self.assertFalse(record_locked({"msDS-User-Account-Control-Computed": 0, "lockoutTime": 133497882000000000}))
        self.assertTrue(record_locked({"msDS-User-Account-Control-Computed": 16}))
        self.assertIsNone(record_locked({"lockoutTime": 133497882000000000}))
        self.assertIsNone(record_locked({"lockoutTime": "0"}))
        self.assertIsNone(record_locked({}))

    def test_password_change_required(self):
        """Test detection of a pending forced password change."""
        self.assertTrue(password_change_required({"pwdLastSet": 0}))
        self.assertTrue(password_change_required({"pwdLastSet": ["0"]}))
        self.assertTrue(password_change_required({"pwdLastSet": datetime(1601, 1, 1, tzinfo=timezone.utc)}))
        self.assertFalse(password_change_required({"pwdLastSet": 133497882000000000}))
        self.assertFalse(password_change_required({}))

    # ----- Other classes -----

    def test_group_record(self):
        """Test group member counting."""
        group = to_group_record({
            "distinguishedName": "CN=Helpdesk,DC=corp",
            "cn": "Helpdesk",
            "member": ["CN=a,DC=corp", "CN=b,DC=corp"],
        })
        self.assertEqual(group.name, "Helpdesk")
        self.assertEqual(group.member_count, 2)
        self.assertEqual(group.member_refs, [])

    def test_ou_node(self):
        """Test OU node parent and name."""
        node = to_ou_node({"distinguishedName": "OU=Sales\\, East,DC=corp,DC=com"}, child_count=3)
        self.assertEqual(node.name, "Sales, East")
        self.assertEqual(node.parent_dn, "DC=corp,DC=com")
        self.assertEqual(node.child_count, 3)

    def test_object_ref_uses_most_specific_class(self):
        """Test that computers are not reported as users."""
        ref = to_object_ref({
            "distinguishedName": "CN=WS01,DC=corp",
            "objectClass": ["top", "person", "organizationalPerson", "user", "computer"],
        })
        self.assertEqual(ref.object_class, ObjectClass.COMPUTER)
        self.assertEqual(ref.name, "WS01")

    def test_object_ref_hint(self):
        """Test the class hint for records without objectClass."""
        ref = to_object_ref({"distinguishedName": "CN=x,DC=corp"}, ObjectClass.GROUP)
        self.assertEqual(ref.object_class, ObjectClass.GROUP)

    # ----- Details -----

    def test_user_details(self):
        """Test the details model for a user."""
        details = to_details(self.ldap_user, locked=True)

        self.assertEqual(details.object_class, ObjectClass.USER)
        self.assertEqual(details.display_name, "John Doe")
        self.assertTrue(details.enabled)
        self.assertTrue(details.locked)
        self.assertEqual(details.extensions["ouPath"], "Staff")
        self.assertEqual(details.extensions["groups"], ["Helpdesk"])
        self.assertFalse(details.extensions["mustChangePassword"])
        self.assertIsNone(details.extensions["accountExpiresAt"])
        self.assertNotIn("dn", details.attributes)
        self.assertEqual(details.attributes["sAMAccountName"], ["jdoe"])

    def test_group_details_with_member_refs(self):
        """Test that resolved members replace raw DNs."""
        refs = [DirectoryObjectRef("CN=John Doe,DC=corp", ObjectClass.USER, "John Doe")]
        details = to_details(
            {"distinguishedName": "CN=Helpdesk,DC=corp", "objectClass": ["group"], "member": ["CN=John Doe,DC=corp"]},
            member_refs=refs,
        )

        self.assertEqual(details.extensions["memberCount"], 1)
        self.assertEqual(details.extensions["members"], [
            {"distinguished_name": "CN=John Doe,DC=corp", "object_class": "user", "name": "John Doe"}
        ])
        self.assertIsNone(details.enabled)

    def test_details_serialize(self):
        """Test that details serialize to JSON-friendly values."""
        data = to_details(self.ldap_user).to_dict()

        self.assertEqual(data["object_class"], "user")
        self.assertEqual(data["last_logon_at"], "2024-01-15T10:30:00+00:00")
        self.assertEqual(data["extensions"]["passwordLastSetAt"], "2024-01-15T10:30:00+00:00")


if __name__ == "__main__":
    unittest.main()
