import unittest

from directory_access.engines.resolution import looks_like_dn, resolve_identity
from directory_access.exceptions import NotFound, ValidationError
from directory_access.models.directory_models import ObjectClass
from tests.directory_access.fake_directory import FakeDirectoryAdapter


class TestResolution(unittest.TestCase):

    def setUp(self):
        self.directory = FakeDirectoryAdapter()
        self.jdoe = self.directory.add_user("jdoe", "Doe, John")

    def test_looks_like_dn(self):
        """Test DN detection against login-style identities."""
        self.assertTrue(looks_like_dn("CN=Doe\\, John,DC=corp,DC=example,DC=com"))
        self.assertFalse(looks_like_dn("jdoe"))
        self.assertFalse(looks_like_dn("jdoe@corp.example.com"))
        self.assertFalse(looks_like_dn("CN=jdoe"))

    def test_dn_is_read_directly(self):
        """Test that a DN identity is read at base scope, not searched."""
        record = resolve_identity(self.directory, self.jdoe)

        self.assertEqual(record["sAMAccountName"], "jdoe")
        self.assertEqual(self.directory.count_calls("search"), 0)

    def test_missing_dn(self):
        with self.assertRaises(NotFound):
            resolve_identity(self.directory, "CN=Ghost,DC=corp,DC=example,DC=com")

    def test_wrong_class(self):
        """Test that a login lookup only matches the requested class."""
        with self.assertRaises(NotFound):
            resolve_identity(self.directory, "jdoe", ObjectClass.GROUP)

    def test_blank_identity(self):
        with self.assertRaises(ValidationError):
            resolve_identity(self.directory, None)


if __name__ == "__main__":
    unittest.main()
