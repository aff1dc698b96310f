import unittest
from unittest.mock import MagicMock, patch

from scripts.directory import directory_admin


class TestDirectoryAdminScript(unittest.TestCase):

    def setUp(self):
        self.directory = MagicMock()
        self.directory.is_directory_available.return_value = True
        self.directory.get_current_backend.return_value = "ldap"
        self.directory.get_config_info.return_value = {"backend": "ldap"}
        self.parser = directory_admin.build_parser()

    def tearDown(self):
        patch.stopall()

    def _run(self, *argv):
        return directory_admin.run_command(self.directory, self.parser.parse_args(list(argv)))

    def test_check(self):
        """Test the connection check output."""
        self.assertEqual(self._run("check"), {"available": True, "backend": "ldap", "config": {"backend": "ldap"}})

    def test_search_users_arguments(self):
        """Test that search options reach the facade."""
        self._run("search-users", "jdoe", "--status", "enabled", "--take", "20", "--sort", "lastLogonAt")

        self.directory.search_users.assert_called_once_with(
            free_text="jdoe", scope_dn=None, status="enabled", take=20, skip=0,
            sort_by="lastLogonAt", descending=False, include_descendants=False,
        )

    def test_details_dispatch(self):
        """Test that DNs and logins go to different reads."""
        self._run("details", "CN=John Doe,DC=corp")
        self.directory.get_object_details.assert_called_once_with("CN=John Doe,DC=corp")

        self._run("details", "jdoe")
        self.directory.get_user_details.assert_called_once_with("jdoe")

    def test_identity_with_comma_and_equals_is_not_a_dn(self):
        """Test that only a parseable DN is treated as one."""
        self._run("details", "Doe, John (role=intern)")
        self.directory.get_user_details.assert_called_once_with("Doe, John (role=intern)")
        self.directory.get_object_details.assert_not_called()

    def test_move_dispatch(self):
        """Test that move picks the DN or login path the same way details does."""
        self._run("move", "CN=John Doe,OU=Staff,DC=corp", "OU=Alumni,DC=corp")
        self.directory.move_object.assert_called_once_with("CN=John Doe,OU=Staff,DC=corp", "OU=Alumni,DC=corp")

        self._run("move", "jdoe@corp.example.com", "OU=Alumni,DC=corp")
        self.directory.move_user_by_login.assert_called_once_with("jdoe@corp.example.com", "OU=Alumni,DC=corp")

    def test_reset_password_prompts(self):
        """Test that the password is read from the prompt."""
        patch.object(directory_admin.getpass, "getpass", return_value="N3w-Passw0rd!").start()

        self._run("reset-password", "jdoe", "--force-change")

        self.directory.reset_password.assert_called_once_with("jdoe", "N3w-Passw0rd!", True, False)

    def test_reset_password_mismatch(self):
        patch.object(directory_admin.getpass, "getpass", side_effect=["one", "two"]).start()

        with self.assertRaises(SystemExit):
            self._run("reset-password", "jdoe")
        self.directory.reset_password.assert_not_called()

    def test_failed_outcome_exits_non_zero(self):
        """Test the exit status for a failed write."""
        facade_class = patch.object(directory_admin, "DirectoryFacade").start()
        facade_class.return_value.__enter__.return_value.unlock_account.return_value = {
            "success": False, "error": "No user named 'nobody'", "errorType": "NotFound",
        }
        patch.object(directory_admin, "configure_logging").start()

        with self.assertRaises(SystemExit) as context:
            directory_admin.main(["unlock", "nobody"])
        self.assertEqual(context.exception.code, 1)


if __name__ == "__main__":
    unittest.main()
