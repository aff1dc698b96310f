import io
import json
import queue
import subprocess
import unittest
from unittest.mock import MagicMock, patch

from directory_access.exceptions import DirectoryUnavailable
from directory_access.execution.powershell_session import (
    HOST_SCRIPT,
    PowerShellSession,
    find_powershell_exe,
)


class FakeHostProcess:
    """Stands in for the PowerShell host: answers each request line with the responder's lines."""

    def __init__(self, responder, ready=None):
        self.pid = 4242
        self.responder = responder
        self.requests = []
        self.returncode = None
        self.killed = False
        self._lines = queue.Queue()
        self._lines.put(json.dumps(ready or {"id": 0, "ready": True, "records": [], "errors": []}) + "\n")
        self.stdin = MagicMock()
        self.stdin.write.side_effect = self._receive
        self.stdout = MagicMock()
        self.stdout.readline.side_effect = self._readline
        self.stderr = io.StringIO("")

    def _receive(self, text):
        request = json.loads(text)
        self.requests.append(request)
        if request["op"] == "exit":
            self.returncode = 0
            return
        for line in self.responder(request):
            self._lines.put(line + "\n")

    def _readline(self):
        if self._lines.empty() and self.returncode is not None:
            return ""
        return self._lines.get(timeout=2)

    def poll(self):
        return self.returncode

    def kill(self):
        self.killed = True
        self.returncode = -9

    def wait(self, timeout=None):
        return self.returncode


def answer(records=None, errors=None, noise=None):
    def responder(request):
        lines = list(noise or [])
        lines.append(json.dumps({"id": request["id"], "records": records or [], "errors": errors or []}))
        return lines
    return responder


class TestPowerShellSession(unittest.TestCase):

    def setUp(self):
        self.processes = []
        self.responder = answer(records=[{"Name": "jdoe"}])
        self.popen = patch(
            "directory_access.execution.powershell_session.subprocess.Popen",
            side_effect=self._spawn,
        ).start()

    def tearDown(self):
        patch.stopall()

    def _spawn(self, *args, **kwargs):
        process = FakeHostProcess(self.responder)
        self.processes.append(process)
        return process

    # ----- Startup -----

    def test_open_starts_host_script(self):
        """Test the host command line."""
        session = PowerShellSession(executable="pwsh")
        session.open()

        command = self.popen.call_args[0][0]
        self.assertEqual(command[0], "pwsh")
        self.assertIn("-NonInteractive", command)
        self.assertEqual(command[-2:], ["-File", HOST_SCRIPT])
        self.assertTrue(session.is_open)

    def test_open_sends_credentials(self):
        """Test that server and credentials are sent once at startup."""
        self.responder = answer()
        session = PowerShellSession(server="dc01", user="CORP\\svc", password="secret")
        session.open()

        init = self.processes[0].requests[0]
        self.assertEqual(init["op"], "init")
        self.assertEqual(init["server"], "dc01")
        self.assertEqual(init["user"], "CORP\\svc")
        self.assertEqual(init["password"], "secret")

    def test_host_not_ready(self):
        """Test that a host that fails to load the module is unavailable."""
        self.popen.side_effect = lambda *a, **k: FakeHostProcess(
            self.responder, ready={"id": 0, "ready": False, "errors": ["ActiveDirectory module not found"]}
        )
        session = PowerShellSession()

        with self.assertRaises(DirectoryUnavailable) as context:
            session.open()
        self.assertIn("ActiveDirectory module not found", str(context.exception))
        self.assertFalse(session.is_open)

    def test_executable_missing(self):
        """Test that a missing executable is unavailable."""
        self.popen.side_effect = FileNotFoundError("pwsh")
        with self.assertRaises(DirectoryUnavailable):
            PowerShellSession().open()

    # ----- Invocation -----

    def test_invoke_returns_records(self):
        """Test that records are returned and non-protocol output is skipped."""
        self.responder = answer(records=[{"Name": "jdoe"}, "stray text"], noise=["WARNING: slow DC"])
        session = PowerShellSession()

        result = session.invoke("param($Name) Get-ADUser $Name", {"Name": "jdoe"})

        self.assertFalse(result.had_error)
        self.assertEqual(result.records, [{"Name": "jdoe"}])
        request = self.processes[0].requests[-1]
        self.assertEqual(request["op"], "run")
        self.assertEqual(request["parameters"], {"Name": "jdoe"})

    def test_invoke_joins_errors(self):
        """Test that every error record is reported, joined in order."""
        self.responder = answer(errors=["first failure", "second failure"])
        result = PowerShellSession().invoke("Get-ADUser nobody")

        self.assertTrue(result.had_error)
        self.assertEqual(result.error_text, "first failure | second failure")

    def test_host_exit_is_unavailable(self):
        """Test that a host that dies mid-call is reported and forgotten."""
        session = PowerShellSession()
        session.open()

        def die(request):
            self.processes[0].returncode = 1
            return []
        self.processes[0].responder = die

        with self.assertRaises(DirectoryUnavailable):
            session.invoke("Get-ADUser jdoe")
        self.assertFalse(session.is_open)

    def test_cancel_then_invoke_starts_new_process(self):
        """Test that a killed session restarts on next use."""
        session = PowerShellSession()
        session.open()
        session.cancel()

        self.assertTrue(self.processes[0].killed)
        self.assertFalse(session.is_open)

        session.invoke("Get-ADDomain")
        self.assertEqual(len(self.processes), 2)

    def test_close_sends_exit(self):
        """Test graceful shutdown."""
        session = PowerShellSession()
        session.open()
        session.close()

        self.assertEqual(self.processes[0].requests[-1], {"op": "exit"})
        self.assertFalse(self.processes[0].killed)
        self.assertFalse(session.is_open)


class TestFindPowerShell(unittest.TestCase):

    def tearDown(self):
        patch.stopall()

    def test_first_working_candidate(self):
        """Test that candidates are tried in order."""
        run = patch("directory_access.execution.powershell_session.subprocess.run").start()
        run.side_effect = [FileNotFoundError("pwsh"), MagicMock(returncode=0, stdout="5.1.19041\n")]

        self.assertEqual(find_powershell_exe(), "powershell")

    def test_preferred_executable_first(self):
        """Test that the configured executable wins."""
        run = patch("directory_access.execution.powershell_session.subprocess.run").start()
        run.return_value = MagicMock(returncode=0, stdout="7.4.1\n")

        self.assertEqual(find_powershell_exe("C:\\Tools\\pwsh.exe"), "C:\\Tools\\pwsh.exe")

    def test_nothing_found(self):
        """Test that no working executable is unavailable."""
        run = patch("directory_access.execution.powershell_session.subprocess.run").start()
        run.side_effect = subprocess.TimeoutExpired("pwsh", 30)

        with self.assertRaises(DirectoryUnavailable):
            find_powershell_exe()


if __name__ == "__main__":
    unittest.main()
