import json
import logging
import os
import subprocess
import threading
from typing import Any, Dict, Optional

from ..exceptions import DirectoryUnavailable
from ..models.directory_models import ExecutionResult

logger = logging.getLogger(__name__)

HOST_SCRIPT = os.path.join(os.path.dirname(os.path.abspath(__file__)), "session_host.ps1")

_POWERSHELL_CANDIDATES = ("pwsh", "powershell", "powershell.exe")


def find_powershell_exe(preferred: Optional[str] = None) -> str:
    """
    Locate a PowerShell executable.

    Args:
        preferred: Executable name or path from configuration, tried first

    Returns:
        str: The first candidate that starts and reports a version
    """
    candidates = ([preferred] if preferred else []) + list(_POWERSHELL_CANDIDATES)
    for candidate in candidates:
        try:
            proc = subprocess.run(
                [candidate, "-NoProfile", "-Command", "$PSVersionTable.PSVersion.ToString()"],
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=30,
            )
        except (OSError, subprocess.TimeoutExpired):
            continue
        if proc.returncode == 0:
            logger.debug(f"Using PowerShell {proc.stdout.strip()} at {candidate}")
            return candidate
    raise DirectoryUnavailable("No PowerShell executable found")


class PowerShellSession:
    """
    One long-lived PowerShell host process.

    The process imports the ActiveDirectory module once and then serves
    requests over a JSON-lines protocol on stdin/stdout, so the module load
    and credential setup are paid once per session rather than per call.
    A session is not thread-safe; the pool hands it to one caller at a time.
    """

    def __init__(
        self,
        executable: str = "pwsh",
        server: Optional[str] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        host_script: str = HOST_SCRIPT,
    ):
        self.executable = executable
        self.server = server
        self.user = user
        self._password = password
        self.host_script = host_script

        self._process: Optional[subprocess.Popen] = None
        self._request_id = 0

    @property
    def is_open(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def open(self) -> None:
        """Start the host process and send the credential/server defaults."""
        if self.is_open:
            return

        command = [
            self.executable,
            "-NoLogo",
            "-NoProfile",
            "-NonInteractive",
            "-ExecutionPolicy", "Bypass",
            "-File", self.host_script,
        ]
        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            logger.error(f"Failed to start PowerShell host '{self.executable}': {e}")
            raise DirectoryUnavailable(f"Could not start PowerShell: {e}") from e

        self._process = process
        threading.Thread(
            target=self._drain_stderr, args=(process,), name="powershell-stderr", daemon=True
        ).start()

        ready = self._read_response(process)
        if not ready.get("ready"):
            errors = " | ".join(ready.get("errors") or []) or "host did not report ready"
            self.cancel()
            raise DirectoryUnavailable(f"PowerShell session failed to start: {errors}")

        if self.server or self.user:
            init = self._exchange(process, {
                "op": "init",
                "server": self.server,
                "user": self.user,
                "password": self._password,
            })
            if init.get("errors"):
                self.cancel()
                raise DirectoryUnavailable(
                    f"PowerShell session initialization failed: {' | '.join(init['errors'])}"
                )

        logger.info(f"PowerShell session started (pid {process.pid})")

    def invoke(self, script: str, parameters: Optional[Dict[str, Any]] = None) -> ExecutionResult:
        """
        Run one script in this session.

        Args:
            script: Script body; declares its inputs with a param() block
            parameters: Values splatted into the script as named parameters

        Returns:
            ExecutionResult: Records emitted by the script and any error text
        """
        if not self.is_open:
            self.open()
        process = self._process

        response = self._exchange(process, {
            "op": "run",
            "script": script,
            "parameters": parameters or {},
        })

        errors = [str(error) for error in response.get("errors") or []]
        records = [record for record in response.get("records") or [] if isinstance(record, dict)]
        return ExecutionResult(
            records=records,
            had_error=bool(errors),
            error_text=" | ".join(errors) if errors else None,
        )

    def cancel(self) -> None:
        """Kill the host process; the next invoke starts a fresh one."""
        process = self._process
        self._process = None
        if process is None:
            return
        try:
            process.kill()
            process.wait(timeout=5)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"PowerShell process {process.pid} did not exit cleanly: {e}")
        logger.debug(f"PowerShell session process {process.pid} killed")

    def close(self) -> None:
        """Ask the host to exit, killing it if it does not."""
        process = self._process
        if process is None:
            return
        try:
            if process.poll() is None:
                process.stdin.write(json.dumps({"op": "exit"}) + "\n")
                process.stdin.flush()
                process.stdin.close()
                process.wait(timeout=5)
            self._process = None
            logger.debug(f"PowerShell session process {process.pid} closed")
        except (OSError, ValueError, subprocess.TimeoutExpired) as e:
            logger.warning(f"Graceful PowerShell shutdown failed, killing process: {e}")
            self.cancel()

    def _exchange(self, process: subprocess.Popen, request: Dict[str, Any]) -> Dict[str, Any]:
        self._request_id += 1
        request = dict(request, id=self._request_id)
        try:
            process.stdin.write(json.dumps(request, default=str) + "\n")
            process.stdin.flush()
        except (OSError, ValueError) as e:
            self._discard(process)
            raise DirectoryUnavailable(f"PowerShell session is not accepting input: {e}") from e
        return self._read_response(process, self._request_id)

    def _read_response(self, process: subprocess.Popen, request_id: int = 0) -> Dict[str, Any]:
        while True:
            line = process.stdout.readline()
            if not line:
                self._discard(process)
                raise DirectoryUnavailable("PowerShell session exited unexpectedly")
            line = line.strip()
            if not line:
                continue
            try:
                response = json.loads(line)
            except json.JSONDecodeError:
                logger.debug(f"Ignoring non-protocol output from PowerShell host: {line[:200]}")
                continue
            if isinstance(response, dict) and response.get("id") == request_id:
                return response
            logger.debug(f"Ignoring response for request {response.get('id') if isinstance(response, dict) else '?'}")

    def _discard(self, process: subprocess.Popen) -> None:
        # Only forget the process if a cancel has not already replaced it
        if self._process is process:
            self._process = None
        if process.poll() is None:
            try:
                process.kill()
            except OSError:
                logger.debug(f"Process {process.pid} already gone")

    @staticmethod
    def _drain_stderr(process: subprocess.Popen) -> None:
        try:
            for line in process.stderr:
                line = line.rstrip()
                if line:
                    logger.debug(f"[pwsh {process.pid}] {line}")
        except (OSError, ValueError):
            return

    def __repr__(self) -> str:
        return f"PowerShellSession(executable='{self.executable}', server='{self.server}', open={self.is_open})"
