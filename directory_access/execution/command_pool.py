import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..exceptions import DirectoryError, DirectoryUnavailable, ExecutionTimeout, ValidationError
from ..models.directory_models import ExecutionResult

logger = logging.getLogger(__name__)

DEFAULT_MIN_SESSIONS = 1
DEFAULT_MAX_SESSIONS = 4
DEFAULT_TIMEOUT = 30.0


class CommandExecutionPool:
    """
    Bounded pool of reusable script execution sessions.

    Sessions come from session_factory and are created lazily on first use.
    A session must provide invoke(script, parameters) -> ExecutionResult,
    cancel() and close(). The number of sessions caps how many scripts run
    at once; extra callers wait for a free session up to their timeout.

    Usage:
        pool = CommandExecutionPool(lambda: PowerShellSession(server="dc01"))
        with pool:
            result = pool.execute("param($Name) Get-ADUser -Identity $Name", {"Name": "jdoe"})
    """

    def __init__(
        self,
        session_factory: Callable[[], Any],
        min_sessions: int = DEFAULT_MIN_SESSIONS,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        default_timeout: float = DEFAULT_TIMEOUT,
    ):
        if not callable(session_factory):
            raise TypeError("session_factory must be callable")
        if min_sessions < 1 or max_sessions < min_sessions:
            raise ValueError(
                f"Invalid pool bounds: min_sessions={min_sessions}, max_sessions={max_sessions}"
            )
        if default_timeout <= 0:
            raise ValueError("default_timeout must be positive")

        self.session_factory = session_factory
        self.min_sessions = min_sessions
        self.max_sessions = max_sessions
        self.default_timeout = default_timeout

        self._lock = threading.Lock()
        self._slots = threading.BoundedSemaphore(max_sessions)
        self._idle: List[Any] = []
        self._sessions: List[Any] = []
        self._executor: Optional[ThreadPoolExecutor] = None
        self._timeouts = 0

        logger.debug(f"Command pool configured: {min_sessions}-{max_sessions} sessions, timeout {default_timeout}s")

    @property
    def is_open(self) -> bool:
        return self._executor is not None

    def open(self) -> "CommandExecutionPool":
        """Start the worker threads; sessions are still created on first use."""
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_sessions, thread_name_prefix="command-pool"
                )
                logger.info(f"Command pool opened (max {self.max_sessions} sessions)")
        return self

    def close(self) -> None:
        """
        Stop accepting work and close the sessions.

        Idle sessions are closed now. A session still running a script is
        closed by its caller when the script returns or times out, and
        close() waits for those calls to finish.
        """
        with self._lock:
            idle = list(self._idle)
            busy = len(self._sessions) - len(idle)
            self._sessions.clear()
            self._idle.clear()
            executor = self._executor
            self._executor = None

        for session in idle:
            self._close_session(session)

        if executor is not None:
            if busy:
                logger.info(f"Waiting for {busy} running scripts before closing the pool")
            executor.shutdown(wait=True)
            logger.info(f"Command pool closed ({len(idle) + busy} sessions)")

    def __enter__(self) -> "CommandExecutionPool":
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def execute(
        self,
        script: str,
        parameters: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> ExecutionResult:
        """
        Run a script in a pooled session with a hard timeout.

        Args:
            script: Script body
            parameters: Named values passed separately from the script body
            timeout: Seconds allowed for the call (defaults to the pool timeout).
                     The same bound applies to waiting for a free session.

        Returns:
            ExecutionResult: had_error is set whenever the error stream was non-empty

        Raises:
            ValidationError: If script is empty
            ExecutionTimeout: If the script ran past the timeout; the session's
                              process is killed and replaced on next use
            DirectoryUnavailable: If the pool is closed, no session freed up in
                                  time, or the session failed
        """
        if not script or not isinstance(script, str):
            raise ValidationError("script must be a non-empty string")
        effective_timeout = timeout if timeout and timeout > 0 else self.default_timeout
        session, executor = self._acquire(effective_timeout)
        started = time.monotonic()

        try:
            try:
                future = executor.submit(session.invoke, script, dict(parameters or {}))
            except RuntimeError as e:
                # executor shut down by a concurrent close()
                raise DirectoryUnavailable("Command execution pool is not open") from e
            try:
                result = future.result(timeout=effective_timeout)
            except FuturesTimeoutError:
                with self._lock:
                    self._timeouts += 1
                logger.warning(f"Script execution exceeded {effective_timeout}s, cancelling session {session!r}")
                future.cancel()
                self._cancel_session(session)
                raise ExecutionTimeout(f"Script execution exceeded the {effective_timeout}s timeout")
            except DirectoryError:
                self._cancel_session(session)
                raise
            except Exception as e:
                logger.error(f"Script execution failed in session {session!r}: {e}")
                self._cancel_session(session)
                raise DirectoryUnavailable(f"Script execution failed: {e}") from e
        finally:
            self._release(session)

        elapsed = time.monotonic() - started
        if result.had_error:
            logger.warning(f"Script completed with errors in {elapsed:.2f}s: {result.error_text}")
        else:
            logger.debug(f"Script completed in {elapsed:.2f}s with {len(result.records)} records")
        return result

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "max_sessions": self.max_sessions,
                "sessions": len(self._sessions),
                "idle": len(self._idle),
                "in_use": len(self._sessions) - len(self._idle),
                "timeouts": self._timeouts,
            }

    def _acquire(self, timeout: float) -> Tuple[Any, ThreadPoolExecutor]:
        """Reserve a slot and hand back a session with the executor it runs on."""
        if not self.is_open:
            raise DirectoryUnavailable("Command execution pool is not open")
        if not self._slots.acquire(timeout=timeout):
            raise DirectoryUnavailable(f"No execution session became available within {timeout}s")

        try:
            with self._lock:
                if self._executor is None:
                    raise DirectoryUnavailable("Command execution pool is not open")
                while len(self._sessions) < self.min_sessions:
                    self._idle.append(self._new_session())
                session = self._idle.pop() if self._idle else self._new_session()
                return session, self._executor
        except Exception:
            self._slots.release()
            raise

    def _new_session(self) -> Any:
        session = self.session_factory()
        self._sessions.append(session)
        logger.debug(f"Created execution session {len(self._sessions)}/{self.max_sessions}")
        return session

    def _release(self, session: Any) -> None:
        # Sessions dropped by close() while running are closed here
        with self._lock:
            keep = self._executor is not None and session in self._sessions
            if keep:
                self._idle.append(session)
        if not keep:
            self._close_session(session)
        self._slots.release()

    @staticmethod
    def _cancel_session(session: Any) -> None:
        try:
            session.cancel()
        except Exception as e:
            logger.warning(f"Failed to cancel session {session!r}: {e}")

    @staticmethod
    def _close_session(session: Any) -> None:
        try:
            session.close()
        except Exception as e:
            logger.warning(f"Error closing session {session!r}: {e}")

    def __repr__(self) -> str:
        return f"CommandExecutionPool(max_sessions={self.max_sessions}, open={self.is_open})"
