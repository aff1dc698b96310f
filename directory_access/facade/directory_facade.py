import logging
from typing import Any, Callable, Dict, Optional

import keyring
from keyring.errors import KeyringError

from ..adapters.base_directory_adapter import BaseDirectoryAdapter
from ..adapters.ldap_adapter import LDAPAdapter
from ..adapters.powershell_adapter import PowerShellAdapter
from ..config import DirectoryConfig
from ..engines.mutation_engine import MutationEngine
from ..engines.query_engine import DEFAULT_RESULT_CEILING, QueryEngine
from ..exceptions import DirectoryError, DirectoryUnavailable, PartialFailure
from ..execution.command_pool import CommandExecutionPool
from ..execution.powershell_session import PowerShellSession, find_powershell_exe
from ..models.directory_models import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    MutationResult,
    QueryOptions,
)

logger = logging.getLogger(__name__)


class DirectoryFacade:
    """
    High-level directory access for the web layer.

    Reads return plain dictionaries shaped {"items": [...], "total": n} (or a
    single object dictionary) and raise DirectoryError subclasses on failure.
    Writes never raise DirectoryError; they return an outcome dictionary
    {"success": bool, "error"?: str, "errorType"?: str, ...}.

    Usage:
        with DirectoryFacade() as directory:
            page = directory.search_users(free_text="jdoe", status="enabled", take=50)
            outcome = directory.add_member("Helpdesk", "jdoe")
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        adapter: Optional[BaseDirectoryAdapter] = None,
        pool: Optional[CommandExecutionPool] = None,
    ):
        """
        Initialize directory facade with configuration.

        Args:
            config: Optional configuration dict. If None, loads from environment.
            adapter: Optional backend, bypassing configuration-based selection
            pool: Optional execution pool for the PowerShell backend
        """
        self.config = config or DirectoryConfig.get_config()
        self.pool = pool
        self.adapter = adapter or self._create_adapter()

        self.query = QueryEngine(
            self.adapter,
            default_page_size=self.config.get('default_page_size', DEFAULT_PAGE_SIZE),
            max_page_size=self.config.get('max_page_size', MAX_PAGE_SIZE),
            result_ceiling=self.config.get('result_ceiling', DEFAULT_RESULT_CEILING),
        )
        self.mutation = MutationEngine(self.adapter)

    def _create_adapter(self) -> BaseDirectoryAdapter:
        """Create appropriate adapter based on configuration."""
        backend = self.config.get('backend', 'ldap')

        if backend == 'ldap':
            return LDAPAdapter(self.config)
        elif backend == 'powershell':
            if self.pool is None:
                self.pool = self._create_pool()
            return PowerShellAdapter(self.config, self.pool)
        else:
            raise ValueError(f"Unsupported directory backend: {backend}")

    def _create_pool(self) -> CommandExecutionPool:
        executable = find_powershell_exe(self.config.get('powershell_exe'))
        server = self.config.get('server')
        user = self.config.get('user')
        password = self._service_password()

        def session_factory() -> PowerShellSession:
            return PowerShellSession(executable=executable, server=server, user=user, password=password)

        pool = CommandExecutionPool(
            session_factory,
            min_sessions=self.config.get('pool_min_sessions', 1),
            max_sessions=self.config.get('pool_max_sessions', 4),
            default_timeout=self.config.get('script_timeout', 30.0),
        )
        return pool.open()

    def _service_password(self) -> Optional[str]:
        """Password for explicit credentials; None runs sessions as the current identity."""
        if self.config.get('password'):
            return self.config['password']
        keyring_service = self.config.get('keyring_service')
        user = self.config.get('user')
        if not keyring_service or not user:
            return None
        try:
            password = keyring.get_password(keyring_service, user)
        except KeyringError as e:
            raise DirectoryUnavailable(f"Keyring lookup failed for {user}: {e}") from e
        if not password:
            raise DirectoryUnavailable(f"No password stored in keyring service '{keyring_service}' for {user}")
        return password

    def close(self) -> None:
        self.adapter.close()

    def __enter__(self) -> "DirectoryFacade":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # Reads

    def search_users(
        self,
        free_text: Optional[str] = None,
        scope_dn: Optional[str] = None,
        status: str = "any",
        take: Optional[int] = None,
        skip: int = 0,
        sort_by: str = "displayName",
        descending: bool = False,
        include_descendants: bool = False,
    ) -> Dict[str, Any]:
        options = QueryOptions(
            free_text=free_text,
            scope_dn=scope_dn,
            status_filter=status,
            page_size=take,
            page_offset=skip,
            sort_field=sort_by,
            sort_descending=descending,
            include_descendants=include_descendants,
        )
        return self.query.search(options).to_dict()

    def search_groups(self, free_text: Optional[str] = None, take: Optional[int] = None, skip: int = 0) -> Dict[str, Any]:
        return self.query.search_groups(free_text, take, skip).to_dict()

    def get_group_members(self, group_identity: str, take: Optional[int] = None, skip: int = 0) -> Dict[str, Any]:
        return self.query.get_group_members(group_identity, take, skip).to_dict()

    def list_organizational_units(
        self,
        parent_dn: Optional[str] = None,
        take: Optional[int] = None,
        skip: int = 0,
        recursive: bool = False,
    ) -> Dict[str, Any]:
        return self.query.list_organizational_units(parent_dn, take, skip, recursive).to_dict()

    def list_container_objects(
        self,
        container_dn: str,
        free_text: Optional[str] = None,
        take: Optional[int] = None,
        skip: int = 0,
    ) -> Dict[str, Any]:
        return self.query.list_container_objects(container_dn, free_text, take, skip).to_dict()

    def get_user(self, identity: str) -> Dict[str, Any]:
        return self.query.get_user(identity).to_dict()

    def get_user_details(self, identity: str) -> Dict[str, Any]:
        return self.query.get_user_details(identity).to_dict()

    def get_object_details(self, distinguished_name: str) -> Dict[str, Any]:
        return self.query.get_object_details(distinguished_name).to_dict()

    # Writes

    def _outcome(self, operation: Callable[..., MutationResult], *args, **kwargs) -> Dict[str, Any]:
        try:
            result = operation(*args, **kwargs)
        except PartialFailure as e:
            logger.warning(f"{e.operation} partially applied to {e.target_dn}: {e.failed_steps}")
            return {
                "success": False,
                "partial": True,
                "error": str(e),
                "errorType": type(e).__name__,
                "targetDn": e.target_dn,
                "completedSteps": e.completed_steps,
                "failedSteps": e.failed_steps,
            }
        except DirectoryError as e:
            logger.warning(f"{getattr(operation, '__name__', 'operation')} failed: {e}")
            return {"success": False, "error": str(e), "errorType": type(e).__name__}

        return {
            "success": result.success,
            "operation": result.operation,
            "targetDn": result.target_dn,
            "changed": result.changed,
            "verified": result.verified,
            "message": result.message,
            "completedSteps": result.completed_steps,
        }

    def create_container(self, parent_dn: str, name: str, description: Optional[str] = None) -> Dict[str, Any]:
        return self._outcome(self.mutation.create_container, parent_dn, name, description)

    def rename_container(self, distinguished_name: str, new_name: str) -> Dict[str, Any]:
        return self._outcome(self.mutation.rename_container, distinguished_name, new_name)

    def delete_container(self, distinguished_name: str) -> Dict[str, Any]:
        return self._outcome(self.mutation.delete_container, distinguished_name)

    def move_object(self, object_dn: str, target_parent_dn: str) -> Dict[str, Any]:
        return self._outcome(self.mutation.move_object, object_dn, target_parent_dn)

    def move_user_by_login(self, login: str, target_parent_dn: str) -> Dict[str, Any]:
        return self._outcome(self.mutation.move_user_by_login, login, target_parent_dn)

    def set_account_enabled(self, identity: str, enabled: bool) -> Dict[str, Any]:
        return self._outcome(self.mutation.set_account_enabled, identity, enabled)

    def reset_password(
        self,
        identity: str,
        new_password: str,
        force_change_at_next_logon: bool = False,
        unlock_if_locked: bool = False,
    ) -> Dict[str, Any]:
        return self._outcome(
            self.mutation.reset_password, identity, new_password,
            force_change_at_next_logon, unlock_if_locked,
        )

    def unlock_account(self, identity: str) -> Dict[str, Any]:
        return self._outcome(self.mutation.unlock_account, identity)

    def add_member(self, group_identity: str, member_identity: str) -> Dict[str, Any]:
        return self._outcome(self.mutation.add_member, group_identity, member_identity)

    def remove_member(self, group_identity: str, member_identity: str) -> Dict[str, Any]:
        return self._outcome(self.mutation.remove_member, group_identity, member_identity)

    # Utility methods

    def is_directory_available(self) -> bool:
        return self.adapter.test_connection()

    def get_current_backend(self) -> str:
        return self.adapter.backend_name

    def get_config_info(self) -> Dict[str, Any]:
        """Connection details with credentials excluded."""
        return self.adapter.get_connection_info()

    @staticmethod
    def get_example_configs() -> Dict[str, Dict[str, Any]]:
        return DirectoryConfig.get_backend_configs()
