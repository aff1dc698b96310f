import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import keyring
from keyring.errors import KeyringError
from ldap3 import (
    ALL,
    BASE,
    LEVEL,
    MODIFY_ADD,
    MODIFY_DELETE,
    MODIFY_REPLACE,
    SUBTREE,
    Connection,
    Server,
)
from ldap3.core.exceptions import LDAPBindError, LDAPCommunicationError, LDAPException

from ..exceptions import (
    Conflict,
    ContainerNotEmpty,
    DirectoryOperationError,
    DirectoryUnavailable,
    NotFound,
    ValidationError,
)
from ..mapping.attribute_mapper import (
    UF_ACCOUNTDISABLE,
    build_dn,
    is_locked,
    parent_dn,
    rdn_attribute,
    read_flags,
    split_dn,
)
from ..mapping.normalizer import COMPUTED_FLAGS_ATTRIBUTE
from .base_directory_adapter import SCOPE_BASE, SCOPE_LEVEL, SCOPE_SUBTREE, BaseDirectoryAdapter

logger = logging.getLogger(__name__)

SCOPE_MAPPING = {SCOPE_BASE: BASE, SCOPE_LEVEL: LEVEL, SCOPE_SUBTREE: SUBTREE}

PAGED_RESULTS_CONTROL = "1.2.840.113556.1.4.319"

# LDAP result codes (RFC 4511)
RESULT_SUCCESS = 0
RESULT_SIZE_LIMIT_EXCEEDED = 4
RESULT_NO_SUCH_ATTRIBUTE = 16
RESULT_CONSTRAINT_VIOLATION = 19
RESULT_ATTRIBUTE_OR_VALUE_EXISTS = 20
RESULT_NO_SUCH_OBJECT = 32
RESULT_INVALID_CREDENTIALS = 49
RESULT_BUSY = 51
RESULT_UNAVAILABLE = 52
RESULT_UNWILLING_TO_PERFORM = 53
RESULT_NOT_ALLOWED_ON_NON_LEAF = 66
RESULT_ENTRY_ALREADY_EXISTS = 68

UNAVAILABLE_RESULTS = (RESULT_INVALID_CREDENTIALS, RESULT_BUSY, RESULT_UNAVAILABLE)

# Win32 ERROR_MEMBER_NOT_IN_ALIAS, sent with unwillingToPerform when the member is already gone
AD_MEMBER_NOT_IN_GROUP = "00000561"


class LDAPAdapter(BaseDirectoryAdapter):
    """
    Directory backend that talks LDAP directly through ldap3.

    Every call opens its own connection and unbinds when done, so nothing
    is shared between requests; each connection is bounded by connect and
    receive timeouts.
    """

    backend_name = "ldap"

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP adapter with configuration settings.

        Args:
            config: Dictionary containing LDAP connection settings.
                   Required keys:
                   - 'server': LDAP server hostname
                   - 'search_base': Default root DN for searches
                   - 'user': Service account used to bind

                   One of:
                   - 'password': Service account password
                   - 'keyring_service': Keyring service name holding the password

                   Optional keys with defaults:
                   - 'port': LDAP port (default: 636 for SSL, 389 for non-SSL)
                   - 'use_ssl': Enable SSL/TLS (default: True)
                   - 'timeout': Connect and receive timeout in seconds (default: 20)
                   - 'auto_bind': Auto-bind on connection (default: True)
                   - 'get_info': Server info level (default: ALL)
                   - 'page_size': Paged-results page size (default: 500)
                   - 'result_ceiling': Most records any one search returns (default: 5000)

        Raises:
            ValueError: If required configuration keys are missing
            TypeError: If configuration is not a dictionary
        """
        if not isinstance(config, dict):
            raise TypeError("Configuration must be a dictionary")

        required_keys = ["server", "search_base", "user"]
        missing_keys = [key for key in required_keys if not config.get(key)]
        if missing_keys:
            raise ValueError(f"Missing required configuration keys: {missing_keys}")
        if not config.get("password") and not config.get("keyring_service"):
            raise ValueError("Either 'password' or 'keyring_service' must be configured")

        super().__init__(config)

        self.server_hostname = config["server"]
        self.search_base = config["search_base"]
        self.user = config["user"]
        self.keyring_service = config.get("keyring_service")

        self.use_ssl = config.get("use_ssl", True)
        self.port = config.get("port") or (636 if self.use_ssl else 389)
        self.timeout = config.get("timeout", 20)
        self.auto_bind = config.get("auto_bind", True)
        self.get_info = config.get("get_info", ALL)
        self.page_size = config.get("page_size", 500)
        self.result_ceiling = config.get("result_ceiling", 5000)

        self._server = None
        self._password = config.get("password")

        logger.debug(f"LDAP adapter initialized for server: {self.server_hostname}")

    @property
    def default_search_base(self) -> str:
        return self.search_base

    def _get_password(self) -> str:
        """
        Retrieve the service password from configuration or the keyring.

        Raises:
            DirectoryUnavailable: If no password can be found
        """
        if self._password:
            return self._password

        try:
            password = keyring.get_password(self.keyring_service, self.user)
        except KeyringError as e:
            logger.error(f"Could not retrieve password from keyring: {e}")
            raise DirectoryUnavailable(f"Keyring lookup failed for {self.user}: {e}") from e

        if not password:
            raise DirectoryUnavailable(
                f"No password stored in keyring service '{self.keyring_service}' for {self.user}"
            )
        logger.debug("Using password from keyring")
        self._password = password
        return password

    def _create_server(self) -> Server:
        if not self._server:
            self._server = Server(
                self.server_hostname,
                use_ssl=self.use_ssl,
                port=self.port,
                get_info=self.get_info,
                connect_timeout=self.timeout,
            )
            logger.debug(f"LDAP server object created: {self.server_hostname}:{self.port}")
        return self._server

    def _create_connection(self) -> Connection:
        """
        Create and bind an LDAP connection.

        Raises:
            LDAPBindError: If authentication fails
        """
        server = self._create_server()
        connection = Connection(
            server,
            user=self.user,
            password=self._get_password(),
            auto_bind=self.auto_bind,
            receive_timeout=self.timeout,
        )
        if not connection.bound and not connection.bind():
            raise LDAPBindError(f"Failed to bind as {self.user}: {connection.result}")
        logger.debug(f"Connected to {self.server_hostname} as {self.user}")
        return connection

    @contextmanager
    def _open_connection(self, operation: str) -> Iterator[Connection]:
        """Yield a bound connection and translate transport failures."""
        conn = None
        try:
            conn = self._create_connection()
            yield conn
        except (LDAPBindError, LDAPCommunicationError) as e:
            logger.error(f"LDAP {operation} could not reach {self.server_hostname}: {e}")
            raise DirectoryUnavailable(f"Directory unavailable during {operation}: {e}") from e
        except LDAPException as e:
            logger.error(f"LDAP {operation} failed: {e}")
            raise DirectoryOperationError(f"{operation} failed: {e}") from e
        finally:
            if conn is not None:
                try:
                    conn.unbind()
                except LDAPException as e:
                    logger.debug(f"Ignoring unbind failure: {e}")

    def _raise_for_result(self, result: Optional[Dict[str, Any]], operation: str, target: str) -> None:
        """Raise the exception matching an LDAP result code."""
        result = result or {}
        code = result.get("result")
        detail = " ".join(
            part for part in (result.get("description"), result.get("message")) if part
        ).strip()
        message = f"{operation} failed for '{target}'" + (f": {detail}" if detail else "")

        logger.warning(f"LDAP {message} (result {code})")

        if code == RESULT_NO_SUCH_OBJECT:
            raise NotFound(message)
        if code == RESULT_NOT_ALLOWED_ON_NON_LEAF:
            raise ContainerNotEmpty(target)
        if code in (RESULT_ENTRY_ALREADY_EXISTS, RESULT_ATTRIBUTE_OR_VALUE_EXISTS):
            raise Conflict(message)
        if operation == "set_password" and code in (RESULT_CONSTRAINT_VIOLATION, RESULT_UNWILLING_TO_PERFORM):
            raise ValidationError(f"Password rejected by the directory: {detail or 'policy violation'}")
        if code in UNAVAILABLE_RESULTS:
            raise DirectoryUnavailable(message)
        raise DirectoryOperationError(message)

    def test_connection(self) -> bool:
        """
        Test LDAP connection with a small one-level search for OUs under
        the search base.

        Returns:
            bool: True if connection test succeeds, False otherwise
        """
        try:
            records = self.search(
                "(objectClass=organizationalUnit)",
                scope=SCOPE_LEVEL,
                attributes=["ou"],
                size_limit=10,
            )
            logger.info(f"Connection test successful: found {len(records)} organizational units")
            return True
        except (DirectoryUnavailable, DirectoryOperationError, NotFound) as e:
            logger.error(f"LDAP connection test failed: {e}")
            return False

    def get_connection_info(self) -> Dict[str, Any]:
        """Configuration summary with the password excluded."""
        return {
            "backend": self.backend_name,
            "server": self.server_hostname,
            "port": self.port,
            "use_ssl": self.use_ssl,
            "search_base": self.search_base,
            "user": self.user,
            "keyring_service": self.keyring_service,
            "timeout": self.timeout,
            "page_size": self.page_size,
            "result_ceiling": self.result_ceiling,
        }

    def __str__(self) -> str:
        ssl_status = "SSL" if self.use_ssl else "non-SSL"
        return f"LDAPAdapter({self.server_hostname}:{self.port}, {ssl_status}, user={self.user})"

    def __repr__(self) -> str:
        return (
            f"LDAPAdapter(server='{self.server_hostname}', port={self.port}, "
            f"use_ssl={self.use_ssl}, search_base='{self.search_base}', user='{self.user}')"
        )

    # Search

    def search(
        self,
        search_filter: str,
        search_base: Optional[str] = None,
        scope: str = SCOPE_SUBTREE,
        attributes: Optional[List[str]] = None,
        size_limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Paged search returning raw records.

        The number of records is capped at the smaller of size_limit and the
        adapter's result ceiling, whatever the caller's page size.

        Args:
            search_filter: LDAP filter string
            search_base: Base DN (defaults to the adapter's search base)
            scope: 'base', 'level' or 'subtree'
            attributes: Attributes to retrieve (None for all user attributes)
            size_limit: Most records to return

        Returns:
            List[Dict[str, Any]]: One dict per entry with 'dn' and attribute values

        Raises:
            ValidationError: If search_filter is empty
            ValueError: If scope is unknown
        """
        if not search_filter or not isinstance(search_filter, str):
            raise ValidationError("search_filter must be a non-empty string")
        if scope not in SCOPE_MAPPING:
            raise ValueError(f"scope must be one of: {list(SCOPE_MAPPING.keys())}")

        base_dn = search_base or self.search_base
        limit = min(size_limit, self.result_ceiling) if size_limit else self.result_ceiling

        if attributes is None:
            search_attributes = ["*"]
        elif len(attributes) == 0:
            search_attributes = ["1.1"]
        else:
            search_attributes = list(attributes)

        logger.debug(
            f"Executing search: filter='{search_filter}', base='{base_dn}', scope='{scope}', limit={limit}"
        )

        with self._open_connection("search") as conn:
            records = self._execute_paged_search(
                conn, base_dn, search_filter, SCOPE_MAPPING[scope], search_attributes, limit
            )

        logger.info(f"Search completed successfully: {len(records)} results returned")
        return records

    def _execute_paged_search(
        self,
        conn: Connection,
        base_dn: str,
        search_filter: str,
        search_scope: str,
        attributes: List[str],
        limit: int,
    ) -> List[Dict[str, Any]]:
        """Cookie-driven Simple Paged Results loop (RFC 2696) that stops at limit."""
        records: List[Dict[str, Any]] = []
        cookie = None
        page_size = max(1, min(self.page_size, limit))
        page_num = 0

        while True:
            page_num += 1
            conn.search(
                search_base=base_dn,
                search_filter=search_filter,
                search_scope=search_scope,
                attributes=attributes,
                paged_size=page_size,
                paged_cookie=cookie,
            )
            result = conn.result or {}
            result_code = result.get("result", RESULT_SUCCESS)

            if result_code not in (RESULT_SUCCESS, RESULT_SIZE_LIMIT_EXCEEDED):
                self._raise_for_result(result, "search", base_dn)

            for response in conn.response or []:
                if response.get("type") != "searchResEntry":
                    continue
                records.append(self._to_record(response))
                if len(records) >= limit:
                    logger.debug(f"Search stopped at limit of {limit} records on page {page_num}")
                    return records

            if result_code == RESULT_SIZE_LIMIT_EXCEEDED:
                logger.warning(
                    f"Server size limit reached after {len(records)} results; results may be incomplete"
                )
                return records

            controls = result.get("controls") or {}
            cookie = controls.get(PAGED_RESULTS_CONTROL, {}).get("value", {}).get("cookie")
            if not cookie:
                return records

    @staticmethod
    def _to_record(response: Dict[str, Any]) -> Dict[str, Any]:
        dn = response.get("dn", "")
        record: Dict[str, Any] = {"dn": dn}
        for attr_name, value in (response.get("attributes") or {}).items():
            record[attr_name] = value
        if not any(key.lower() == "distinguishedname" for key in record):
            record["distinguishedName"] = dn
        return record

    def read_entry(self, distinguished_name: str, attributes: Optional[List[str]] = None) -> Optional[Dict[str, Any]]:
        try:
            records = self.search(
                "(objectClass=*)",
                search_base=distinguished_name,
                scope=SCOPE_BASE,
                attributes=attributes,
                size_limit=1,
            )
        except NotFound:
            return None
        return records[0] if records else None

    def is_account_locked(self, distinguished_name: str) -> bool:
        """
        Lockout from msDS-User-Account-Control-Computed.

        The computed attribute is only returned on a base-scope read, so this
        costs one extra round trip per account.
        """
        record = self.read_entry(distinguished_name, [COMPUTED_FLAGS_ATTRIBUTE])
        if record is None:
            raise NotFound(f"Account '{distinguished_name}' not found")
        return is_locked(read_flags(record, COMPUTED_FLAGS_ATTRIBUTE))

    # Mutations

    def create_organizational_unit(self, parent_dn: str, name: str, description: Optional[str] = None) -> str:
        dn = build_dn("OU", name, parent_dn)
        attributes = {"ou": name}
        if description:
            attributes["description"] = description

        with self._open_connection("create") as conn:
            if not conn.add(dn, ["top", "organizationalUnit"], attributes):
                self._raise_for_result(conn.result, "create", dn)

        logger.info(f"Created organizational unit {dn}")
        return dn

    def rename_entry(self, distinguished_name: str, new_name: str) -> str:
        attribute = rdn_attribute(distinguished_name) or "CN"
        new_dn = build_dn(attribute, new_name, parent_dn(distinguished_name) or "")
        new_rdn = split_dn(new_dn)[0]

        with self._open_connection("rename") as conn:
            if not conn.modify_dn(distinguished_name, new_rdn, delete_old_dn=True):
                self._raise_for_result(conn.result, "rename", distinguished_name)

        logger.info(f"Renamed {distinguished_name} to {new_dn}")
        return new_dn

    def delete_entry(self, distinguished_name: str) -> None:
        with self._open_connection("delete") as conn:
            if not conn.delete(distinguished_name):
                self._raise_for_result(conn.result, "delete", distinguished_name)
        logger.info(f"Deleted {distinguished_name}")

    def move_entry(self, distinguished_name: str, target_parent_dn: str) -> str:
        rdn = split_dn(distinguished_name)[0]
        with self._open_connection("move") as conn:
            if not conn.modify_dn(distinguished_name, rdn, new_superior=target_parent_dn):
                self._raise_for_result(conn.result, "move", distinguished_name)

        new_dn = f"{rdn},{target_parent_dn}"
        logger.info(f"Moved {distinguished_name} to {new_dn}")
        return new_dn

    def set_account_enabled(self, distinguished_name: str, enabled: bool) -> None:
        """Flip the ACCOUNTDISABLE bit, keeping every other userAccountControl bit."""
        with self._open_connection("set_account_enabled") as conn:
            conn.search(
                search_base=distinguished_name,
                search_filter="(objectClass=*)",
                search_scope=BASE,
                attributes=["userAccountControl"],
            )
            entries = [r for r in conn.response or [] if r.get("type") == "searchResEntry"]
            if not entries:
                self._raise_for_result(
                    conn.result or {"result": RESULT_NO_SUCH_OBJECT}, "set_account_enabled", distinguished_name
                )

            flags = read_flags(entries[0].get("attributes"), "userAccountControl")
            new_flags = flags & ~UF_ACCOUNTDISABLE if enabled else flags | UF_ACCOUNTDISABLE
            if new_flags == flags:
                logger.debug(f"userAccountControl already {flags} for {distinguished_name}")
                return

            if not conn.modify(distinguished_name, {"userAccountControl": [(MODIFY_REPLACE, [str(new_flags)])]}):
                self._raise_for_result(conn.result, "set_account_enabled", distinguished_name)

        logger.info(f"{'Enabled' if enabled else 'Disabled'} account {distinguished_name}")

    def set_password(self, distinguished_name: str, new_password: str) -> None:
        with self._open_connection("set_password") as conn:
            if not conn.extend.microsoft.modify_password(distinguished_name, new_password):
                self._raise_for_result(conn.result, "set_password", distinguished_name)
        logger.info(f"Password reset for {distinguished_name}")

    def force_password_change(self, distinguished_name: str) -> None:
        # pwdLastSet=0 forces a change at next logon
        with self._open_connection("force_password_change") as conn:
            if not conn.modify(distinguished_name, {"pwdLastSet": [(MODIFY_REPLACE, ["0"])]}):
                self._raise_for_result(conn.result, "force_password_change", distinguished_name)
        logger.info(f"Password change at next logon required for {distinguished_name}")

    def unlock_account(self, distinguished_name: str) -> None:
        with self._open_connection("unlock_account") as conn:
            if not conn.modify(distinguished_name, {"lockoutTime": [(MODIFY_REPLACE, ["0"])]}):
                self._raise_for_result(conn.result, "unlock_account", distinguished_name)
        logger.info(f"Unlocked account {distinguished_name}")

    def add_group_member(self, group_dn: str, member_dn: str) -> bool:
        with self._open_connection("add_member") as conn:
            if conn.modify(group_dn, {"member": [(MODIFY_ADD, [member_dn])]}):
                logger.info(f"Added {member_dn} to {group_dn}")
                return True
            code = (conn.result or {}).get("result")
            # AD answers attributeOrValueExists or entryAlreadyExists for a present member
            if code in (RESULT_ATTRIBUTE_OR_VALUE_EXISTS, RESULT_ENTRY_ALREADY_EXISTS):
                logger.debug(f"{member_dn} already in {group_dn}")
                return False
            self._raise_for_result(conn.result, "add_member", group_dn)

    def remove_group_member(self, group_dn: str, member_dn: str) -> bool:
        with self._open_connection("remove_member") as conn:
            if conn.modify(group_dn, {"member": [(MODIFY_DELETE, [member_dn])]}):
                logger.info(f"Removed {member_dn} from {group_dn}")
                return True
            result = conn.result or {}
            code = result.get("result")
            if code == RESULT_NO_SUCH_ATTRIBUTE or (
                code == RESULT_UNWILLING_TO_PERFORM and AD_MEMBER_NOT_IN_GROUP in str(result.get("message") or "")
            ):
                logger.debug(f"{member_dn} not in {group_dn}")
                return False
            self._raise_for_result(conn.result, "remove_member", group_dn)
