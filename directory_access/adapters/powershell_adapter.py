import logging
from typing import Any, Dict, List, Optional

from ..exceptions import (
    Conflict,
    ContainerNotEmpty,
    DirectoryOperationError,
    DirectoryUnavailable,
    NotFound,
    ValidationError,
)
from ..mapping.attribute_mapper import read_scalar
from .base_directory_adapter import SCOPE_BASE, SCOPE_LEVEL, SCOPE_SUBTREE, BaseDirectoryAdapter

logger = logging.getLogger(__name__)

SCOPE_MAPPING = {SCOPE_BASE: "Base", SCOPE_LEVEL: "OneLevel", SCOPE_SUBTREE: "Subtree"}

# Scripts take every caller value through param(); nothing is interpolated.

SEARCH_SCRIPT = """
param($LDAPFilter, $SearchBase, $SearchScope, $Properties, $ResultSetSize)
$query = @{
    LDAPFilter    = $LDAPFilter
    SearchBase    = $SearchBase
    SearchScope   = $SearchScope
    ResultSetSize = $ResultSetSize
}
if ($Properties) { $query['Properties'] = $Properties }
Get-ADObject @query
"""

READ_SCRIPT = """
param($Identity, $Properties)
if ($Properties) { Get-ADObject -Identity $Identity -Properties $Properties }
else { Get-ADObject -Identity $Identity -Properties * }
"""

LOCKED_SCRIPT = """
param($Identity)
Get-ADUser -Identity $Identity -Properties LockedOut | Select-Object DistinguishedName, LockedOut
"""

DEFAULT_BASE_SCRIPT = """
Get-ADDomain | Select-Object DistinguishedName, DNSRoot
"""

CREATE_OU_SCRIPT = """
param($Name, $Path, $Description)
$ou = @{ Name = $Name; Path = $Path; ProtectedFromAccidentalDeletion = $false; PassThru = $true }
if ($Description) { $ou['Description'] = $Description }
New-ADOrganizationalUnit @ou | Select-Object DistinguishedName
"""

RENAME_SCRIPT = """
param($Identity, $NewName)
Rename-ADObject -Identity $Identity -NewName $NewName -PassThru | Select-Object DistinguishedName
"""

DELETE_SCRIPT = """
param($Identity)
Remove-ADObject -Identity $Identity -Confirm:$false
"""

MOVE_SCRIPT = """
param($Identity, $TargetPath)
Move-ADObject -Identity $Identity -TargetPath $TargetPath -PassThru | Select-Object DistinguishedName
"""

SET_ENABLED_SCRIPT = """
param($Identity, $Enabled)
if ($Enabled) { Enable-ADAccount -Identity $Identity } else { Disable-ADAccount -Identity $Identity }
"""

SET_PASSWORD_SCRIPT = """
param($Identity, $NewPassword)
$secure = ConvertTo-SecureString $NewPassword -AsPlainText -Force
Set-ADAccountPassword -Identity $Identity -Reset -NewPassword $secure
"""

FORCE_CHANGE_SCRIPT = """
param($Identity)
Set-ADUser -Identity $Identity -ChangePasswordAtLogon $true
"""

UNLOCK_SCRIPT = """
param($Identity)
Unlock-ADAccount -Identity $Identity
"""

ADD_MEMBER_SCRIPT = """
param($Group, $Member)
Add-ADGroupMember -Identity $Group -Members $Member
"""

REMOVE_MEMBER_SCRIPT = """
param($Group, $Member)
Remove-ADGroupMember -Identity $Group -Members $Member -Confirm:$false
"""

# Error text fragments from the ActiveDirectory module, lower-cased
NOT_FOUND_MARKERS = ("cannot find an object with identity", "directory object not found", "no such object")
NON_LEAF_MARKERS = ("only on a leaf object", "non-leaf")
CONFLICT_MARKERS = ("already in use", "already exists")
PASSWORD_MARKERS = ("password does not meet", "password complexity")
UNAVAILABLE_MARKERS = (
    "unable to contact the server",
    "server is not operational",
    "the server has rejected the client credentials",
    "authentication",
    "not recognized as the name of a cmdlet",
)
ALREADY_MEMBER_MARKERS = ("already a member",)
NOT_MEMBER_MARKERS = ("not a member",)


def _contains_any(text: str, markers) -> bool:
    return any(marker in text for marker in markers)


class PowerShellAdapter(BaseDirectoryAdapter):
    """
    Directory backend that runs ActiveDirectory module cmdlets through a
    CommandExecutionPool.

    Searches use Get-ADObject with the same LDAP filters the LDAP backend
    uses, so both backends answer the same criteria the same way.
    """

    backend_name = "powershell"

    def __init__(self, config: Dict[str, Any], pool):
        """
        Args:
            config: Backend settings. Optional keys:
                   - 'search_base': Default root DN (resolved from the domain if absent)
                   - 'script_timeout': Seconds per script (default: the pool's timeout)
                   - 'result_ceiling': Most records any one search returns (default: 5000)
            pool: An open CommandExecutionPool (or a compatible fake in tests)
        """
        if not isinstance(config, dict):
            raise TypeError("Configuration must be a dictionary")
        if pool is None:
            raise ValueError("PowerShellAdapter requires a command execution pool")

        super().__init__(config)
        self.pool = pool
        self.script_timeout = config.get("script_timeout")
        self.result_ceiling = config.get("result_ceiling", 5000)
        self._search_base = config.get("search_base")

    @property
    def default_search_base(self) -> str:
        if not self._search_base:
            records = self._run(DEFAULT_BASE_SCRIPT, {}, "default_search_base", "domain")
            base = read_scalar(records[0], "DistinguishedName", default="") if records else ""
            if not base:
                raise DirectoryUnavailable("Could not determine the domain root DN")
            logger.info(f"Resolved default search base {base}")
            self._search_base = base
        return self._search_base

    def _run(self, script: str, parameters: Dict[str, Any], operation: str, target: str) -> List[Dict[str, Any]]:
        result = self.pool.execute(script, parameters, timeout=self.script_timeout)
        if result.had_error:
            self._raise_for_error(result.error_text or "", operation, target)
        return result.records

    def _raise_for_error(self, error_text: str, operation: str, target: str) -> None:
        """Raise the exception matching a cmdlet error message."""
        lowered = error_text.lower()
        message = f"{operation} failed for '{target}': {error_text}"
        logger.warning(f"PowerShell {message}")

        if _contains_any(lowered, NOT_FOUND_MARKERS):
            raise NotFound(message)
        if _contains_any(lowered, NON_LEAF_MARKERS):
            raise ContainerNotEmpty(target)
        if _contains_any(lowered, CONFLICT_MARKERS):
            raise Conflict(message)
        if operation == "set_password" and _contains_any(lowered, PASSWORD_MARKERS):
            raise ValidationError(f"Password rejected by the directory: {error_text}")
        if _contains_any(lowered, UNAVAILABLE_MARKERS):
            raise DirectoryUnavailable(message)
        raise DirectoryOperationError(message)

    def test_connection(self) -> bool:
        try:
            base = self.default_search_base
            self.search("(objectClass=organizationalUnit)", base, SCOPE_LEVEL, ["ou"], size_limit=10)
            logger.info(f"PowerShell connection test successful against {base}")
            return True
        except (DirectoryUnavailable, DirectoryOperationError, NotFound) as e:
            logger.error(f"PowerShell connection test failed: {e}")
            return False

    def get_connection_info(self) -> Dict[str, Any]:
        info = {
            "backend": self.backend_name,
            "search_base": self._search_base,
            "script_timeout": self.script_timeout,
            "result_ceiling": self.result_ceiling,
        }
        if hasattr(self.pool, "stats"):
            info["pool"] = self.pool.stats()
        return info

    def close(self) -> None:
        self.pool.close()

    def search(
        self,
        search_filter: str,
        search_base: Optional[str] = None,
        scope: str = SCOPE_SUBTREE,
        attributes: Optional[List[str]] = None,
        size_limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        if not search_filter or not isinstance(search_filter, str):
            raise ValidationError("search_filter must be a non-empty string")
        if scope not in SCOPE_MAPPING:
            raise ValueError(f"scope must be one of: {list(SCOPE_MAPPING.keys())}")

        base_dn = search_base or self.default_search_base
        limit = min(size_limit, self.result_ceiling) if size_limit else self.result_ceiling
        parameters = {
            "LDAPFilter": search_filter,
            "SearchBase": base_dn,
            "SearchScope": SCOPE_MAPPING[scope],
            "Properties": list(attributes) if attributes else None,
            "ResultSetSize": limit,
        }

        logger.debug(f"Executing scripted search: filter='{search_filter}', base='{base_dn}', scope='{scope}'")
        records = self._run(SEARCH_SCRIPT, parameters, "search", base_dn)
        logger.info(f"Scripted search completed: {len(records)} results returned")
        return records[:limit]

    def read_entry(self, distinguished_name: str, attributes: Optional[List[str]] = None) -> Optional[Dict[str, Any]]:
        try:
            records = self._run(
                READ_SCRIPT,
                {"Identity": distinguished_name, "Properties": list(attributes) if attributes else None},
                "read",
                distinguished_name,
            )
        except NotFound:
            return None
        return records[0] if records else None

    def is_account_locked(self, distinguished_name: str) -> bool:
        """LockedOut as computed by Get-ADUser."""
        records = self._run(LOCKED_SCRIPT, {"Identity": distinguished_name}, "is_account_locked", distinguished_name)
        if not records:
            raise NotFound(f"Account '{distinguished_name}' not found")
        return read_scalar(records[0], "LockedOut", cast=bool, default=False)

    def _returned_dn(self, records: List[Dict[str, Any]], operation: str, target: str) -> str:
        dn = read_scalar(records[0], "DistinguishedName", default="") if records else ""
        if not dn:
            raise DirectoryOperationError(f"{operation} for '{target}' returned no object")
        return dn

    def create_organizational_unit(self, parent_dn: str, name: str, description: Optional[str] = None) -> str:
        records = self._run(
            CREATE_OU_SCRIPT,
            {"Name": name, "Path": parent_dn, "Description": description},
            "create",
            parent_dn,
        )
        dn = self._returned_dn(records, "create", parent_dn)
        logger.info(f"Created organizational unit {dn}")
        return dn

    def rename_entry(self, distinguished_name: str, new_name: str) -> str:
        records = self._run(
            RENAME_SCRIPT, {"Identity": distinguished_name, "NewName": new_name}, "rename", distinguished_name
        )
        new_dn = self._returned_dn(records, "rename", distinguished_name)
        logger.info(f"Renamed {distinguished_name} to {new_dn}")
        return new_dn

    def delete_entry(self, distinguished_name: str) -> None:
        self._run(DELETE_SCRIPT, {"Identity": distinguished_name}, "delete", distinguished_name)
        logger.info(f"Deleted {distinguished_name}")

    def move_entry(self, distinguished_name: str, target_parent_dn: str) -> str:
        records = self._run(
            MOVE_SCRIPT, {"Identity": distinguished_name, "TargetPath": target_parent_dn}, "move", distinguished_name
        )
        new_dn = self._returned_dn(records, "move", distinguished_name)
        logger.info(f"Moved {distinguished_name} to {new_dn}")
        return new_dn

    def set_account_enabled(self, distinguished_name: str, enabled: bool) -> None:
        self._run(
            SET_ENABLED_SCRIPT,
            {"Identity": distinguished_name, "Enabled": bool(enabled)},
            "set_account_enabled",
            distinguished_name,
        )
        logger.info(f"{'Enabled' if enabled else 'Disabled'} account {distinguished_name}")

    def set_password(self, distinguished_name: str, new_password: str) -> None:
        self._run(
            SET_PASSWORD_SCRIPT,
            {"Identity": distinguished_name, "NewPassword": new_password},
            "set_password",
            distinguished_name,
        )
        logger.info(f"Password reset for {distinguished_name}")

    def force_password_change(self, distinguished_name: str) -> None:
        self._run(FORCE_CHANGE_SCRIPT, {"Identity": distinguished_name}, "force_password_change", distinguished_name)
        logger.info(f"Password change at next logon required for {distinguished_name}")

    def unlock_account(self, distinguished_name: str) -> None:
        self._run(UNLOCK_SCRIPT, {"Identity": distinguished_name}, "unlock_account", distinguished_name)
        logger.info(f"Unlocked account {distinguished_name}")

    def add_group_member(self, group_dn: str, member_dn: str) -> bool:
        result = self.pool.execute(
            ADD_MEMBER_SCRIPT, {"Group": group_dn, "Member": member_dn}, timeout=self.script_timeout
        )
        if result.had_error:
            if _contains_any((result.error_text or "").lower(), ALREADY_MEMBER_MARKERS):
                logger.debug(f"{member_dn} already in {group_dn}")
                return False
            self._raise_for_error(result.error_text or "", "add_member", group_dn)
        logger.info(f"Added {member_dn} to {group_dn}")
        return True

    def remove_group_member(self, group_dn: str, member_dn: str) -> bool:
        result = self.pool.execute(
            REMOVE_MEMBER_SCRIPT, {"Group": group_dn, "Member": member_dn}, timeout=self.script_timeout
        )
        if result.had_error:
            if _contains_any((result.error_text or "").lower(), NOT_MEMBER_MARKERS):
                logger.debug(f"{member_dn} not in {group_dn}")
                return False
            self._raise_for_error(result.error_text or "", "remove_member", group_dn)
        logger.info(f"Removed {member_dn} from {group_dn}")
        return True

    def __repr__(self) -> str:
        return f"PowerShellAdapter(search_base='{self._search_base}', pool={self.pool!r})"
