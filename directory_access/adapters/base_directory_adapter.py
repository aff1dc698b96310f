from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

# Search scopes understood by every adapter
SCOPE_BASE = "base"
SCOPE_LEVEL = "level"
SCOPE_SUBTREE = "subtree"
SEARCH_SCOPES = (SCOPE_BASE, SCOPE_LEVEL, SCOPE_SUBTREE)


class BaseDirectoryAdapter(ABC):
    """
    Abstract base class for directory backends.

    Adapters return raw records as plain dictionaries keyed by attribute
    name and translate backend failures into the exceptions in
    directory_access.exceptions. Identity resolution, paging, sorting and
    idempotency live in the engines, so adapters only act on DNs.
    """

    backend_name = "base"

    def __init__(self, config: Dict[str, Any]):
        self.config = config

    @property
    @abstractmethod
    def default_search_base(self) -> str:
        """Root DN used when a search has no explicit scope."""
        pass

    @abstractmethod
    def search(
        self,
        search_filter: str,
        search_base: Optional[str] = None,
        scope: str = SCOPE_SUBTREE,
        attributes: Optional[List[str]] = None,
        size_limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Run a filtered search and return at most size_limit raw records."""
        pass

    @abstractmethod
    def read_entry(self, distinguished_name: str, attributes: Optional[List[str]] = None) -> Optional[Dict[str, Any]]:
        """Read one object by DN; None when it does not exist."""
        pass

    @abstractmethod
    def is_account_locked(self, distinguished_name: str) -> bool:
        """Authoritative lockout check for one account."""
        pass

    @abstractmethod
    def create_organizational_unit(self, parent_dn: str, name: str, description: Optional[str] = None) -> str:
        """Create an OU and return its DN."""
        pass

    @abstractmethod
    def rename_entry(self, distinguished_name: str, new_name: str) -> str:
        """Rename an object in place and return its new DN."""
        pass

    @abstractmethod
    def delete_entry(self, distinguished_name: str) -> None:
        """Delete a leaf object. Never deletes descendants."""
        pass

    @abstractmethod
    def move_entry(self, distinguished_name: str, target_parent_dn: str) -> str:
        """Move an object under a new parent and return its new DN."""
        pass

    @abstractmethod
    def set_account_enabled(self, distinguished_name: str, enabled: bool) -> None:
        pass

    @abstractmethod
    def set_password(self, distinguished_name: str, new_password: str) -> None:
        pass

    @abstractmethod
    def force_password_change(self, distinguished_name: str) -> None:
        """Require a password change at next logon."""
        pass

    @abstractmethod
    def unlock_account(self, distinguished_name: str) -> None:
        pass

    @abstractmethod
    def add_group_member(self, group_dn: str, member_dn: str) -> bool:
        """Add a member; returns False when it was already present."""
        pass

    @abstractmethod
    def remove_group_member(self, group_dn: str, member_dn: str) -> bool:
        """Remove a member; returns False when it was not present."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Check that the backend is reachable."""
        pass

    def get_connection_info(self) -> Dict[str, Any]:
        return {"backend": self.backend_name}

    def close(self) -> None:
        """Release backend resources. Adapters without any keep the default."""
        pass
