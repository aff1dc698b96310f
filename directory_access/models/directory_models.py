from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

from ..exceptions import ValidationError

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 100
MAX_PAGE_SIZE = 500


class ObjectClass(str, Enum):
    USER = "user"
    GROUP = "group"
    COMPUTER = "computer"
    ORGANIZATIONAL_UNIT = "organizationalUnit"
    OTHER = "other"

    @classmethod
    def from_object_classes(cls, values: List[str]) -> "ObjectClass":
        """
        Pick the most specific known class from a raw objectClass list.

        Directory servers return the class chain from least to most specific
        (e.g. top, person, organizationalPerson, user, computer), so the list
        is scanned from the end.
        """
        lowered = [str(value).lower() for value in values or []]
        for value in reversed(lowered):
            if value == "computer":
                return cls.COMPUTER
            if value == "user":
                return cls.USER
            if value == "group":
                return cls.GROUP
            if value == "organizationalunit":
                return cls.ORGANIZATIONAL_UNIT
        return cls.OTHER


class StatusFilter(str, Enum):
    ANY = "any"
    ENABLED = "enabled"
    DISABLED = "disabled"
    LOCKED = "locked"


class SortField(str, Enum):
    DISPLAY_NAME = "displayName"
    SAM_ACCOUNT_NAME = "samAccountName"
    EMAIL = "email"
    LAST_LOGON_AT = "lastLogonAt"


def clamp_page_size(requested: Optional[int], maximum: int = MAX_PAGE_SIZE,
                    default: int = DEFAULT_PAGE_SIZE) -> int:
    """Clamp a requested page size into [1, maximum]; None or non-positive means default."""
    if requested is None or requested <= 0:
        return min(default, maximum)
    return min(requested, maximum)


@dataclass
class QueryOptions:
    """Typed search options for user queries."""
    free_text: Optional[str] = None
    scope_dn: Optional[str] = None
    status_filter: StatusFilter = StatusFilter.ANY
    page_size: int = DEFAULT_PAGE_SIZE
    page_offset: int = 0
    sort_field: SortField = SortField.DISPLAY_NAME
    sort_descending: bool = False
    # Scoped searches are single-level unless the caller asks for the whole subtree
    include_descendants: bool = False

    def __post_init__(self):
        try:
            self.status_filter = StatusFilter(self.status_filter)
            self.sort_field = SortField(self.sort_field)
        except ValueError as e:
            raise ValidationError(str(e)) from e


@dataclass
class DirectoryObjectRef:
    distinguished_name: str
    object_class: ObjectClass = ObjectClass.OTHER
    name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


@dataclass
class UserRecord(DirectoryObjectRef):
    """
    A user account as listed by a search.

    ``locked`` is None when the listing carried no authoritative lock state;
    the locked status filter and the details view always fill it in.
    """
    sam_account_name: str = ""
    display_name: str = ""
    email: str = ""
    enabled: bool = True
    locked: Optional[bool] = None
    last_logon_at: Optional[datetime] = None
    password_last_set_at: Optional[datetime] = None
    account_expires_at: Optional[datetime] = None
    group_memberships: List[str] = field(default_factory=list)


@dataclass
class GroupRecord:
    distinguished_name: str
    name: str = ""
    sam_account_name: str = ""
    description: Optional[str] = None
    member_count: int = 0
    member_refs: List[DirectoryObjectRef] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


@dataclass
class OrganizationalUnitNode:
    distinguished_name: str
    name: str = ""
    parent_dn: Optional[str] = None
    description: Optional[str] = None
    child_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


@dataclass
class PagedResult(Generic[T]):
    items: List[T]
    total: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [item.to_dict() if hasattr(item, "to_dict") else item for item in self.items],
            "total": self.total,
        }


@dataclass
class ExecutionResult:
    """Outcome of one scripted execution in a pooled session."""
    records: List[Dict[str, Any]] = field(default_factory=list)
    had_error: bool = False
    error_text: Optional[str] = None


@dataclass
class MutationResult:
    success: bool
    operation: str
    target_dn: Optional[str] = None
    changed: bool = True
    verified: Optional[bool] = None
    message: Optional[str] = None
    completed_steps: List[str] = field(default_factory=list)
    failed_steps: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


@dataclass
class ObjectDetails:
    """One details shape for every object class, with an open extension map."""
    name: str = ""
    distinguished_name: str = ""
    object_class: ObjectClass = ObjectClass.OTHER
    display_name: str = ""
    sam_account_name: Optional[str] = None
    email: Optional[str] = None
    enabled: Optional[bool] = None
    locked: Optional[bool] = None
    last_logon_at: Optional[datetime] = None
    extensions: Dict[str, Any] = field(default_factory=dict)
    attributes: Dict[str, List[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


def _serialize(value: Any) -> Any:
    """Convert dataclass dicts into JSON-friendly values."""
    if isinstance(value, dict):
        return {key: _serialize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialize(item) for item in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value
