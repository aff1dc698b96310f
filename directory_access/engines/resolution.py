import logging
from typing import Any, Dict, List, Optional

from ..adapters.base_directory_adapter import SCOPE_SUBTREE, BaseDirectoryAdapter
from ..exceptions import Conflict, NotFound, ValidationError
from ..filters.filter_builder import build_identity_filter
from ..mapping.attribute_mapper import split_dn
from ..models.directory_models import ObjectClass

logger = logging.getLogger(__name__)


def looks_like_dn(identity: str) -> bool:
    """True for ``CN=John Doe,OU=Staff,DC=corp,DC=com``; False for ``jdoe`` or ``jdoe@corp.com``."""
    parts = split_dn(identity)
    return len(parts) >= 2 and all("=" in part for part in parts)


def resolve_identity(
    adapter: BaseDirectoryAdapter,
    identity: str,
    object_class: ObjectClass = ObjectClass.USER,
    attributes: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """
    Look an object up by DN or login name, fresh from the directory.

    Args:
        adapter: Backend to query
        identity: Distinguished name, sAMAccountName or userPrincipalName
        object_class: Class the identity must belong to (login lookups only)
        attributes: Attributes to read

    Returns:
        Dict[str, Any]: The raw record

    Raises:
        ValidationError: If identity is blank
        NotFound: If nothing matches
        Conflict: If a login name matches more than one object
    """
    if identity is None or not str(identity).strip():
        raise ValidationError(f"A {ObjectClass(object_class).value} identity is required")
    identity = str(identity).strip()

    if looks_like_dn(identity):
        record = adapter.read_entry(identity, attributes)
        if record is None:
            raise NotFound(f"No object with DN '{identity}'")
        return record

    records = adapter.search(
        build_identity_filter(identity, object_class),
        adapter.default_search_base,
        SCOPE_SUBTREE,
        attributes,
        size_limit=2,
    )
    if not records:
        raise NotFound(f"No {ObjectClass(object_class).value} named '{identity}'")
    if len(records) > 1:
        raise Conflict(f"Identity '{identity}' matches more than one {ObjectClass(object_class).value}")

    logger.debug(f"Resolved identity '{identity}'")
    return records[0]
