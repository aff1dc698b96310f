"""
Search filter construction for directory queries.

Every value that originates from a caller passes through escape_filter_value
before it is placed inside a filter, so free text such as ``*)(cn=*`` is
matched literally instead of changing the structure of the search.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from ldap3.utils.conv import escape_filter_chars

from ..models.directory_models import ObjectClass, StatusFilter

logger = logging.getLogger(__name__)

# LDAP_MATCHING_RULE_BIT_AND against userAccountControl, bit 2 = ACCOUNTDISABLE
ACCOUNT_DISABLED_MATCH = "(userAccountControl:1.2.840.113556.1.4.803:=2)"

MATCH_ALL = "(objectClass=*)"

# Parts ANDed together to select one object class
OBJECT_CLASS_PARTS = {
    ObjectClass.USER: ("(objectCategory=person)", "(objectClass=user)"),
    ObjectClass.GROUP: ("(objectClass=group)",),
    ObjectClass.COMPUTER: ("(objectClass=computer)",),
    ObjectClass.ORGANIZATIONAL_UNIT: ("(objectClass=organizationalUnit)",),
    ObjectClass.OTHER: (MATCH_ALL,),
}

# Attributes searched by free text, per object class
FREE_TEXT_ATTRIBUTES = {
    ObjectClass.USER: ("displayName", "sAMAccountName", "mail", "cn"),
    ObjectClass.GROUP: ("name", "sAMAccountName", "cn", "description"),
    ObjectClass.COMPUTER: ("name", "sAMAccountName", "dNSHostName"),
    ObjectClass.ORGANIZATIONAL_UNIT: ("ou", "name", "description"),
    ObjectClass.OTHER: ("name", "sAMAccountName", "mail"),
}

# Attributes that uniquely name an object of a class
IDENTITY_ATTRIBUTES = {
    ObjectClass.USER: ("sAMAccountName", "userPrincipalName"),
    ObjectClass.GROUP: ("sAMAccountName", "cn"),
    ObjectClass.COMPUTER: ("sAMAccountName", "dNSHostName"),
    ObjectClass.ORGANIZATIONAL_UNIT: ("ou",),
    ObjectClass.OTHER: ("sAMAccountName", "name"),
}


@dataclass
class FilterCriteria:
    """
    Structured search criteria.

    Attributes:
        object_classes: Classes to match; more than one class is ORed together
        free_text: Optional caller-supplied text, matched as a substring
        status: Account status restriction; LOCKED is not expressible as a
                single predicate and is left to a post-filter
    """
    object_classes: Sequence[ObjectClass] = field(default_factory=lambda: (ObjectClass.USER,))
    free_text: Optional[str] = None
    status: StatusFilter = StatusFilter.ANY


def escape_filter_value(value: str) -> str:
    """Escape the reserved filter characters (backslash, asterisk, parentheses, NUL)."""
    if value is None:
        return ""
    return escape_filter_chars(str(value))


def _class_predicate(object_classes: Sequence[ObjectClass]) -> List[str]:
    classes = list(object_classes) or [ObjectClass.OTHER]
    if len(classes) == 1:
        return list(OBJECT_CLASS_PARTS[classes[0]])

    alternatives = []
    for object_class in classes:
        parts = OBJECT_CLASS_PARTS[object_class]
        alternatives.append(parts[0] if len(parts) == 1 else f"(&{''.join(parts)})")
    return [f"(|{''.join(alternatives)})"]


def _free_text_attributes(object_classes: Sequence[ObjectClass]) -> Tuple[str, ...]:
    seen = []
    for object_class in list(object_classes) or [ObjectClass.OTHER]:
        for attribute in FREE_TEXT_ATTRIBUTES[object_class]:
            if attribute not in seen:
                seen.append(attribute)
    return tuple(seen)


def build_free_text_predicate(free_text: str, attributes: Sequence[str]) -> Optional[str]:
    """OR of ``(attr=*text*)`` over the given attributes, or None for blank text."""
    if free_text is None or not str(free_text).strip():
        return None
    escaped = escape_filter_value(str(free_text).strip())
    terms = "".join(f"({attribute}=*{escaped}*)" for attribute in attributes)
    return f"(|{terms})"


def build_status_predicate(status: StatusFilter) -> Optional[str]:
    if status == StatusFilter.ENABLED:
        return f"(!{ACCOUNT_DISABLED_MATCH})"
    if status == StatusFilter.DISABLED:
        return ACCOUNT_DISABLED_MATCH
    # ANY needs nothing; LOCKED is resolved per record after the search
    return None


def build_filter(criteria: Optional[FilterCriteria] = None) -> str:
    """
    Build a single AND filter from structured criteria.

    With no criteria the result matches every object of the requested class,
    so the output is never empty.

    Args:
        criteria: Object classes, free text and status restriction

    Returns:
        str: A well-formed filter of the form ``(&...)``

    Examples:
        # Enabled users whose name, login, mail or cn contains "jdoe"
        build_filter(FilterCriteria(free_text="jdoe", status=StatusFilter.ENABLED))

        # Every group
        build_filter(FilterCriteria(object_classes=[ObjectClass.GROUP]))
    """
    criteria = criteria or FilterCriteria()
    status = criteria.status if isinstance(criteria.status, StatusFilter) else StatusFilter(criteria.status)

    parts = _class_predicate(criteria.object_classes)

    free_text = build_free_text_predicate(
        criteria.free_text, _free_text_attributes(criteria.object_classes)
    )
    if free_text:
        parts.append(free_text)

    status_predicate = build_status_predicate(status)
    if status_predicate:
        parts.append(status_predicate)

    search_filter = f"(&{''.join(parts)})"
    logger.debug(f"Built search filter: {search_filter}")
    return search_filter


def build_identity_filter(identity: str, object_class: ObjectClass = ObjectClass.USER) -> str:
    """
    Build an equality filter that resolves a login-style identity.

    Raises:
        ValueError: If identity is blank
    """
    if identity is None or not str(identity).strip():
        raise ValueError("identity must be a non-empty string")

    escaped = escape_filter_value(str(identity).strip())
    alternatives = "".join(
        f"({attribute}={escaped})" for attribute in IDENTITY_ATTRIBUTES[object_class]
    )
    parts = _class_predicate([object_class])
    return f"(&{''.join(parts)}(|{alternatives}))"


def build_equality_filter(attribute: str, value: str) -> str:
    return f"({attribute}={escape_filter_value(value)})"


def build_children_filter(object_classes: Optional[Sequence[ObjectClass]] = None) -> str:
    """
    Filter for the direct children of a container.

    With no classes this matches any child, which is what the emptiness
    check before a container delete needs.
    """
    if not object_classes:
        return MATCH_ALL
    return f"(&{''.join(_class_predicate(object_classes))})"
