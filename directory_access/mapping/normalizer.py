"""
View model normalization.

Turns raw records from either backend into the stable record types and the
single ObjectDetails shape handed to callers.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from ..models.directory_models import (
    DirectoryObjectRef,
    GroupRecord,
    ObjectClass,
    ObjectDetails,
    OrganizationalUnitNode,
    UserRecord,
)
from .attribute_mapper import (
    Record,
    is_enabled,
    is_locked,
    ou_path,
    parent_dn,
    rdn_value,
    read_flags,
    read_multi_valued,
    read_raw,
    read_scalar,
    read_timestamp,
    read_timestamp_attribute,
)

logger = logging.getLogger(__name__)

COMPUTED_FLAGS_ATTRIBUTE = "msDS-User-Account-Control-Computed"

USER_ATTRIBUTES = [
    "distinguishedName", "name", "cn", "objectClass", "sAMAccountName",
    "userPrincipalName", "displayName", "mail", "userAccountControl",
    "lastLogonTimestamp", "lastLogon", "pwdLastSet", "accountExpires", "memberOf",
]

GROUP_ATTRIBUTES = [
    "distinguishedName", "name", "cn", "objectClass", "sAMAccountName",
    "description", "member",
]

OU_ATTRIBUTES = ["distinguishedName", "name", "ou", "objectClass", "description"]

OBJECT_REF_ATTRIBUTES = [
    "distinguishedName", "name", "cn", "objectClass", "sAMAccountName", "userAccountControl",
]

DETAIL_ATTRIBUTES = [
    "distinguishedName", "name", "cn", "ou", "objectClass", "sAMAccountName",
    "userPrincipalName", "displayName", "mail", "description", "userAccountControl",
    "lastLogonTimestamp", "lastLogon", "pwdLastSet", "accountExpires", "memberOf",
    "member", "dNSHostName", "operatingSystem", "whenCreated", "whenChanged", "lockoutTime",
]


def record_dn(record: Record) -> str:
    return (
        read_scalar(record, "distinguishedName", default="")
        or read_scalar(record, "dn", default="")
    )


def record_name(record: Record) -> str:
    dn = record_dn(record)
    return (
        read_scalar(record, "name", default="")
        or read_scalar(record, "cn", default="")
        or read_scalar(record, "ou", default="")
        or rdn_value(dn)
    )


def record_object_class(record: Record, hint: Optional[ObjectClass] = None) -> ObjectClass:
    classes = read_multi_valued(record, "objectClass")
    if classes:
        detected = ObjectClass.from_object_classes(classes)
        if detected != ObjectClass.OTHER or hint is None:
            return detected
    return ObjectClass(hint) if hint is not None else ObjectClass.OTHER


def record_enabled(record: Record) -> bool:
    if read_raw(record, "userAccountControl") is None and read_raw(record, "Enabled") is not None:
        return read_scalar(record, "Enabled", cast=bool, default=True)
    return is_enabled(read_flags(record, "userAccountControl"))


def record_locked(record: Record) -> Optional[bool]:
    """
    Lock state as carried by the record itself, or None when it carries none.

    The scripted backend reports LockedOut directly; the LDAP backend only
    has the computed flags attribute when the entry was read at base scope.
    lockoutTime is not consulted; it stays set after the lockout duration
    expires.
    """
    if read_raw(record, "LockedOut") is not None:
        return read_scalar(record, "LockedOut", cast=bool, default=False)
    if read_raw(record, COMPUTED_FLAGS_ATTRIBUTE) is not None:
        return is_locked(read_flags(record, COMPUTED_FLAGS_ATTRIBUTE))
    return None


def password_change_required(record: Record) -> bool:
    """pwdLastSet of zero means the password must change at next logon."""
    raw = read_raw(record, "pwdLastSet")
    if isinstance(raw, (list, tuple)):
        raw = raw[0] if raw else None
    if raw is None:
        return False
    if isinstance(raw, datetime):
        return raw.year <= 1601
    try:
        return int(raw) == 0
    except (ValueError, TypeError):
        return False


def to_object_ref(record: Record, hint: Optional[ObjectClass] = None) -> DirectoryObjectRef:
    return DirectoryObjectRef(
        distinguished_name=record_dn(record),
        object_class=record_object_class(record, hint),
        name=record_name(record),
    )


def to_user_record(record: Record) -> UserRecord:
    dn = record_dn(record)
    return UserRecord(
        distinguished_name=dn,
        object_class=ObjectClass.USER,
        name=record_name(record),
        sam_account_name=read_scalar(record, "sAMAccountName", default=""),
        display_name=read_scalar(record, "displayName", default=""),
        email=read_scalar(record, "mail", default=""),
        enabled=record_enabled(record),
        locked=record_locked(record),
        last_logon_at=read_timestamp_attribute(record, "lastLogonTimestamp", "lastLogon"),
        password_last_set_at=read_timestamp(read_raw(record, "pwdLastSet")),
        account_expires_at=read_timestamp(read_raw(record, "accountExpires")),
        group_memberships=read_multi_valued(record, "memberOf"),
    )


def to_group_record(record: Record, member_refs: Optional[List[DirectoryObjectRef]] = None) -> GroupRecord:
    members = read_multi_valued(record, "member")
    return GroupRecord(
        distinguished_name=record_dn(record),
        name=record_name(record),
        sam_account_name=read_scalar(record, "sAMAccountName", default=""),
        description=read_scalar(record, "description"),
        member_count=len(members),
        member_refs=list(member_refs or []),
    )


def to_ou_node(record: Record, child_count: int = 0) -> OrganizationalUnitNode:
    dn = record_dn(record)
    return OrganizationalUnitNode(
        distinguished_name=dn,
        name=record_name(record),
        parent_dn=parent_dn(dn),
        description=read_scalar(record, "description"),
        child_count=child_count,
    )


def _stringify_attributes(record: Record) -> Dict[str, List[str]]:
    attributes = {}
    for key in record:
        if str(key).lower() == "dn":
            continue
        attributes[str(key)] = read_multi_valued(record, key)
    return attributes


def to_details(
    raw_record: Record,
    object_class_hint: Optional[ObjectClass] = None,
    member_refs: Optional[List[DirectoryObjectRef]] = None,
    locked: Optional[bool] = None,
) -> ObjectDetails:
    """
    Build the common details model for any object class.

    Args:
        raw_record: Raw record from either backend
        object_class_hint: Used when the record carries no objectClass values
        member_refs: Resolved members for group objects
        locked: Authoritative lock state, when the caller checked it separately

    Returns:
        ObjectDetails: Core fields plus class-specific extensions
    """
    object_class = record_object_class(raw_record, object_class_hint)
    dn = record_dn(raw_record)
    name = record_name(raw_record)

    details = ObjectDetails(
        name=name,
        distinguished_name=dn,
        object_class=object_class,
        display_name=read_scalar(raw_record, "displayName", default="") or name,
        sam_account_name=read_scalar(raw_record, "sAMAccountName"),
        email=read_scalar(raw_record, "mail"),
        attributes=_stringify_attributes(raw_record),
    )

    details.extensions["parentDn"] = parent_dn(dn)
    details.extensions["ouPath"] = ou_path(dn)

    if object_class in (ObjectClass.USER, ObjectClass.COMPUTER):
        details.enabled = record_enabled(raw_record)
        details.last_logon_at = read_timestamp_attribute(raw_record, "lastLogonTimestamp", "lastLogon")
        details.extensions["passwordLastSetAt"] = read_timestamp(read_raw(raw_record, "pwdLastSet"))

    if object_class == ObjectClass.USER:
        details.locked = locked if locked is not None else record_locked(raw_record)
        group_dns = read_multi_valued(raw_record, "memberOf")
        details.extensions["accountExpiresAt"] = read_timestamp(read_raw(raw_record, "accountExpires"))
        details.extensions["mustChangePassword"] = password_change_required(raw_record)
        details.extensions["groupDns"] = group_dns
        details.extensions["groups"] = [rdn_value(group_dn) for group_dn in group_dns]
        details.extensions["userPrincipalName"] = read_scalar(raw_record, "userPrincipalName")

    elif object_class == ObjectClass.GROUP:
        member_dns = read_multi_valued(raw_record, "member")
        details.extensions["description"] = read_scalar(raw_record, "description")
        details.extensions["memberCount"] = len(member_dns)
        if member_refs is not None:
            details.extensions["members"] = [ref.to_dict() for ref in member_refs]
        else:
            details.extensions["members"] = member_dns

    elif object_class == ObjectClass.COMPUTER:
        details.extensions["dnsHostName"] = read_scalar(raw_record, "dNSHostName")
        details.extensions["operatingSystem"] = read_scalar(raw_record, "operatingSystem")

    elif object_class == ObjectClass.ORGANIZATIONAL_UNIT:
        details.extensions["description"] = read_scalar(raw_record, "description")

    logger.debug(f"Normalized {object_class.value} details for {dn}")
    return details
