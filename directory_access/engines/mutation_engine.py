import logging
from typing import Any, Dict, List, Optional

from ..adapters.base_directory_adapter import SCOPE_LEVEL, BaseDirectoryAdapter
from ..exceptions import (
    Conflict,
    ContainerNotEmpty,
    DirectoryError,
    NotFound,
    PartialFailure,
    ValidationError,
)
from ..filters.filter_builder import build_children_filter
from ..mapping.attribute_mapper import (
    build_dn,
    parent_dn,
    rdn_attribute,
    read_multi_valued,
    same_dn,
    split_dn,
)
from ..mapping.normalizer import (
    GROUP_ATTRIBUTES,
    OBJECT_REF_ATTRIBUTES,
    OU_ATTRIBUTES,
    USER_ATTRIBUTES,
    record_dn,
    record_enabled,
    record_object_class,
)
from ..models.directory_models import MutationResult, ObjectClass
from .resolution import resolve_identity

logger = logging.getLogger(__name__)

LEAF_CLASSES = (ObjectClass.USER, ObjectClass.GROUP, ObjectClass.COMPUTER)


def _require_text(value: Optional[str], field_name: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field_name} is required")
    return str(value).strip()


class MutationEngine:
    """
    Object lifecycle operations.

    Each operation resolves its target from the directory immediately before
    acting. Operations that would not change anything succeed with
    changed=False. Create, rename and move read the result back and report
    it in verified.
    """

    def __init__(self, adapter: BaseDirectoryAdapter, verify: bool = True):
        self.adapter = adapter
        self.verify = verify

    def _read_required(self, distinguished_name: str, attributes: List[str]) -> Dict[str, Any]:
        dn = _require_text(distinguished_name, "distinguished_name")
        record = self.adapter.read_entry(dn, attributes)
        if record is None:
            raise NotFound(f"No object with DN '{dn}'")
        return record

    def _exists(self, distinguished_name: str) -> bool:
        return self.adapter.read_entry(distinguished_name, OBJECT_REF_ATTRIBUTES) is not None

    def _verify_exists(self, distinguished_name: str) -> Optional[bool]:
        if not self.verify:
            return None
        try:
            return self._exists(distinguished_name)
        except DirectoryError as e:
            logger.warning(f"Could not verify {distinguished_name}: {e}")
            return None

    def _require_container(self, record: Dict[str, Any]) -> str:
        dn = record_dn(record)
        if record_object_class(record) in LEAF_CLASSES:
            raise ValidationError(f"'{dn}' is not a container")
        return dn

    # Containers

    def create_container(self, parent_dn: str, name: str, description: Optional[str] = None) -> MutationResult:
        """
        Create an organizational unit.

        Raises:
            ValidationError: If parent_dn or name is blank
            NotFound: If the parent does not exist
            Conflict: If an object with the same name already exists there
        """
        name = _require_text(name, "name")
        parent = self._require_container(self._read_required(parent_dn, OU_ATTRIBUTES))

        expected_dn = build_dn("OU", name, parent)
        if self._exists(expected_dn):
            raise Conflict(f"'{expected_dn}' already exists")

        new_dn = self.adapter.create_organizational_unit(parent, name, description)
        return MutationResult(
            success=True,
            operation="create_container",
            target_dn=new_dn,
            verified=self._verify_exists(new_dn),
            message=f"Created {new_dn}",
            completed_steps=["create"],
        )

    def rename_container(self, distinguished_name: str, new_name: str) -> MutationResult:
        new_name = _require_text(new_name, "new_name")
        current_dn = self._require_container(self._read_required(distinguished_name, OU_ATTRIBUTES))

        parent = parent_dn(current_dn)
        if parent is None:
            raise ValidationError(f"'{current_dn}' has no parent and cannot be renamed")
        expected_dn = build_dn(rdn_attribute(current_dn) or "OU", new_name, parent)

        if same_dn(expected_dn, current_dn):
            return MutationResult(
                success=True, operation="rename_container", target_dn=current_dn,
                changed=False, message="Name unchanged",
            )
        if self._exists(expected_dn):
            raise Conflict(f"Cannot rename to '{new_name}': '{expected_dn}' already exists")

        new_dn = self.adapter.rename_entry(current_dn, new_name)
        return MutationResult(
            success=True,
            operation="rename_container",
            target_dn=new_dn,
            verified=self._verify_exists(new_dn),
            message=f"Renamed {current_dn} to {new_dn}",
            completed_steps=["rename"],
        )

    def delete_container(self, distinguished_name: str) -> MutationResult:
        """
        Delete an empty container.

        Raises:
            ContainerNotEmpty: If the container has any child; nothing is deleted
        """
        dn = self._require_container(self._read_required(distinguished_name, OU_ATTRIBUTES))

        children = self.adapter.search(build_children_filter(), dn, SCOPE_LEVEL, [], size_limit=1)
        if children:
            child = record_dn(children[0]) or None
            logger.warning(f"Refusing to delete non-empty container {dn}")
            raise ContainerNotEmpty(dn, child)

        self.adapter.delete_entry(dn)
        verified = None
        if self.verify:
            verified = not self._exists(dn)
        return MutationResult(
            success=True,
            operation="delete_container",
            target_dn=dn,
            verified=verified,
            message=f"Deleted {dn}",
            completed_steps=["delete"],
        )

    def move_object(self, object_dn: str, target_parent_dn: str) -> MutationResult:
        """
        Move any object under a new parent.

        Raises:
            ValidationError: If the target is the object itself or one of its descendants
            NotFound: If the object or the target does not exist
            Conflict: If the target already holds an object with the same name
        """
        current_dn = record_dn(self._read_required(object_dn, OBJECT_REF_ATTRIBUTES))
        target = self._require_container(self._read_required(target_parent_dn, OU_ATTRIBUTES))

        if same_dn(parent_dn(current_dn), target):
            return MutationResult(
                success=True, operation="move_object", target_dn=current_dn,
                changed=False, message="Object is already in the target container",
            )

        current_parts = [part.lower() for part in split_dn(current_dn)]
        target_parts = [part.lower() for part in split_dn(target)]
        if target_parts[-len(current_parts):] == current_parts:
            raise ValidationError(f"Cannot move '{current_dn}' into itself or its own subtree")

        expected_dn = f"{split_dn(current_dn)[0]},{target}"
        if self._exists(expected_dn):
            raise Conflict(f"'{expected_dn}' already exists")

        new_dn = self.adapter.move_entry(current_dn, target)
        return MutationResult(
            success=True,
            operation="move_object",
            target_dn=new_dn,
            verified=self._verify_exists(new_dn),
            message=f"Moved {current_dn} to {new_dn}",
            completed_steps=["move"],
        )

    def move_user_by_login(self, login: str, target_parent_dn: str) -> MutationResult:
        record = resolve_identity(self.adapter, login, ObjectClass.USER, OBJECT_REF_ATTRIBUTES)
        return self.move_object(record_dn(record), target_parent_dn)

    # Accounts

    def set_account_enabled(self, identity: str, enabled: bool) -> MutationResult:
        record = resolve_identity(self.adapter, identity, ObjectClass.USER, USER_ATTRIBUTES)
        dn = record_dn(record)
        operation = "enable_account" if enabled else "disable_account"

        if record_enabled(record) == bool(enabled):
            return MutationResult(
                success=True, operation=operation, target_dn=dn, changed=False,
                message=f"Account already {'enabled' if enabled else 'disabled'}",
            )

        self.adapter.set_account_enabled(dn, bool(enabled))
        verified = None
        if self.verify:
            current = self.adapter.read_entry(dn, USER_ATTRIBUTES)
            verified = current is not None and record_enabled(current) == bool(enabled)
        return MutationResult(
            success=True,
            operation=operation,
            target_dn=dn,
            verified=verified,
            message=f"Account {'enabled' if enabled else 'disabled'}",
            completed_steps=[operation],
        )

    def reset_password(
        self,
        identity: str,
        new_password: str,
        force_change_at_next_logon: bool = False,
        unlock_if_locked: bool = False,
    ) -> MutationResult:
        """
        Set a new password, then apply the optional side effects.

        The password set is the primary step; if it fails nothing else runs
        and its error propagates. Side effects run independently of each other.

        Raises:
            ValidationError: If the password is blank or rejected by policy
            PartialFailure: If the password was set but a side effect failed
        """
        if not new_password:
            raise ValidationError("new_password is required")
        record = resolve_identity(self.adapter, identity, ObjectClass.USER, USER_ATTRIBUTES)
        dn = record_dn(record)

        self.adapter.set_password(dn, new_password)
        completed = ["set_password"]
        failed: Dict[str, str] = {}
        notes = []

        if force_change_at_next_logon:
            try:
                self.adapter.force_password_change(dn)
                completed.append("force_change_at_next_logon")
            except DirectoryError as e:
                logger.error(f"Password set for {dn} but force-change failed: {e}")
                failed["force_change_at_next_logon"] = str(e)

        if unlock_if_locked:
            try:
                if self.adapter.is_account_locked(dn):
                    self.adapter.unlock_account(dn)
                    completed.append("unlock")
                else:
                    notes.append("account was not locked")
            except DirectoryError as e:
                logger.error(f"Password set for {dn} but unlock failed: {e}")
                failed["unlock"] = str(e)

        if failed:
            raise PartialFailure("reset_password", completed, failed, target_dn=dn)

        message = "Password reset"
        if notes:
            message += f" ({'; '.join(notes)})"
        return MutationResult(
            success=True,
            operation="reset_password",
            target_dn=dn,
            message=message,
            completed_steps=completed,
        )

    def unlock_account(self, identity: str) -> MutationResult:
        record = resolve_identity(self.adapter, identity, ObjectClass.USER, OBJECT_REF_ATTRIBUTES)
        dn = record_dn(record)

        if not self.adapter.is_account_locked(dn):
            return MutationResult(
                success=True, operation="unlock_account", target_dn=dn,
                changed=False, message="Account is not locked",
            )

        self.adapter.unlock_account(dn)
        verified = None
        if self.verify:
            verified = not self.adapter.is_account_locked(dn)
        return MutationResult(
            success=True,
            operation="unlock_account",
            target_dn=dn,
            verified=verified,
            message="Account unlocked",
            completed_steps=["unlock"],
        )

    # Group membership

    def _resolve_membership(self, group_identity: str, member_identity: str):
        group = resolve_identity(self.adapter, group_identity, ObjectClass.GROUP, GROUP_ATTRIBUTES)
        member = resolve_identity(self.adapter, member_identity, ObjectClass.OTHER, OBJECT_REF_ATTRIBUTES)
        member_dn = record_dn(member)
        present = any(same_dn(dn, member_dn) for dn in read_multi_valued(group, "member"))
        return record_dn(group), member_dn, present

    def add_member(self, group_identity: str, member_identity: str) -> MutationResult:
        """Add a member; adding one that is already present is a successful no-op."""
        group_dn, member_dn, present = self._resolve_membership(group_identity, member_identity)

        changed = False
        if not present:
            changed = self.adapter.add_group_member(group_dn, member_dn)

        return MutationResult(
            success=True,
            operation="add_member",
            target_dn=group_dn,
            changed=changed,
            message=f"Added {member_dn}" if changed else f"{member_dn} is already a member",
            completed_steps=["add_member"] if changed else [],
        )

    def remove_member(self, group_identity: str, member_identity: str) -> MutationResult:
        """Remove a member; removing one that is absent is a successful no-op."""
        group_dn, member_dn, present = self._resolve_membership(group_identity, member_identity)

        changed = False
        if present:
            changed = self.adapter.remove_group_member(group_dn, member_dn)

        return MutationResult(
            success=True,
            operation="remove_member",
            target_dn=group_dn,
            changed=changed,
            message=f"Removed {member_dn}" if changed else f"{member_dn} is not a member",
            completed_steps=["remove_member"] if changed else [],
        )
