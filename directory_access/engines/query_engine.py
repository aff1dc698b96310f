"""
Read operations over a directory backend.

Every listing follows the same pipeline: build a filter, search the backend
up to the result ceiling, normalize, post-filter, sort the whole filtered set,
then slice one page. ``total`` is always the size of the filtered set before
slicing, and page sizes are clamped no matter what the caller asks for.
"""

import logging
from typing import Any, Callable, List, Optional, Sequence, TypeVar

from ..adapters.base_directory_adapter import (
    SCOPE_LEVEL,
    SCOPE_SUBTREE,
    BaseDirectoryAdapter,
)
from ..exceptions import DirectoryOperationError, DirectoryUnavailable, NotFound, ValidationError
from ..filters.filter_builder import FilterCriteria, build_children_filter, build_filter
from ..mapping.attribute_mapper import read_multi_valued, same_dn
from ..mapping.normalizer import (
    DETAIL_ATTRIBUTES,
    GROUP_ATTRIBUTES,
    OBJECT_REF_ATTRIBUTES,
    OU_ATTRIBUTES,
    USER_ATTRIBUTES,
    record_dn,
    record_object_class,
    to_details,
    to_group_record,
    to_object_ref,
    to_ou_node,
    to_user_record,
)
from ..models.directory_models import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    DirectoryObjectRef,
    GroupRecord,
    ObjectClass,
    ObjectDetails,
    OrganizationalUnitNode,
    PagedResult,
    QueryOptions,
    SortField,
    StatusFilter,
    UserRecord,
    clamp_page_size,
)
from .resolution import resolve_identity

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RESULT_CEILING = 5000
DEFAULT_MEMBER_LOOKUP_LIMIT = 500

USER_SORT_KEYS = {
    SortField.DISPLAY_NAME: lambda user: user.display_name,
    SortField.SAM_ACCOUNT_NAME: lambda user: user.sam_account_name,
    SortField.EMAIL: lambda user: user.email,
}


def sort_users(users: List[UserRecord], sort_field: SortField, descending: bool = False) -> List[UserRecord]:
    """
    Sort user records without mutating the input.

    Strings compare case-insensitively. Timestamps keep missing values at
    the end in either direction. Ties fall back to the DN so repeated calls
    page consistently.
    """
    sort_field = SortField(sort_field)

    if sort_field == SortField.LAST_LOGON_AT:
        present = [user for user in users if user.last_logon_at is not None]
        missing = [user for user in users if user.last_logon_at is None]
        present.sort(key=lambda user: user.distinguished_name.casefold())
        present.sort(key=lambda user: user.last_logon_at, reverse=descending)
        missing.sort(key=lambda user: user.distinguished_name.casefold())
        return present + missing

    getter = USER_SORT_KEYS[sort_field]
    ordered = sorted(users, key=lambda user: user.distinguished_name.casefold())
    return sorted(ordered, key=lambda user: (getter(user) or "").casefold(), reverse=descending)


def slice_page(items: Sequence[T], take: int, skip: int) -> PagedResult:
    return PagedResult(items=list(items[skip:skip + take]), total=len(items))


class QueryEngine:
    """
    Paged, sorted reads against one backend.

    Args:
        adapter: Backend used for every call
        default_page_size: Page size when the caller gives none
        max_page_size: Hard ceiling on any page
        result_ceiling: Most raw records fetched for one listing
        member_lookup_limit: Most members resolved for one group
    """

    def __init__(
        self,
        adapter: BaseDirectoryAdapter,
        default_page_size: int = DEFAULT_PAGE_SIZE,
        max_page_size: int = MAX_PAGE_SIZE,
        result_ceiling: int = DEFAULT_RESULT_CEILING,
        member_lookup_limit: int = DEFAULT_MEMBER_LOOKUP_LIMIT,
    ):
        self.adapter = adapter
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size
        self.result_ceiling = result_ceiling
        self.member_lookup_limit = member_lookup_limit

    def _page_bounds(self, take: Optional[int], skip: Optional[int]):
        skip = skip or 0
        if skip < 0:
            raise ValidationError("skip must not be negative")
        return clamp_page_size(take, self.max_page_size, self.default_page_size), skip

    def _normalize_all(self, records: List[dict], convert: Callable[[dict], Any], kind: str) -> List[Any]:
        converted = []
        for record in records:
            try:
                converted.append(convert(record))
            except (ValueError, TypeError, KeyError, AttributeError) as e:
                logger.warning(f"Skipping malformed {kind} record {record_dn(record)!r}: {e}")
        return converted

    # Users

    def search(self, options: Optional[QueryOptions] = None) -> PagedResult[UserRecord]:
        """
        Search user accounts.

        Args:
            options: Free text, scope, status, paging and sorting

        Returns:
            PagedResult[UserRecord]: One sorted page plus the filtered total

        Raises:
            ValidationError: If page_offset is negative
            DirectoryUnavailable: If the backend cannot be reached; never an empty page
        """
        options = options or QueryOptions()
        take, skip = self._page_bounds(options.page_size, options.page_offset)

        scope_dn = (options.scope_dn or "").strip() or None
        search_base = scope_dn or self.adapter.default_search_base
        scope = SCOPE_SUBTREE if scope_dn is None or options.include_descendants else SCOPE_LEVEL

        search_filter = build_filter(FilterCriteria(
            object_classes=(ObjectClass.USER,),
            free_text=options.free_text,
            status=options.status_filter,
        ))

        logger.debug(
            f"User search: base='{search_base}', scope={scope}, status={options.status_filter.value}, "
            f"take={take}, skip={skip}"
        )
        records = self.adapter.search(
            search_filter, search_base, scope, USER_ATTRIBUTES, size_limit=self.result_ceiling
        )
        users = self._normalize_all(records, to_user_record, "user")

        if options.status_filter == StatusFilter.LOCKED:
            users = self._filter_locked(users)

        users = sort_users(users, options.sort_field, options.sort_descending)
        page = slice_page(users, take, skip)
        logger.info(f"User search returned {len(page.items)} of {page.total} matches")
        return page

    def _filter_locked(self, users: List[UserRecord]) -> List[UserRecord]:
        """Keep only accounts the backend's lockout check reports as locked."""
        locked = []
        for user in users:
            try:
                user.locked = self.adapter.is_account_locked(user.distinguished_name)
            except NotFound:
                logger.warning(f"Account {user.distinguished_name} disappeared during lockout check")
                continue
            if user.locked:
                locked.append(user)
        logger.debug(f"Lockout post-filter kept {len(locked)} of {len(users)} accounts")
        return locked

    def get_user(self, identity: str) -> UserRecord:
        record = resolve_identity(self.adapter, identity, ObjectClass.USER, USER_ATTRIBUTES)
        return to_user_record(record)

    # Groups

    def search_groups(
        self,
        free_text: Optional[str] = None,
        take: Optional[int] = None,
        skip: int = 0,
    ) -> PagedResult[GroupRecord]:
        take, skip = self._page_bounds(take, skip)
        search_filter = build_filter(FilterCriteria(object_classes=(ObjectClass.GROUP,), free_text=free_text))
        records = self.adapter.search(
            search_filter, self.adapter.default_search_base, SCOPE_SUBTREE,
            GROUP_ATTRIBUTES, size_limit=self.result_ceiling,
        )
        groups = self._normalize_all(records, to_group_record, "group")
        groups.sort(key=lambda group: (group.name.casefold(), group.distinguished_name.casefold()))
        page = slice_page(groups, take, skip)
        logger.info(f"Group search returned {len(page.items)} of {page.total} matches")
        return page

    def get_group_members(
        self,
        group_identity: str,
        take: Optional[int] = None,
        skip: int = 0,
    ) -> PagedResult[DirectoryObjectRef]:
        """
        Members of a group as object references.

        Only the requested page of members is looked up, and never more than
        member_lookup_limit. A member that cannot be read is logged and skipped.
        """
        take, skip = self._page_bounds(take, skip)
        group = resolve_identity(self.adapter, group_identity, ObjectClass.GROUP, GROUP_ATTRIBUTES)
        member_dns = read_multi_valued(group, "member")
        page_dns = member_dns[skip:skip + take]
        refs = self._resolve_members(page_dns)
        return PagedResult(items=refs, total=len(member_dns))

    def _resolve_members(self, member_dns: List[str]) -> List[DirectoryObjectRef]:
        """
        Look up each member, skipping the ones that fail.

        A timeout or connection failure on one member is skipped like any
        other. When every lookup failed that way the directory itself is
        down, and the last failure is raised instead of an empty list.
        """
        refs = []
        attempted = member_dns[:self.member_lookup_limit]
        outage = None
        unavailable_count = 0
        for member_dn in attempted:
            try:
                record = self.adapter.read_entry(member_dn, OBJECT_REF_ATTRIBUTES)
            except DirectoryUnavailable as e:
                logger.warning(f"Skipping member {member_dn}: {e}")
                outage = e
                unavailable_count += 1
                continue
            except (NotFound, DirectoryOperationError) as e:
                logger.warning(f"Skipping member {member_dn}: {e}")
                continue
            if record is None:
                logger.warning(f"Skipping member {member_dn}: not found")
                continue
            refs.append(to_object_ref(record))
        if outage is not None and unavailable_count == len(attempted):
            logger.error(f"All {unavailable_count} member lookups failed: {outage}")
            raise outage
        if len(member_dns) > self.member_lookup_limit:
            logger.warning(
                f"Resolved only the first {self.member_lookup_limit} of {len(member_dns)} members"
            )
        return refs

    # Organizational units

    def list_organizational_units(
        self,
        parent_dn: Optional[str] = None,
        take: Optional[int] = None,
        skip: int = 0,
        recursive: bool = False,
    ) -> PagedResult[OrganizationalUnitNode]:
        """
        OUs directly under parent_dn (or the whole tree below it when recursive).

        Child counts are fetched for the returned page only.
        """
        take, skip = self._page_bounds(take, skip)
        base = (parent_dn or "").strip() or self.adapter.default_search_base
        scope = SCOPE_SUBTREE if recursive else SCOPE_LEVEL

        records = self.adapter.search(
            build_filter(FilterCriteria(object_classes=(ObjectClass.ORGANIZATIONAL_UNIT,))),
            base, scope, OU_ATTRIBUTES, size_limit=self.result_ceiling,
        )
        # A subtree search includes the base entry itself
        records = [record for record in records if not same_dn(record_dn(record), base)]
        nodes = self._normalize_all(records, to_ou_node, "organizational unit")
        nodes.sort(key=lambda node: (node.name.casefold(), node.distinguished_name.casefold()))

        page = slice_page(nodes, take, skip)
        for node in page.items:
            node.child_count = self._count_child_units(node.distinguished_name)
        logger.info(f"Listed {len(page.items)} of {page.total} organizational units under {base}")
        return page

    def _count_child_units(self, distinguished_name: str) -> int:
        try:
            children = self.adapter.search(
                build_children_filter([ObjectClass.ORGANIZATIONAL_UNIT]),
                distinguished_name, SCOPE_LEVEL, [], size_limit=self.result_ceiling,
            )
        except NotFound:
            logger.warning(f"Organizational unit {distinguished_name} disappeared while counting children")
            return 0
        return len(children)

    def list_container_objects(
        self,
        container_dn: str,
        free_text: Optional[str] = None,
        take: Optional[int] = None,
        skip: int = 0,
    ) -> PagedResult[DirectoryObjectRef]:
        """Users, groups and computers directly under one container."""
        if not container_dn or not str(container_dn).strip():
            raise ValidationError("container_dn is required")
        take, skip = self._page_bounds(take, skip)

        search_filter = build_filter(FilterCriteria(
            object_classes=(ObjectClass.USER, ObjectClass.GROUP, ObjectClass.COMPUTER),
            free_text=free_text,
        ))
        records = self.adapter.search(
            search_filter, str(container_dn).strip(), SCOPE_LEVEL,
            OBJECT_REF_ATTRIBUTES, size_limit=self.result_ceiling,
        )
        refs = self._normalize_all(records, to_object_ref, "object")
        refs.sort(key=lambda ref: (ref.object_class.value, ref.name.casefold()))
        return slice_page(refs, take, skip)

    # Details

    def get_object_details(self, distinguished_name: str) -> ObjectDetails:
        """
        Details for any object, by DN.

        Users get the backend's authoritative lock state; groups get their
        members resolved to references, bounded by member_lookup_limit.
        """
        if not distinguished_name or not str(distinguished_name).strip():
            raise ValidationError("distinguished_name is required")
        distinguished_name = str(distinguished_name).strip()

        record = self.adapter.read_entry(distinguished_name, DETAIL_ATTRIBUTES)
        if record is None:
            raise NotFound(f"No object with DN '{distinguished_name}'")
        return self._details_for(record)

    def get_user_details(self, identity: str) -> ObjectDetails:
        record = resolve_identity(self.adapter, identity, ObjectClass.USER, DETAIL_ATTRIBUTES)
        return self._details_for(record)

    def _details_for(self, record: dict) -> ObjectDetails:
        object_class = record_object_class(record)
        dn = record_dn(record)
        locked = None
        member_refs = None

        if object_class == ObjectClass.USER:
            locked = self.adapter.is_account_locked(dn)
        elif object_class == ObjectClass.GROUP:
            member_refs = self._resolve_members(read_multi_valued(record, "member"))

        return to_details(record, object_class, member_refs=member_refs, locked=locked)
