from .directory_models import (
    DirectoryObjectRef,
    ExecutionResult,
    GroupRecord,
    MutationResult,
    ObjectClass,
    ObjectDetails,
    OrganizationalUnitNode,
    PagedResult,
    QueryOptions,
    SortField,
    StatusFilter,
    UserRecord,
)

__all__ = [
    'DirectoryObjectRef', 'ExecutionResult', 'GroupRecord', 'MutationResult',
    'ObjectClass', 'ObjectDetails', 'OrganizationalUnitNode', 'PagedResult',
    'QueryOptions', 'SortField', 'StatusFilter', 'UserRecord',
]
