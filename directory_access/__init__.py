from .config import DirectoryConfig
from .engines import MutationEngine, QueryEngine
from .exceptions import (
    Conflict,
    ContainerNotEmpty,
    DirectoryError,
    DirectoryOperationError,
    DirectoryUnavailable,
    ExecutionTimeout,
    NotFound,
    PartialFailure,
    ValidationError,
)
from .execution import CommandExecutionPool, PowerShellSession
from .facade import DirectoryFacade
from .filters import FilterCriteria, build_filter
from .models import PagedResult, QueryOptions

__all__ = [
    'DirectoryFacade', 'DirectoryConfig', 'QueryEngine', 'MutationEngine',
    'CommandExecutionPool', 'PowerShellSession', 'FilterCriteria', 'build_filter',
    'PagedResult', 'QueryOptions',
    'DirectoryError', 'ValidationError', 'DirectoryUnavailable', 'ExecutionTimeout',
    'NotFound', 'Conflict', 'ContainerNotEmpty', 'PartialFailure', 'DirectoryOperationError',
]
