from .filter_builder import (
    FilterCriteria,
    build_children_filter,
    build_filter,
    build_identity_filter,
    escape_filter_value,
)

__all__ = [
    'FilterCriteria', 'build_children_filter', 'build_filter', 'build_identity_filter', 'escape_filter_value',
]
