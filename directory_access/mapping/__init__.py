from .attribute_mapper import (
    format_timestamp,
    read_multi_valued,
    read_scalar,
    read_timestamp,
)
from .normalizer import to_details

__all__ = ['format_timestamp', 'read_multi_valued', 'read_scalar', 'read_timestamp', 'to_details']
