"""
Schema introspection and synchronization.
"""

from .introspection import SchemaIntrospector, normalize_type
from .schema_sync import SchemaSynchronizer, compare_columns

__all__ = [
    'SchemaIntrospector',
    'SchemaSynchronizer',
    'compare_columns',
    'normalize_type',
]
