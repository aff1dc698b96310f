from .mutation_engine import MutationEngine
from .query_engine import QueryEngine
from .resolution import resolve_identity

__all__ = ['MutationEngine', 'QueryEngine', 'resolve_identity']
