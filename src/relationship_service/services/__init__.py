from .expiry_sweeper import ExpirySweeper
from .mutation_engine import MutationEngine
from .query_engine import QueryEngine

__all__ = ["ExpirySweeper", "MutationEngine", "QueryEngine"]
