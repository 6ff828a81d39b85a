from .relationship_store import RelationshipStore, StoreTransaction

__all__ = ["RelationshipStore", "StoreTransaction"]
