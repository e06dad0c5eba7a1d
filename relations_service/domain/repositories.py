"""
Repository interfaces - Define contracts for relation data access
"""
from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Any, Sequence

from .models import Collection


Row = Dict[str, Any]


class IRelationRepository(ABC):
    """
    Typed CRUD over the relation collections.

    Implementations raise the taxonomy in ``relations_service.errors``:
    a uniqueness violation surfaces as ``DuplicateIgnored``, an authorization
    rejection as ``PermissionDenied`` and any other backend fault as
    ``Unexpected``. ``actor_id`` scopes a write to the calling identity so
    that backend row policies can be evaluated against it.
    """

    @abstractmethod
    async def insert(
        self, collection: Collection, values: Row, *, actor_id: Optional[str] = None
    ) -> Row:
        """Insert a row and return it"""
        pass

    @abstractmethod
    async def upsert(
        self,
        collection: Collection,
        values: Row,
        on_conflict: Sequence[str],
        *,
        actor_id: Optional[str] = None,
    ) -> Row:
        """Insert or overwrite the row identified by ``on_conflict`` columns"""
        pass

    @abstractmethod
    async def update(
        self,
        collection: Collection,
        values: Row,
        match: Row,
        *,
        actor_id: Optional[str] = None,
    ) -> List[Row]:
        """Update rows matching every column in ``match``; return updated rows"""
        pass

    @abstractmethod
    async def delete(
        self, collection: Collection, match: Row, *, actor_id: Optional[str] = None
    ) -> int:
        """Delete rows matching ``match``; return number of deleted rows"""
        pass

    @abstractmethod
    async def select_one(self, collection: Collection, match: Row) -> Optional[Row]:
        """Fetch a single row or None"""
        pass

    @abstractmethod
    async def select_many(
        self,
        collection: Collection,
        match: Row,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Row]:
        """Fetch matching rows, newest first"""
        pass

    @abstractmethod
    async def count(self, collection: Collection, match: Row) -> int:
        """Count matching rows"""
        pass

    @abstractmethod
    async def get_follow_counts(self, profile_id: str) -> Optional[Row]:
        """Read the precomputed follow aggregate for a profile, if any"""
        pass
