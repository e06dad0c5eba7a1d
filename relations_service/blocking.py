"""
Blocking guard - directed block relation
"""
from typing import Optional
import logging

from .errors import InvalidTarget
from .reconciler import AcceptanceReconciler
from .store import RelationStore, require_actor

logger = logging.getLogger(__name__)


class BlockingGuard:
    """
    Directed block relation with its own lifecycle.

    Presentation layers consult it; it does not gate follows or requests.
    With ``retract_relations`` a new block also removes follow edges,
    friendship rows and open requests between the pair.
    """

    def __init__(
        self,
        store: RelationStore,
        reconciler: Optional[AcceptanceReconciler] = None,
        retract_relations: bool = False,
    ):
        self.store = store
        self.reconciler = reconciler or AcceptanceReconciler(store)
        self.retract_relations = retract_relations

    async def block(self, actor_id: Optional[str], target_id: str) -> bool:
        """
        Block a user

        Returns:
            True if a new block row was written
        """
        actor_id = require_actor(actor_id)
        if actor_id == target_id:
            raise InvalidTarget("You cannot block yourself")

        created = await self.store.insert_block(actor_id, target_id)
        if created and self.retract_relations:
            await self._retract(actor_id, target_id)
        return created

    async def unblock(self, actor_id: Optional[str], target_id: str) -> bool:
        actor_id = require_actor(actor_id)
        return await self.store.delete_block(actor_id, target_id)

    async def is_blocked(self, actor_id: str, target_id: str) -> bool:
        """Actor has blocked target"""
        return await self.store.block_exists(actor_id, target_id)

    async def is_blocked_by(self, actor_id: str, target_id: str) -> bool:
        """Target has blocked actor"""
        return await self.store.block_exists(target_id, actor_id)

    async def _retract(self, actor_id: str, target_id: str):
        await self.store.unfollow(actor_id, target_id)
        await self.store.remove_follower(actor_id, target_id)
        await self.reconciler.dissolve(actor_id, actor_id, target_id)
        removed = await self.store.delete_pending_requests_between(actor_id, actor_id, target_id)
        logger.info(f"Block {actor_id} -> {target_id} retracted relations ({removed} requests)")
