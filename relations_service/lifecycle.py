"""
Friend request lifecycle
"""
from typing import Optional
import logging

from .domain.models import FriendRequest, RequestStatus, ResendPolicy
from .errors import NotFound, PermissionDenied
from .reconciler import AcceptanceReconciler, MirroredWriteResult
from .store import RelationStore, require_actor

logger = logging.getLogger(__name__)


class RequestLifecycle:
    """
    State machine for friend requests: pending -> accepted | declined.

    Transitions out of pending are guarded optimistically: the status is
    read right before the write and the write only applies while the row
    is still pending. Losing that race is a silent no-op.
    """

    def __init__(
        self,
        store: RelationStore,
        reconciler: AcceptanceReconciler,
        resend_policy: ResendPolicy = ResendPolicy.REOPEN,
    ):
        self.store = store
        self.reconciler = reconciler
        self.resend_policy = resend_policy

    async def send_request(
        self, from_user: Optional[str], to_user: str
    ) -> Optional[FriendRequest]:
        """
        Send a friend request

        Returns:
            The stored request, or None when sending to yourself
        """
        from_user = require_actor(from_user)
        if from_user == to_user:
            return None

        if self.resend_policy == ResendPolicy.KEEP:
            created = await self.store.insert_request(from_user, to_user)
            if created is not None:
                return created
            return await self.store.find_request(from_user, to_user)

        # Upsert on (from_user, to_user): a closed request is reopened
        return await self.store.upsert_request(from_user, to_user)

    async def _load_for_receiver(self, actor_id: str, request_id: int) -> FriendRequest:
        request = await self.store.get_request(request_id)
        if request is None:
            raise NotFound("Friend request not found")
        if request.to_user != actor_id:
            raise PermissionDenied("Only the receiver can answer a friend request")
        return request

    async def accept(self, actor_id: Optional[str], request_id: int) -> FriendRequest:
        """
        Accept a pending request and create the friendship

        The request is marked accepted before the friendship rows are
        written, so a failure while reconciling leaves it terminal.
        """
        actor_id = require_actor(actor_id)
        request = await self._load_for_receiver(actor_id, request_id)

        if not request.is_pending:
            logger.info(f"Request {request_id} already {request.status.value}, ignoring accept")
            return request

        updated = await self.store.set_request_status(
            actor_id, request_id, RequestStatus.ACCEPTED
        )
        if updated is None:
            logger.info(f"Request {request_id} changed concurrently, ignoring accept")
            return await self.store.get_request(request_id) or request

        await self.reconciler.reconcile(actor_id, updated.from_user, updated.to_user)
        return updated

    async def decline(self, actor_id: Optional[str], request_id: int) -> FriendRequest:
        """Decline a pending request; no-op if already terminal"""
        actor_id = require_actor(actor_id)
        request = await self._load_for_receiver(actor_id, request_id)

        if not request.is_pending:
            logger.info(f"Request {request_id} already {request.status.value}, ignoring decline")
            return request

        updated = await self.store.set_request_status(
            actor_id, request_id, RequestStatus.DECLINED
        )
        if updated is None:
            logger.info(f"Request {request_id} changed concurrently, ignoring decline")
            return await self.store.get_request(request_id) or request
        return updated

    async def retry_reconciliation(
        self, actor_id: Optional[str], request_id: int
    ) -> MirroredWriteResult:
        """Re-run the friendship writes of an accepted request"""
        actor_id = require_actor(actor_id)
        request = await self.store.get_request(request_id)
        if request is None:
            raise NotFound("Friend request not found")
        if actor_id not in (request.from_user, request.to_user):
            raise PermissionDenied("Not a party to this friend request")
        if request.status != RequestStatus.ACCEPTED:
            raise NotFound("Friend request is not accepted")

        return await self.reconciler.reconcile(actor_id, request.from_user, request.to_user)
