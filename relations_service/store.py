"""
Relation store - typed operations over the relation collections
"""
from typing import Optional, List
import logging

from .domain.models import (
    Collection,
    FriendRequest,
    Friendship,
    FriendshipStatus,
    RequestStatus,
)
from .domain.repositories import IRelationRepository
from .errors import DuplicateIgnored, InvalidTarget, NotAuthenticated

logger = logging.getLogger(__name__)


def require_actor(actor_id: Optional[str]) -> str:
    """Mutations need an authenticated actor"""
    if not actor_id:
        raise NotAuthenticated("Not authenticated")
    return actor_id


class RelationStore:
    """Typed CRUD over follows, friend requests, friendships and blocks"""

    def __init__(self, repo: IRelationRepository):
        self.repo = repo

    # Follow edges
    async def follow(self, actor_id: Optional[str], target_id: str) -> bool:
        """
        Follow a user

        Returns:
            True if a new edge was written, False if it already existed
        """
        actor_id = require_actor(actor_id)
        if actor_id == target_id:
            raise InvalidTarget("You cannot follow yourself")

        try:
            await self.repo.insert(
                Collection.FOLLOWS,
                {"follower_id": actor_id, "following_id": target_id},
                actor_id=actor_id,
            )
        except DuplicateIgnored:
            logger.debug(f"Follow {actor_id} -> {target_id} already exists")
            return False
        return True

    async def unfollow(self, actor_id: Optional[str], target_id: str) -> bool:
        """Remove a follow edge; no-op if absent"""
        actor_id = require_actor(actor_id)
        deleted = await self.repo.delete(
            Collection.FOLLOWS,
            {"follower_id": actor_id, "following_id": target_id},
            actor_id=actor_id,
        )
        return deleted > 0

    async def remove_follower(self, actor_id: Optional[str], follower_id: str) -> bool:
        """Remove someone else's edge pointing at actor"""
        actor_id = require_actor(actor_id)
        deleted = await self.repo.delete(
            Collection.FOLLOWS,
            {"follower_id": follower_id, "following_id": actor_id},
            actor_id=actor_id,
        )
        return deleted > 0

    async def is_following(self, actor_id: Optional[str], target_id: str) -> bool:
        """Check whether actor follows target"""
        if not actor_id:
            return False
        row = await self.repo.select_one(
            Collection.FOLLOWS, {"follower_id": actor_id, "following_id": target_id}
        )
        return row is not None

    async def list_followers(
        self, user_id: str, limit: Optional[int] = None, offset: int = 0
    ) -> List[str]:
        rows = await self.repo.select_many(
            Collection.FOLLOWS, {"following_id": user_id}, limit=limit, offset=offset
        )
        return [row["follower_id"] for row in rows]

    async def list_following(
        self, user_id: str, limit: Optional[int] = None, offset: int = 0
    ) -> List[str]:
        rows = await self.repo.select_many(
            Collection.FOLLOWS, {"follower_id": user_id}, limit=limit, offset=offset
        )
        return [row["following_id"] for row in rows]

    # Friend requests
    async def get_request(self, request_id: int) -> Optional[FriendRequest]:
        row = await self.repo.select_one(Collection.FRIEND_REQUESTS, {"id": request_id})
        return FriendRequest.from_row(row) if row else None

    async def find_request(self, from_user: str, to_user: str) -> Optional[FriendRequest]:
        row = await self.repo.select_one(
            Collection.FRIEND_REQUESTS, {"from_user": from_user, "to_user": to_user}
        )
        return FriendRequest.from_row(row) if row else None

    async def upsert_request(self, from_user: str, to_user: str) -> FriendRequest:
        """Write a pending request, overwriting the status of an existing one"""
        row = await self.repo.upsert(
            Collection.FRIEND_REQUESTS,
            {
                "from_user": from_user,
                "to_user": to_user,
                "status": RequestStatus.PENDING.value,
            },
            on_conflict=("from_user", "to_user"),
            actor_id=from_user,
        )
        return FriendRequest.from_row(row)

    async def insert_request(self, from_user: str, to_user: str) -> Optional[FriendRequest]:
        """Write a pending request only if the pair has none; None on duplicate"""
        try:
            row = await self.repo.insert(
                Collection.FRIEND_REQUESTS,
                {
                    "from_user": from_user,
                    "to_user": to_user,
                    "status": RequestStatus.PENDING.value,
                },
                actor_id=from_user,
            )
        except DuplicateIgnored:
            return None
        return FriendRequest.from_row(row)

    async def set_request_status(
        self, actor_id: str, request_id: int, status: RequestStatus
    ) -> Optional[FriendRequest]:
        """
        Move a pending request to ``status``.

        The write is conditional on the row still being pending; returns None
        when another writer got there first.
        """
        rows = await self.repo.update(
            Collection.FRIEND_REQUESTS,
            {"status": status.value},
            {"id": request_id, "status": RequestStatus.PENDING.value},
            actor_id=actor_id,
        )
        return FriendRequest.from_row(rows[0]) if rows else None

    async def list_pending_requests(
        self, user_id: str, limit: Optional[int] = None, offset: int = 0
    ) -> List[FriendRequest]:
        """Pending requests addressed to user, newest first"""
        rows = await self.repo.select_many(
            Collection.FRIEND_REQUESTS,
            {"to_user": user_id, "status": RequestStatus.PENDING.value},
            limit=limit,
            offset=offset,
        )
        return [FriendRequest.from_row(row) for row in rows]

    async def delete_pending_requests_between(
        self, actor_id: str, user_id: str, other_id: str
    ) -> int:
        """Withdraw open requests in both directions; answered ones are kept"""
        deleted = 0
        for from_user, to_user in ((user_id, other_id), (other_id, user_id)):
            deleted += await self.repo.delete(
                Collection.FRIEND_REQUESTS,
                {
                    "from_user": from_user,
                    "to_user": to_user,
                    "status": RequestStatus.PENDING.value,
                },
                actor_id=actor_id,
            )
        return deleted

    # Friendships
    async def upsert_friendship(
        self, actor_id: str, requester_id: str, receiver_id: str
    ) -> Friendship:
        """Write one directed friendship row"""
        row = await self.repo.upsert(
            Collection.FRIENDSHIPS,
            {
                "requester_id": requester_id,
                "receiver_id": receiver_id,
                "status": FriendshipStatus.ACCEPTED.value,
            },
            on_conflict=("requester_id", "receiver_id"),
            actor_id=actor_id,
        )
        return Friendship.from_row(row)

    async def delete_friendship(
        self, actor_id: str, requester_id: str, receiver_id: str
    ) -> int:
        return await self.repo.delete(
            Collection.FRIENDSHIPS,
            {"requester_id": requester_id, "receiver_id": receiver_id},
            actor_id=actor_id,
        )

    async def list_friends(
        self, user_id: str, limit: Optional[int] = None, offset: int = 0
    ) -> List[Friendship]:
        """Friendship rows owned by user (requester side), newest first"""
        rows = await self.repo.select_many(
            Collection.FRIENDSHIPS,
            {"requester_id": user_id, "status": FriendshipStatus.ACCEPTED.value},
            limit=limit,
            offset=offset,
        )
        return [Friendship.from_row(row) for row in rows]

    async def are_friends(self, user_id: str, other_id: str) -> bool:
        row = await self.repo.select_one(
            Collection.FRIENDSHIPS,
            {
                "requester_id": user_id,
                "receiver_id": other_id,
                "status": FriendshipStatus.ACCEPTED.value,
            },
        )
        return row is not None

    # Blocks
    async def insert_block(self, blocker_id: str, blocked_id: str) -> bool:
        try:
            await self.repo.insert(
                Collection.BLOCKED_USERS,
                {"blocker_id": blocker_id, "blocked_id": blocked_id},
                actor_id=blocker_id,
            )
        except DuplicateIgnored:
            return False
        return True

    async def delete_block(self, blocker_id: str, blocked_id: str) -> bool:
        deleted = await self.repo.delete(
            Collection.BLOCKED_USERS,
            {"blocker_id": blocker_id, "blocked_id": blocked_id},
            actor_id=blocker_id,
        )
        return deleted > 0

    async def block_exists(self, blocker_id: str, blocked_id: str) -> bool:
        row = await self.repo.select_one(
            Collection.BLOCKED_USERS, {"blocker_id": blocker_id, "blocked_id": blocked_id}
        )
        return row is not None
