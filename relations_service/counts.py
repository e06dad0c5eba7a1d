"""
Count aggregation for followers, following, friends and pending requests
"""
from typing import Optional
import logging

from .domain.models import Collection, FollowStats, FriendshipStatus, RequestStatus
from .domain.repositories import IRelationRepository
from .errors import RelationError

logger = logging.getLogger(__name__)


class CountAggregator:
    """Read-only counts; callers re-invoke after mutations or change events"""

    def __init__(self, repo: IRelationRepository):
        self.repo = repo

    async def _aggregate(self, user_id: str, column: str) -> Optional[int]:
        """Value from the precomputed view, or None when missing/unreadable"""
        try:
            row = await self.repo.get_follow_counts(user_id)
        except RelationError as e:
            logger.warning(f"Follow count view unavailable for {user_id}: {e}")
            return None
        if not row or row.get(column) is None:
            return None
        return int(row[column])

    async def follower_count(self, user_id: str) -> int:
        value = await self._aggregate(user_id, "followers_count")
        if value is None:
            value = await self.repo.count(Collection.FOLLOWS, {"following_id": user_id})
        return max(0, value)

    async def following_count(self, user_id: str) -> int:
        value = await self._aggregate(user_id, "following_count")
        if value is None:
            value = await self.repo.count(Collection.FOLLOWS, {"follower_id": user_id})
        return max(0, value)

    async def friend_count(self, user_id: str) -> int:
        value = await self.repo.count(
            Collection.FRIENDSHIPS,
            {"requester_id": user_id, "status": FriendshipStatus.ACCEPTED.value},
        )
        return max(0, value)

    async def pending_request_count(self, user_id: str) -> int:
        value = await self.repo.count(
            Collection.FRIEND_REQUESTS,
            {"to_user": user_id, "status": RequestStatus.PENDING.value},
        )
        return max(0, value)

    async def stats(self, user_id: str) -> FollowStats:
        """All counts for a user"""
        return FollowStats(
            user_id=user_id,
            follower_count=await self.follower_count(user_id),
            following_count=await self.following_count(user_id),
            friend_count=await self.friend_count(user_id),
            pending_request_count=await self.pending_request_count(user_id),
        )
