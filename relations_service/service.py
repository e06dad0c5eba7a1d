"""
Relations Service business logic
"""
from typing import List, Optional, Tuple
import logging

from .blocking import BlockingGuard
from .cache import RedisCache
from .config import settings
from .counts import CountAggregator
from .domain.models import (
    Collection,
    FriendRequest,
    ResendPolicy,
    RowChange,
)
from .domain.repositories import IRelationRepository
from .errors import InvalidTarget, NotFound, ReconciliationFailed
from .lifecycle import RequestLifecycle
from .notifier import ChangeNotifier
from .reconciler import AcceptanceReconciler, MirroredWriteResult
from .schemas import (
    FriendInfo,
    FriendRequestResponse,
    ProfileInfo,
    RelationStatsResponse,
    RelationshipResponse,
    RelationshipType,
)
from .service_client import ServiceClient
from .store import RelationStore, require_actor

logger = logging.getLogger(__name__)


def _page_window(page: int, page_size: int) -> Tuple[int, int, int]:
    """Normalize pagination; returns (page, page_size, offset)"""
    page = max(1, page)
    page_size = max(1, min(page_size, settings.MAX_PAGE_SIZE))
    return page, page_size, (page - 1) * page_size


class SocialGraphService:
    """
    Use cases over the relation components.

    Every mutation invalidates cached stats for both users and publishes
    a change so subscribers re-read.
    """

    def __init__(
        self,
        repo: IRelationRepository,
        cache: RedisCache,
        notifier: ChangeNotifier,
        profiles: ServiceClient,
        resend_policy: ResendPolicy = ResendPolicy.REOPEN,
        block_retracts_relations: bool = False,
    ):
        self.cache = cache
        self.notifier = notifier
        self.profiles = profiles
        self.store = RelationStore(repo)
        self.counts = CountAggregator(repo)
        self.reconciler = AcceptanceReconciler(self.store)
        self.lifecycle = RequestLifecycle(self.store, self.reconciler, resend_policy)
        self.blocking = BlockingGuard(
            self.store, self.reconciler, retract_relations=block_retracts_relations
        )

    async def _changed(self, user_id: str, other_id: str, *changes: RowChange):
        await self.cache.invalidate_pair(user_id, other_id)
        for change in changes:
            await self.notifier.publish(change)

    def _friendship_changes(self, event_type: str, user_id: str, other_id: str) -> List[RowChange]:
        return [
            RowChange(
                Collection.FRIENDSHIPS,
                event_type,
                {"requester_id": other_id, "receiver_id": user_id},
            ),
            RowChange(
                Collection.FRIENDSHIPS,
                event_type,
                {"requester_id": user_id, "receiver_id": other_id},
            ),
        ]

    # Follow
    async def follow(self, actor_id: Optional[str], target_id: str) -> bool:
        """Follow a user; following twice is not an error"""
        created = await self.store.follow(actor_id, target_id)
        if created:
            await self._changed(
                actor_id,
                target_id,
                RowChange(
                    Collection.FOLLOWS,
                    "INSERT",
                    {"follower_id": actor_id, "following_id": target_id},
                ),
            )
        return created

    async def unfollow(self, actor_id: Optional[str], target_id: str) -> bool:
        """Unfollow a user; no-op if not following"""
        deleted = await self.store.unfollow(actor_id, target_id)
        if deleted:
            await self._changed(
                actor_id,
                target_id,
                RowChange(
                    Collection.FOLLOWS,
                    "DELETE",
                    {"follower_id": actor_id, "following_id": target_id},
                ),
            )
        return deleted

    async def is_following(self, actor_id: Optional[str], target_id: str) -> bool:
        return await self.store.is_following(actor_id, target_id)

    async def get_followers(
        self, user_id: str, page: int = 1, page_size: int = 20
    ) -> Tuple[List[str], int, bool]:
        """
        Get user's followers

        Returns:
            Tuple of (follower ids, total count, has_more)
        """
        page, page_size, offset = _page_window(page, page_size)
        ids = await self.store.list_followers(user_id, limit=page_size + 1, offset=offset)

        has_more = len(ids) > page_size
        total = await self.counts.follower_count(user_id)
        return ids[:page_size], total, has_more

    async def get_following(
        self, user_id: str, page: int = 1, page_size: int = 20
    ) -> Tuple[List[str], int, bool]:
        """
        Get users that user is following

        Returns:
            Tuple of (following ids, total count, has_more)
        """
        page, page_size, offset = _page_window(page, page_size)
        ids = await self.store.list_following(user_id, limit=page_size + 1, offset=offset)

        has_more = len(ids) > page_size
        total = await self.counts.following_count(user_id)
        return ids[:page_size], total, has_more

    # Friend requests
    async def send_request(
        self,
        actor_id: Optional[str],
        to_user: Optional[str] = None,
        username: Optional[str] = None,
    ) -> Optional[FriendRequest]:
        """
        Send a friend request to a user id or username

        Returns:
            The stored request, or None for a request to yourself
        """
        actor_id = require_actor(actor_id)
        if to_user is None and username:
            to_user = await self.profiles.resolve_username(username)
        if not to_user:
            logger.info(f"Friend request from {actor_id} to unknown user {username!r}")
            raise NotFound("User not found")

        request = await self.lifecycle.send_request(actor_id, to_user)
        if request is not None:
            await self._changed(
                actor_id,
                to_user,
                RowChange(
                    Collection.FRIEND_REQUESTS,
                    "UPSERT",
                    {"id": request.id, "from_user": actor_id, "to_user": to_user},
                ),
            )
        return request

    async def accept_request(self, actor_id: Optional[str], request_id: int) -> FriendRequest:
        """
        Accept a friend request and create the friendship

        The request is already accepted when the friendship writes fail, so
        the change is published before ReconciliationFailed propagates.
        """
        try:
            request = await self.lifecycle.accept(actor_id, request_id)
        except ReconciliationFailed:
            request = await self.store.get_request(request_id)
            if request is not None:
                await self._accepted(request)
            raise

        await self._accepted(request)
        return request

    async def _accepted(self, request: FriendRequest):
        await self._changed(
            request.from_user,
            request.to_user,
            RowChange(
                Collection.FRIEND_REQUESTS,
                "UPDATE",
                {"id": request.id, "from_user": request.from_user, "to_user": request.to_user},
            ),
            *self._friendship_changes("UPSERT", request.to_user, request.from_user),
        )

    async def decline_request(self, actor_id: Optional[str], request_id: int) -> FriendRequest:
        """Decline a friend request"""
        request = await self.lifecycle.decline(actor_id, request_id)
        await self._changed(
            request.from_user,
            request.to_user,
            RowChange(
                Collection.FRIEND_REQUESTS,
                "UPDATE",
                {"id": request.id, "from_user": request.from_user, "to_user": request.to_user},
            ),
        )
        return request

    async def retry_reconciliation(
        self, actor_id: Optional[str], request_id: int
    ) -> MirroredWriteResult:
        """Repair a one-sided friendship left by an interrupted accept"""
        result = await self.lifecycle.retry_reconciliation(actor_id, request_id)
        request = await self.store.get_request(request_id)
        if request is not None:
            await self._changed(
                request.from_user,
                request.to_user,
                *self._friendship_changes("UPSERT", request.to_user, request.from_user),
            )
        return result

    async def list_pending_requests(
        self, user_id: str, page: int = 1, page_size: int = 20
    ) -> Tuple[List[FriendRequestResponse], int, bool]:
        """
        Pending requests addressed to user, with sender profiles

        Returns:
            Tuple of (requests, total count, has_more)
        """
        page, page_size, offset = _page_window(page, page_size)
        requests = await self.store.list_pending_requests(
            user_id, limit=page_size + 1, offset=offset
        )
        has_more = len(requests) > page_size
        requests = requests[:page_size]

        profiles = await self.profiles.get_profiles(r.from_user for r in requests)
        items = []
        for r in requests:
            profile = profiles.get(r.from_user)
            items.append(
                FriendRequestResponse(
                    id=r.id,
                    from_user=r.from_user,
                    to_user=r.to_user,
                    status=r.status.value,
                    created_at=r.created_at,
                    from_profile=ProfileInfo(**vars(profile)) if profile else None,
                )
            )

        total = await self.counts.pending_request_count(user_id)
        return items, total, has_more

    # Friendships
    async def list_friends(
        self, user_id: str, page: int = 1, page_size: int = 20
    ) -> Tuple[List[FriendInfo], int, bool]:
        """
        Friends of user with profile display fields

        Returns:
            Tuple of (friends, total count, has_more)
        """
        page, page_size, offset = _page_window(page, page_size)
        rows = await self.store.list_friends(user_id, limit=page_size + 1, offset=offset)
        has_more = len(rows) > page_size
        rows = rows[:page_size]

        profiles = await self.profiles.get_profiles(row.receiver_id for row in rows)
        friends = []
        for row in rows:
            profile = profiles.get(row.receiver_id)
            friends.append(
                FriendInfo(
                    id=row.receiver_id,
                    username=profile.username if profile else None,
                    full_name=profile.full_name if profile else None,
                    avatar_url=profile.avatar_url if profile else None,
                    since=row.created_at,
                )
            )

        total = await self.counts.friend_count(user_id)
        return friends, total, has_more

    async def unfriend(self, actor_id: Optional[str], other_id: str) -> MirroredWriteResult:
        """Remove both rows of a friendship"""
        actor_id = require_actor(actor_id)
        if actor_id == other_id:
            raise InvalidTarget("You cannot unfriend yourself")

        result = await self.reconciler.dissolve(actor_id, actor_id, other_id)
        if result.removed:
            await self._changed(
                actor_id, other_id, *self._friendship_changes("DELETE", actor_id, other_id)
            )
        return result

    # Blocking
    async def block(self, actor_id: Optional[str], target_id: str) -> bool:
        created = await self.blocking.block(actor_id, target_id)
        if created:
            changes = [
                RowChange(
                    Collection.BLOCKED_USERS,
                    "INSERT",
                    {"blocker_id": actor_id, "blocked_id": target_id},
                )
            ]
            if self.blocking.retract_relations:
                changes.append(
                    RowChange(
                        Collection.FOLLOWS,
                        "DELETE",
                        {"follower_id": actor_id, "following_id": target_id},
                    )
                )
                changes.append(
                    RowChange(
                        Collection.FOLLOWS,
                        "DELETE",
                        {"follower_id": target_id, "following_id": actor_id},
                    )
                )
                changes.extend(self._friendship_changes("DELETE", actor_id, target_id))
                changes.extend(
                    RowChange(
                        Collection.FRIEND_REQUESTS,
                        "DELETE",
                        {"from_user": from_user, "to_user": to_user},
                    )
                    for from_user, to_user in ((actor_id, target_id), (target_id, actor_id))
                )
            await self._changed(actor_id, target_id, *changes)
        return created

    async def unblock(self, actor_id: Optional[str], target_id: str) -> bool:
        deleted = await self.blocking.unblock(actor_id, target_id)
        if deleted:
            await self._changed(
                actor_id,
                target_id,
                RowChange(
                    Collection.BLOCKED_USERS,
                    "DELETE",
                    {"blocker_id": actor_id, "blocked_id": target_id},
                ),
            )
        return deleted

    # Read models
    async def get_user_stats(self, user_id: str) -> RelationStatsResponse:
        """Counts for a user, cached briefly"""
        cached = await self.cache.get_stats(user_id)
        if cached:
            return RelationStatsResponse(**cached)

        stats = await self.counts.stats(user_id)
        response = RelationStatsResponse(**vars(stats))
        await self.cache.set_stats(user_id, response.model_dump())
        return response

    async def get_relationship(
        self, current_user_id: str, target_user_id: str
    ) -> RelationshipResponse:
        """Relationship between current user and target user"""
        cached = await self.cache.get_relationship(current_user_id, target_user_id)
        if cached:
            return RelationshipResponse(**cached)

        is_following = await self.store.is_following(current_user_id, target_user_id)
        is_followed_by = await self.store.is_following(target_user_id, current_user_id)

        if is_following and is_followed_by:
            relationship = RelationshipType.MUTUAL
        elif is_following:
            relationship = RelationshipType.FOLLOWING
        elif is_followed_by:
            relationship = RelationshipType.FOLLOWED_BY
        else:
            relationship = RelationshipType.NONE

        response = RelationshipResponse(
            user_id=current_user_id,
            target_user_id=target_user_id,
            relationship=relationship,
            is_following=is_following,
            is_followed_by=is_followed_by,
            is_friend=await self.store.are_friends(current_user_id, target_user_id),
            is_blocked=await self.blocking.is_blocked(current_user_id, target_user_id),
            is_blocked_by=await self.blocking.is_blocked_by(current_user_id, target_user_id),
        )

        await self.cache.set_relationship(
            current_user_id, target_user_id, response.model_dump()
        )
        return response
