"""
Domain models - Core relationship entities
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any
from enum import Enum


class Collection(str, Enum):
    """Relation collections backed by the store"""
    FOLLOWS = "follows"
    FRIEND_REQUESTS = "friend_requests"
    FRIENDSHIPS = "friendships"
    BLOCKED_USERS = "blocked_users"


class RequestStatus(str, Enum):
    """Friend request status"""
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class FriendshipStatus(str, Enum):
    """Friendship row status (only accepted rows are ever written)"""
    ACCEPTED = "accepted"


class ResendPolicy(str, Enum):
    """What sending a request to an existing (from, to) pair does"""
    REOPEN = "reopen"
    KEEP = "keep"


@dataclass
class Profile:
    """Profile as exposed by the profile service"""
    id: str
    username: str
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Profile":
        return cls(
            id=str(data["id"]),
            username=data.get("username") or "",
            full_name=data.get("full_name"),
            avatar_url=data.get("avatar_url"),
        )


@dataclass
class FriendRequest:
    """Friend request between two users"""
    id: int
    from_user: str
    to_user: str
    status: RequestStatus
    created_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status == RequestStatus.PENDING

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "FriendRequest":
        return cls(
            id=row["id"],
            from_user=row["from_user"],
            to_user=row["to_user"],
            status=RequestStatus(row["status"]),
            created_at=row.get("created_at"),
        )


@dataclass
class Friendship:
    """One directed row of a mirrored friendship"""
    requester_id: str
    receiver_id: str
    status: FriendshipStatus = FriendshipStatus.ACCEPTED
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Friendship":
        return cls(
            requester_id=row["requester_id"],
            receiver_id=row["receiver_id"],
            status=FriendshipStatus(row["status"]),
            created_at=row.get("created_at"),
        )


@dataclass
class FollowStats:
    """Counts for a single user"""
    user_id: str
    follower_count: int
    following_count: int
    friend_count: int
    pending_request_count: int


@dataclass
class ChangeEvent:
    """
    Invalidation signal for a relation collection.

    Carries no row data: receivers must re-read whatever they display.
    """
    collection: Collection
    event_type: str
    filter: Optional[str] = None


@dataclass
class RowChange:
    """A committed write, used internally to route invalidations"""
    collection: Collection
    event_type: str
    row: Dict[str, Any] = field(default_factory=dict)
