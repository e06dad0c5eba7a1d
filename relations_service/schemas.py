"""
Pydantic schemas for request/response validation
"""
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime
from enum import Enum


class RequestStatus(str, Enum):
    """Friend request status"""

    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class RelationshipType(str, Enum):
    """Follow relationship between two users"""

    FOLLOWING = "following"  # Current user follows target user
    FOLLOWED_BY = "followed_by"  # Target user follows current user
    MUTUAL = "mutual"  # Both follow each other
    NONE = "none"  # No follow relationship


class RequestAction(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"


# Request Schemas
class FriendRequestCreate(BaseModel):
    """Send a friend request by user id or username"""

    to_user: Optional[str] = Field(None, description="Receiver profile id")
    username: Optional[str] = Field(None, description="Receiver username")

    @field_validator("username")
    @classmethod
    def strip_username(cls, v):
        if v is None:
            return v
        v = v.strip().lstrip("@")
        return v or None


class FriendRequestAction(BaseModel):
    """Accept or decline a friend request"""

    action: RequestAction


# Response Schemas
class MessageResponse(BaseModel):
    """Generic message response"""

    message: str


class ActionResponse(BaseModel):
    """Response after a mutation"""

    success: bool
    changed: bool
    message: str


class ProfileInfo(BaseModel):
    """Display fields of a profile"""

    id: str
    username: str
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None


class FriendRequestResponse(BaseModel):
    """A friend request"""

    id: int
    from_user: str
    to_user: str
    status: RequestStatus
    created_at: Optional[datetime] = None
    from_profile: Optional[ProfileInfo] = None


class PendingRequestsResponse(BaseModel):
    """Pending friend requests addressed to the current user"""

    requests: List[FriendRequestResponse]
    total: int
    page: int
    page_size: int
    has_more: bool


class FriendInfo(BaseModel):
    """A friend with the date the friendship started"""

    id: str
    username: Optional[str] = None
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    since: Optional[datetime] = None


class FriendsResponse(BaseModel):
    """Friends of a user"""

    friends: List[FriendInfo]
    total: int
    page: int
    page_size: int
    has_more: bool


class UserListResponse(BaseModel):
    """Followers or following of a user"""

    users: List[str]
    total: int
    page: int
    page_size: int
    has_more: bool


class RelationStatsResponse(BaseModel):
    """User's relation statistics"""

    user_id: str
    follower_count: int
    following_count: int
    friend_count: int
    pending_request_count: Optional[int] = None  # Only shown to the user themselves


class RelationshipResponse(BaseModel):
    """Relationship between current user and target user"""

    user_id: str
    target_user_id: str
    relationship: RelationshipType
    is_following: bool
    is_followed_by: bool
    is_friend: bool
    is_blocked: bool
    is_blocked_by: bool


class ReconcileResponse(BaseModel):
    """Outcome of re-running the friendship writes"""

    request_id: int
    complete: bool
    forward_error: Optional[str] = None
    backward_error: Optional[str] = None


# Internal Models
class User(BaseModel):
    """User model from Auth Service"""

    id: str
    username: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    is_active: bool = True

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return str(v)
