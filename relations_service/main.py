"""
FastAPI application for Relations Service
"""
from fastapi import (
    FastAPI,
    Depends,
    HTTPException,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Optional, Union
import logging

from .config import settings
from .database import db
from .cache import cache
from .kafka_producer import kafka_producer
from .kafka_consumer import KafkaConsumerManager
from .notifier import notifier
from .service_client import service_client
from .dependencies import (
    get_current_user,
    get_optional_user,
    get_relations_service,
    resolve_user,
)
from .errors import (
    InvalidTarget,
    NotAuthenticated,
    NotFound,
    PermissionDenied,
    RelationError,
    Unexpected,
)
from .service import SocialGraphService
from .websocket import ConnectionManager
from .schemas import (
    User,
    ActionResponse,
    FriendRequestAction,
    FriendRequestCreate,
    FriendRequestResponse,
    FriendsResponse,
    PendingRequestsResponse,
    ReconcileResponse,
    RelationStatsResponse,
    RelationshipResponse,
    RequestAction,
    UserListResponse,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.DEBUG else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

kafka_consumer = KafkaConsumerManager(notifier)
connections = ConnectionManager(notifier)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    # Startup
    logger.info("Starting Relations Service...")

    # Connect to database
    await db.connect()
    logger.info("Database connected")

    # Connect to Redis
    await cache.connect()
    logger.info("Redis cache initialized")

    # Start HTTP client for auth and profiles
    await service_client.start()

    # Start Kafka producer and fan changes out through it
    await kafka_producer.start()
    notifier.publisher = kafka_producer
    logger.info("Kafka producer started")

    # Start Kafka consumer for changes from other instances
    await kafka_consumer.start()

    logger.info(f"Relations Service started successfully on port {settings.PORT}")

    yield

    # Shutdown
    logger.info("Shutting down Relations Service...")

    await kafka_consumer.stop()

    notifier.publisher = None
    await kafka_producer.stop()

    await service_client.stop()

    # Disconnect Redis
    await cache.disconnect()

    # Disconnect database
    await db.disconnect()

    logger.info("Relations Service shut down successfully")


# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Walcord Relations Service - follows, friend requests, friendships and blocks",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


ERROR_STATUS = [
    (NotAuthenticated, status.HTTP_401_UNAUTHORIZED),
    (InvalidTarget, status.HTTP_400_BAD_REQUEST),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (PermissionDenied, status.HTTP_403_FORBIDDEN),
    (Unexpected, status.HTTP_502_BAD_GATEWAY),
]


@app.exception_handler(RelationError)
async def relation_error_handler(request: Request, exc: RelationError):
    """Translate relation errors into HTTP responses"""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code = code
            break

    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message} ({exc.cause})")

    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, NotAuthenticated) else None
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "code": exc.code},
        headers=headers,
    )


def _actor(user: Optional[User]) -> Optional[str]:
    return user.id if user else None


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": settings.APP_NAME}


# Follow/Unfollow endpoints
@app.post(
    "/api/v1/relations/follow/{user_id}",
    response_model=ActionResponse,
    tags=["Follow"],
    summary="Follow a user",
)
async def follow_user(
    user_id: str,
    current_user: Optional[User] = Depends(get_optional_user),
    service: SocialGraphService = Depends(get_relations_service),
):
    """
    Follow a user

    - Following someone you already follow is not an error
    - You cannot follow yourself
    """
    changed = await service.follow(_actor(current_user), user_id)
    return ActionResponse(
        success=True,
        changed=changed,
        message="Now following user" if changed else "Already following user",
    )


@app.delete(
    "/api/v1/relations/follow/{user_id}",
    response_model=ActionResponse,
    tags=["Follow"],
    summary="Unfollow a user",
)
async def unfollow_user(
    user_id: str,
    current_user: Optional[User] = Depends(get_optional_user),
    service: SocialGraphService = Depends(get_relations_service),
):
    """Unfollow a user; no-op if not following"""
    changed = await service.unfollow(_actor(current_user), user_id)
    return ActionResponse(
        success=True,
        changed=changed,
        message="Unfollowed user" if changed else "Not following user",
    )


# Followers/Following endpoints
@app.get(
    "/api/v1/relations/followers/{user_id}",
    response_model=UserListResponse,
    tags=["Followers"],
    summary="Get user's followers",
)
async def get_followers(
    user_id: str,
    page: int = Query(1, ge=1, description="Page number (1-indexed)"),
    page_size: int = Query(
        settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE, description="Items per page"
    ),
    current_user: User = Depends(get_current_user),
    service: SocialGraphService = Depends(get_relations_service),
):
    """Paginated ids of users who follow the specified user, newest first"""
    users, total, has_more = await service.get_followers(user_id, page, page_size)

    return UserListResponse(
        users=users,
        total=total,
        page=page,
        page_size=page_size,
        has_more=has_more,
    )


@app.get(
    "/api/v1/relations/following/{user_id}",
    response_model=UserListResponse,
    tags=["Following"],
    summary="Get users that user is following",
)
async def get_following(
    user_id: str,
    page: int = Query(1, ge=1, description="Page number (1-indexed)"),
    page_size: int = Query(
        settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE, description="Items per page"
    ),
    current_user: User = Depends(get_current_user),
    service: SocialGraphService = Depends(get_relations_service),
):
    """Paginated ids of users the specified user follows, newest first"""
    users, total, has_more = await service.get_following(user_id, page, page_size)

    return UserListResponse(
        users=users,
        total=total,
        page=page,
        page_size=page_size,
        has_more=has_more,
    )


# Friend request endpoints
@app.post(
    "/api/v1/relations/requests",
    response_model=Union[FriendRequestResponse, ActionResponse],
    tags=["Friend Requests"],
    summary="Send a friend request",
)
async def send_friend_request(
    payload: FriendRequestCreate,
    current_user: Optional[User] = Depends(get_optional_user),
    service: SocialGraphService = Depends(get_relations_service),
):
    """
    Send a friend request by user id or username

    - Sending to yourself does nothing
    - Sending again to the same user reopens the request (configurable)
    """
    request = await service.send_request(
        _actor(current_user), to_user=payload.to_user, username=payload.username
    )
    if request is None:
        return ActionResponse(
            success=True, changed=False, message="Cannot send a friend request to yourself"
        )

    return FriendRequestResponse(
        id=request.id,
        from_user=request.from_user,
        to_user=request.to_user,
        status=request.status.value,
        created_at=request.created_at,
    )


@app.get(
    "/api/v1/relations/requests/pending",
    response_model=PendingRequestsResponse,
    tags=["Friend Requests"],
    summary="Get pending friend requests",
)
async def get_pending_requests(
    page: int = Query(1, ge=1, description="Page number (1-indexed)"),
    page_size: int = Query(
        settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE, description="Items per page"
    ),
    current_user: User = Depends(get_current_user),
    service: SocialGraphService = Depends(get_relations_service),
):
    """
    Get pending friend requests

    Returns requests addressed to you with the sender's profile
    """
    requests, total, has_more = await service.list_pending_requests(
        current_user.id, page, page_size
    )

    return PendingRequestsResponse(
        requests=requests,
        total=total,
        page=page,
        page_size=page_size,
        has_more=has_more,
    )


@app.post(
    "/api/v1/relations/requests/{request_id}",
    response_model=FriendRequestResponse,
    tags=["Friend Requests"],
    summary="Accept or decline friend request",
)
async def handle_friend_request(
    request_id: int,
    action: FriendRequestAction,
    current_user: Optional[User] = Depends(get_optional_user),
    service: SocialGraphService = Depends(get_relations_service),
):
    """
    Accept or decline a friend request

    - action: 'accept' or 'decline'
    - Answering a request that is no longer pending does nothing
    """
    if action.action == RequestAction.ACCEPT:
        request = await service.accept_request(_actor(current_user), request_id)
    else:
        request = await service.decline_request(_actor(current_user), request_id)

    return FriendRequestResponse(
        id=request.id,
        from_user=request.from_user,
        to_user=request.to_user,
        status=request.status.value,
        created_at=request.created_at,
    )


@app.post(
    "/api/v1/relations/requests/{request_id}/reconcile",
    response_model=ReconcileResponse,
    tags=["Friend Requests"],
    summary="Repair the friendship of an accepted request",
)
async def reconcile_friend_request(
    request_id: int,
    current_user: Optional[User] = Depends(get_optional_user),
    service: SocialGraphService = Depends(get_relations_service),
):
    """Re-run the mirrored friendship writes of an accepted request"""
    result = await service.retry_reconciliation(_actor(current_user), request_id)

    return ReconcileResponse(
        request_id=request_id,
        complete=result.is_complete,
        forward_error=result.forward_error.code if result.forward_error else None,
        backward_error=result.backward_error.code if result.backward_error else None,
    )


# Friendship endpoints
@app.get(
    "/api/v1/relations/friends/{user_id}",
    response_model=FriendsResponse,
    tags=["Friends"],
    summary="Get user's friends",
)
async def get_friends(
    user_id: str,
    page: int = Query(1, ge=1, description="Page number (1-indexed)"),
    page_size: int = Query(
        settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE, description="Items per page"
    ),
    current_user: User = Depends(get_current_user),
    service: SocialGraphService = Depends(get_relations_service),
):
    """Friends of the specified user with their display fields"""
    friends, total, has_more = await service.list_friends(user_id, page, page_size)

    return FriendsResponse(
        friends=friends,
        total=total,
        page=page,
        page_size=page_size,
        has_more=has_more,
    )


@app.delete(
    "/api/v1/relations/friends/{user_id}",
    response_model=ActionResponse,
    tags=["Friends"],
    summary="Remove a friend",
)
async def unfriend_user(
    user_id: str,
    current_user: Optional[User] = Depends(get_optional_user),
    service: SocialGraphService = Depends(get_relations_service),
):
    """Remove the friendship in both directions"""
    result = await service.unfriend(_actor(current_user), user_id)
    if not result.removed:
        message = "Not friends with user"
    elif result.is_complete:
        message = "Friend removed"
    else:
        message = "Friendship partially removed"
    return ActionResponse(success=True, changed=result.removed > 0, message=message)


# Block endpoints
@app.post(
    "/api/v1/relations/block/{user_id}",
    response_model=ActionResponse,
    tags=["Block"],
    summary="Block a user",
)
async def block_user(
    user_id: str,
    current_user: Optional[User] = Depends(get_optional_user),
    service: SocialGraphService = Depends(get_relations_service),
):
    changed = await service.block(_actor(current_user), user_id)
    return ActionResponse(
        success=True,
        changed=changed,
        message="User blocked" if changed else "User already blocked",
    )


@app.delete(
    "/api/v1/relations/block/{user_id}",
    response_model=ActionResponse,
    tags=["Block"],
    summary="Unblock a user",
)
async def unblock_user(
    user_id: str,
    current_user: Optional[User] = Depends(get_optional_user),
    service: SocialGraphService = Depends(get_relations_service),
):
    changed = await service.unblock(_actor(current_user), user_id)
    return ActionResponse(
        success=True,
        changed=changed,
        message="User unblocked" if changed else "User was not blocked",
    )


# Relationship endpoints
@app.get(
    "/api/v1/relations/relationship/{user_id}",
    response_model=RelationshipResponse,
    tags=["Relationship"],
    summary="Get relationship with user",
)
async def get_relationship(
    user_id: str,
    current_user: User = Depends(get_current_user),
    service: SocialGraphService = Depends(get_relations_service),
):
    """
    Get relationship between current user and target user

    Returns follow direction, friendship and block flags in both directions
    """
    return await service.get_relationship(current_user.id, user_id)


@app.get(
    "/api/v1/relations/stats/{user_id}",
    response_model=RelationStatsResponse,
    tags=["Stats"],
    summary="Get user's relation statistics",
)
async def get_user_stats(
    user_id: str,
    current_user: User = Depends(get_current_user),
    service: SocialGraphService = Depends(get_relations_service),
):
    """
    Get user's relation statistics

    Returns:
    - follower_count: Number of followers
    - following_count: Number of users being followed
    - friend_count: Number of friends
    - pending_request_count: Number of friend requests waiting for an answer
      (only for your own stats)
    """
    stats = await service.get_user_stats(user_id)
    if user_id != current_user.id:
        stats = stats.model_copy(update={"pending_request_count": None})
    return stats


# Realtime invalidations
@app.websocket("/ws/relations")
async def relations_socket(websocket: WebSocket, token: Optional[str] = Query(None)):
    """
    Push invalidation events for the authenticated user

    Messages carry the collection name only; clients re-fetch what they show.
    """
    try:
        user = await resolve_user(token, service_client) if token else None
    except HTTPException:
        user = None
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    connection_id = await connections.connect(user.id, websocket)
    try:
        while True:
            # Incoming frames are only keep-alives
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        connections.disconnect(connection_id)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "relations_service.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
    )
