"""
FastAPI dependencies for authentication and service wiring
"""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional
import logging

from .cache import RedisCache, get_cache
from .config import settings
from .database import Database, get_db
from .domain.models import ResendPolicy
from .notifier import ChangeNotifier, get_notifier
from .schemas import User
from .service import SocialGraphService
from .service_client import ServiceClient, ServiceUnavailable, get_service_client

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


async def resolve_user(token: str, client: ServiceClient) -> Optional[User]:
    """
    Resolve a bearer token to a user through the auth service

    Returns:
        User if the token is valid and the account active, None otherwise
    """
    try:
        user_data = await client.verify_token(token)
    except ServiceUnavailable:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service is unavailable",
        )

    if not user_data:
        return None

    try:
        user = User(**user_data)
    except Exception as e:
        logger.error(f"Error parsing user data: {e}")
        return None

    return user if user.is_active else None


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    client: ServiceClient = Depends(get_service_client),
) -> Optional[User]:
    """
    Get current user if authenticated, None otherwise

    Anonymous callers reach the relation layer with no actor, which rejects
    mutations with NotAuthenticated.
    """
    if not credentials:
        return None
    return await resolve_user(credentials.credentials, client)


async def get_current_user(
    user: Optional[User] = Depends(get_optional_user),
) -> User:
    """Get current authenticated user"""
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def get_relations_service(
    db: Database = Depends(get_db),
    cache: RedisCache = Depends(get_cache),
    notifier: ChangeNotifier = Depends(get_notifier),
    client: ServiceClient = Depends(get_service_client),
) -> SocialGraphService:
    """Get SocialGraphService instance with dependencies"""
    return SocialGraphService(
        db,
        cache,
        notifier,
        client,
        resend_policy=ResendPolicy(settings.REQUEST_RESEND_POLICY),
        block_retracts_relations=settings.BLOCK_RETRACTS_RELATIONS,
    )
