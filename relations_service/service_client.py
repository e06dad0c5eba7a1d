"""
Client for the identity and profile services
"""
import httpx
from typing import Optional, List, Dict, Any, Iterable
import logging

from .config import settings
from .domain.models import Profile

logger = logging.getLogger(__name__)


class ServiceUnavailable(Exception):
    """Upstream service could not be reached"""


class ServiceClient:
    """HTTP client for the auth and profile services"""

    def __init__(self):
        self.timeout = httpx.Timeout(10.0, connect=5.0)
        self.client: Optional[httpx.AsyncClient] = None

    async def start(self):
        """Initialize HTTP client"""
        self.client = httpx.AsyncClient(timeout=self.timeout)
        logger.info("Service client initialized")

    async def stop(self):
        """Close HTTP client"""
        if self.client:
            await self.client.aclose()
            logger.info("Service client closed")

    async def _make_request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        **kwargs
    ) -> Optional[Any]:
        """Make HTTP request to a service; None on any non-2xx answer"""
        if not self.client:
            logger.error("Service client not initialized")
            return None

        try:
            response = await self.client.request(method, url, headers=headers, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.warning(f"HTTP error {e.response.status_code} for {url}")
            return None
        except (httpx.TimeoutException, httpx.ConnectError) as e:
            logger.error(f"Service unreachable for {url}: {e}")
            raise ServiceUnavailable(str(e))
        except Exception as e:
            logger.error(f"Request failed for {url}: {e}")
            return None

    # Identity
    async def verify_token(self, token: str) -> Optional[Dict[str, Any]]:
        """
        Verify an access token with the auth service

        Returns:
            User data if the token is valid, None otherwise

        Raises:
            ServiceUnavailable: If the auth service cannot be reached
        """
        return await self._make_request(
            "GET",
            f"{settings.AUTH_SERVICE_URL}/api/v1/auth/me",
            headers={"Authorization": f"Bearer {token}"},
        )

    # Profiles
    async def get_profiles(self, user_ids: Iterable[str]) -> Dict[str, Profile]:
        """Resolve many ids at once; missing profiles are left out"""
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return {}

        data = await self._make_request(
            "GET",
            f"{settings.PROFILE_SERVICE_URL}/api/v1/users",
            params={"ids": ",".join(ids)},
        )
        if not data:
            return {}

        items: List[Dict[str, Any]] = data.get("users", []) if isinstance(data, dict) else data
        profiles = [Profile.from_dict(item) for item in items if item.get("id") is not None]
        return {p.id: p for p in profiles}

    async def resolve_username(self, username: str) -> Optional[str]:
        """Map a username to a profile id"""
        data = await self._make_request(
            "GET",
            f"{settings.PROFILE_SERVICE_URL}/api/v1/users/by-username/{username.lstrip('@')}",
        )
        if not data or data.get("id") is None:
            return None
        return str(data["id"])


# Global service client instance
service_client = ServiceClient()


async def get_service_client() -> ServiceClient:
    """Dependency for getting service client instance"""
    return service_client
