"""External identity service communication layer."""
import asyncio
import httpx
import logging
import time
from typing import Dict, Any, Iterable, Optional

from config import USER_DIRECTORY_URL, USER_DIRECTORY_TIMEOUT
from monitoring import external_user_directory_duration_histogram

logger = logging.getLogger(__name__)

CONTACT_FIELDS = ("name", "email", "phone")


class UserDirectoryClient:
    """Looks up user contact details in the external identity service."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str = USER_DIRECTORY_URL,
        timeout: float = USER_DIRECTORY_TIMEOUT
    ):
        """
        Initialize user directory client.

        Args:
            http_client: Async HTTP client
            base_url: Identity service root URL
            timeout: Per-request timeout in seconds
        """
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def get_contact(self, user_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch name, email and phone for a user.

        Lookups are best effort: any failure is logged and yields None.

        Args:
            user_id: User identifier

        Returns:
            Contact fields if the user was found
        """
        # HTTPXClientInstrumentor already creates spans for HTTP calls
        start_time = time.time()
        status = "success"
        status_code = None
        try:
            response = await self.http_client.get(
                f"{self.base_url}/api/users/{user_id}",
                timeout=self.timeout
            )
            status_code = response.status_code
            if response.status_code == 200:
                data = response.json()
                return {field: data.get(field) for field in CONTACT_FIELDS}
            else:
                status = "error"
                logger.warning("User directory returned non-200 status", extra={
                    "status_code": response.status_code,
                    "user_id": user_id
                })
                return None
        except (httpx.HTTPError, ValueError) as e:
            status = "error"
            status_code = 0  # Connection failure, timeout or bad JSON
            logger.error("Failed to look up user contact", extra={
                "user_id": user_id,
                "error": str(e)
            })
            return None
        finally:
            duration = time.time() - start_time
            external_user_directory_duration_histogram.record(
                duration,
                {
                    "status": status,
                    "status_code": str(status_code) if status_code else "0"
                }
            )

    async def get_contacts(self, user_ids: Iterable[str]) -> Dict[str, Optional[Dict[str, Any]]]:
        """Look up several users concurrently, one request per distinct id."""
        unique_ids = list(dict.fromkeys(user_ids))
        results = await asyncio.gather(*(self.get_contact(user_id) for user_id in unique_ids))
        return dict(zip(unique_ids, results))
