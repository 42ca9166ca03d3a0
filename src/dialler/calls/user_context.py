"""
Read-through client for the external user/claims service.

The dialler never owns customer or claim data; it asks the user service for a
structured context keyed by user id and snapshots the claims onto the call
session at call start.
"""

from __future__ import annotations

from typing import Protocol

import httpx
from pydantic import ValidationError as PydanticValidationError

from dialler.calls.schemas import UserCallContext
from dialler.config import Settings, get_settings
from dialler.shared.exceptions import NotFoundError, UserContextUnavailableError
from dialler.shared.logging import correlation_id_var, get_logger

logger = get_logger(__name__)


class UserContextProvider(Protocol):
    """Capability the call service depends on for customer context."""

    async def get_user_context(self, user_id: int) -> UserCallContext:
        """Return the context for a user or raise."""
        ...


class HttpUserContextProvider:
    """Fetches user context over HTTP from the user/claims service."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize provider.

        Args:
            base_url: Service base URL, without trailing slash.
            timeout_seconds: Per-request timeout.
            client: Optional shared client (tests inject a MockTransport here).
        """
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "HttpUserContextProvider":
        settings = settings or get_settings()
        return cls(
            base_url=settings.user_context_base_url,
            timeout_seconds=settings.user_context_timeout_seconds,
        )

    async def get_user_context(self, user_id: int) -> UserCallContext:
        """Fetch ``GET /users/{user_id}/call-context``.

        Raises:
            NotFoundError: The user service does not know the user.
            UserContextUnavailableError: Transport failure, 5xx, or a malformed body.
        """
        url = f"{self._base_url}/users/{user_id}/call-context"
        headers = {}
        correlation_id = correlation_id_var.get()
        if correlation_id:
            headers["X-Correlation-ID"] = correlation_id
        try:
            if self._client is not None:
                response = await self._client.get(url, headers=headers, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(url, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(
                "User context request failed",
                extra={"user_id": user_id, "error": str(e)},
            )
            raise UserContextUnavailableError(
                message=f"User service unavailable: {e!s}",
                details={"user_id": user_id},
            ) from e

        if response.status_code == 404:
            raise NotFoundError(message=f"User not found: {user_id}", details={"user_id": user_id})

        try:
            response.raise_for_status()
            return UserCallContext.model_validate(response.json())
        except (httpx.HTTPStatusError, ValueError, PydanticValidationError) as e:
            logger.warning(
                "User context response rejected",
                extra={"user_id": user_id, "status_code": response.status_code},
            )
            raise UserContextUnavailableError(
                message="User service returned an invalid response",
                details={"user_id": user_id, "status_code": response.status_code},
            ) from e


def get_user_context_provider() -> UserContextProvider:
    """FastAPI dependency for the user context provider."""
    return HttpUserContextProvider.from_settings()
