"""
Bearer-token agent authentication.

Tokens are minted by the external auth service; the dialler only verifies
them and reads the agent id and role.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any, Optional

import jwt
from fastapi import Depends, Header, HTTPException, status
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

from dialler.config import Settings, get_settings
from dialler.shared.logging import get_logger

logger = get_logger(__name__)


class AgentRole(str, Enum):
    AGENT = "agent"
    SUPERVISOR = "supervisor"
    ADMIN = "admin"


@dataclass(frozen=True)
class CurrentAgent:
    id: int
    role: AgentRole

    @property
    def is_privileged(self) -> bool:
        """Supervisors and admins see every agent's calls."""
        return self.role in (AgentRole.SUPERVISOR, AgentRole.ADMIN)


def _unauthorized(code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": code, "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_agent_token(token: str, settings: Settings | None = None) -> CurrentAgent:
    """Verify a bearer token and extract the agent.

    The agent id is read from ``agent_id`` (falling back to ``sub``) and the
    role from ``role`` (default ``agent``).

    Raises:
        HTTPException: 401 for expired, invalid or incomplete tokens.
    """
    settings = settings or get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except ExpiredSignatureError as e:
        logger.warning("Token expired")
        raise _unauthorized("TOKEN_EXPIRED", "Token expired") from e
    except InvalidTokenError as e:
        logger.warning("Invalid token", extra={"error": str(e)})
        raise _unauthorized("INVALID_TOKEN", "Invalid token") from e

    raw_id = payload.get("agent_id", payload.get("sub"))
    try:
        agent_id = int(raw_id)
        role = AgentRole(payload.get("role", AgentRole.AGENT.value))
    except (TypeError, ValueError) as e:
        raise _unauthorized("INVALID_TOKEN", "Token does not identify an agent") from e

    return CurrentAgent(id=agent_id, role=role)


async def get_current_agent(
    authorization: Annotated[Optional[str], Header(alias="Authorization")] = None,
) -> CurrentAgent:
    """FastAPI dependency resolving the calling agent from ``Authorization``."""
    if not authorization:
        raise _unauthorized("MISSING_TOKEN", "Not authenticated")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise _unauthorized("INVALID_TOKEN", "Invalid authorization header")

    return decode_agent_token(token.strip())


CurrentAgentDep = Annotated[CurrentAgent, Depends(get_current_agent)]
