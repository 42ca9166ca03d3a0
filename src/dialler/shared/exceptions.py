"""
Domain exceptions.

Each class maps to one coarse error category surfaced at the API boundary
(see ``dialler.main.create_app``).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class AppError(Exception):
    message: str = "Application error"
    details: Optional[dict[str, Any]] = None

    def __str__(self) -> str:
        return self.message


class ValidationError(AppError):
    """Malformed or out-of-range input, rejected before any write."""


class PermissionDeniedError(AppError):
    """Agent acting on a resource not assigned to them."""


class NotFoundError(AppError):
    """Unknown session, callback or queue entry."""


class ConflictError(AppError):
    """Conditional update lost a race or the target is in the wrong state.

    Callers should re-read current state and retry.
    """


class DependencyError(AppError):
    """A collaborator (store, user service) is unavailable."""


class UserContextUnavailableError(DependencyError):
    """The user/claims service could not produce a context."""
