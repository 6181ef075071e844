"""Remote catalog errors."""

from typing import Any

DUPLICATE_STATUS = 422
DUPLICATE_PHRASE = "already exists"


class CatalogError(Exception):
    """Base error for remote catalog operations."""


class CatalogAPIError(CatalogError):
    """API error with status code and response body."""

    def __init__(self, status_code: int, message: str, body: Any = None):
        self.status_code = status_code
        self.message = message
        self.body = body
        super().__init__(f"[{status_code}] {message}")


class DuplicateResourceError(CatalogAPIError):
    """Create rejected because the resource already exists remotely."""


class AuthenticationError(CatalogError):
    """Login, refresh or anti-forgery token exchange failed."""


def is_duplicate_resource(status_code: int | None, body: Any) -> bool:
    """
    Classify a create failure as a duplicate resource.

    The remote catalog exposes no structured error code for this case, so
    the rule is a 422 status with "already exists" somewhere in the body.
    """
    if status_code != DUPLICATE_STATUS or body is None:
        return False
    return DUPLICATE_PHRASE in str(body).lower()
