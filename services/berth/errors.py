"""Service-layer exceptions.

Services raise these; routers and the WebSocket layer translate them into
status codes. Validation problems use plain ValueError.
"""


class BerthError(Exception):
    """Base exception for Berth service errors."""


class NotFoundError(BerthError):
    """Resource does not exist, or the principal is not allowed to see it."""


class OperationForbiddenError(BerthError):
    """Principal is authenticated but lacks the permission or scope."""

    def __init__(self, message: str, permission: str | None = None) -> None:
        super().__init__(message)
        self.permission = permission


class ConflictError(BerthError):
    """Request conflicts with existing state (duplicate grant, role in use)."""
