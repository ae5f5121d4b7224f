"""Error taxonomy shared by the workspace core and the web layer."""

from __future__ import annotations


class WorkspaceError(RuntimeError):
    """Base class for every error the workspace core raises on purpose."""


class ValidationError(WorkspaceError):
    """Raised when incoming data fails validation."""


class TerminalStateError(ValidationError):
    """Raised when a booking or order is asked to leave a terminal state."""


class InsufficientStockError(ValidationError):
    """Raised when an order asks for more units than are on hand."""


class NotFoundError(WorkspaceError):
    """Raised when a referenced record does not exist."""


class ConflictError(WorkspaceError):
    """Raised on double bookings and uniqueness violations."""


class AuthorizationError(WorkspaceError):
    """Raised when a caller is not permitted to perform an action."""
