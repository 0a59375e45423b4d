"""
Group ordering error taxonomy.

Every failure the core can report to a caller is a ``GroupOrderError``
carrying the HTTP status the API boundary answers with. Nothing below the
route layer catches these; the FastAPI exception handler in ``main.py``
turns them into ``{"success": false, "error", "message"}`` bodies.
"""


class GroupOrderError(Exception):
    """Base class for all group ordering errors."""

    status_code = 400
    default_message = "Group order request failed."

    def __init__(self, message=None, status_code=None):
        """Initialize the error."""
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    @property
    def error(self) -> str:
        """Machine-readable error name returned to clients."""
        return type(self).__name__


class InvalidRequest(GroupOrderError):
    """Raised when input is malformed or out of range."""

    default_message = "Invalid request."


class NotFound(GroupOrderError):
    """Raised when a group order, participant, item or invite code is unknown."""

    status_code = 404
    default_message = "Group order not found."


class SessionClosed(GroupOrderError):
    """Raised when a mutation targets a session that no longer accepts it."""

    status_code = 409
    default_message = "This group order is closed."


class CapacityExceeded(GroupOrderError):
    """Raised when a join would exceed maxParticipants."""

    status_code = 409
    default_message = "This group order is full."


class IdentityRequired(GroupOrderError):
    """Raised when a session requires a name and email and one is missing."""

    default_message = "A name and email are required to join this group order."


class LimitExceeded(GroupOrderError):
    """Raised when an item addition would push spend past the effective limit."""

    status_code = 422
    default_message = "Spending limit exceeded."


class InvalidSplit(GroupOrderError):
    """Raised when a payment structure or custom split does not validate."""

    default_message = "Invalid payment split."


class HasPendingItems(GroupOrderError):
    """Raised when a participant with items tries to leave."""

    status_code = 409
    default_message = "Remove your items before leaving the group order."


class CodeGenerationFailed(GroupOrderError):
    """Raised when no free invite code was found within the retry budget."""

    status_code = 503
    default_message = "Could not allocate an invite code, please retry."


class LeaderRequired(GroupOrderError):
    """Raised when a leader-only operation is attempted by another participant."""

    status_code = 403
    default_message = "Only the group leader can do this."
