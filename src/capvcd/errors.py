"""Error taxonomy shared by the adapter, the reconcilers and the scheduler.

Every failure surfaced by the platform adapter is classified into one of
four families:

- Transient: network failure, rate limiting, 5xx, task still running.
  Retried with backoff, never user-visible until a deadline passes.
- Conflict: optimistic-lock mismatch on the declarative store.
  Retried immediately once, then backed off.
- Terminal: authentication failure, invalid spec, quota exceeded,
  resource owned by someone else. Surfaced as a Failed phase/condition,
  no automatic retry.
- Timeout: task polling exceeded its deadline. Kept distinct from Terminal
  so "stuck" and "rejected" can be told apart.

Anything that is not a CapvcdError is treated as Transient by the scheduler.
"""

from __future__ import annotations


class CapvcdError(Exception):
    """Base class for all operator errors."""

    pass


class TransientError(CapvcdError):
    """Raised for failures that are expected to clear on retry."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(TransientError):
    """Raised when the platform throttles requests (HTTP 429)."""

    pass


class ConflictError(CapvcdError):
    """Raised when a store update loses an optimistic-lock race."""

    pass


class TerminalError(CapvcdError):
    """Raised for failures that need a spec or credential change to clear.

    Attributes:
        reason: Short CamelCase reason copied into conditions.
    """

    reason = "TerminalError"

    def __init__(self, message: str, reason: str | None = None) -> None:
        super().__init__(message)
        if reason is not None:
            self.reason = reason


class AuthenticationError(TerminalError):
    """Raised when the platform rejects our credentials."""

    reason = "AuthenticationFailed"


class QuotaExceededError(TerminalError):
    """Raised when the platform refuses an operation because of quota."""

    reason = "QuotaExceeded"


class InvalidSpecError(TerminalError):
    """Raised when the platform rejects the requested resource definition."""

    reason = "InvalidSpec"


class OwnershipConflictError(TerminalError):
    """Raised when an external resource exists but belongs to another owner."""

    reason = "ExternalResourceNotOwned"


class TaskTimeoutError(CapvcdError):
    """Raised when an external task has not finished before the deadline.

    Attributes:
        task_id: The task that was still running.
        resource_id: External ID of the resource the task acts on, if known.
    """

    def __init__(
        self,
        message: str,
        task_id: str | None = None,
        resource_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.resource_id = resource_id


class NotFoundError(CapvcdError):
    """Raised when an external resource does not exist (HTTP 404)."""

    pass


class AlreadyExistsError(CapvcdError):
    """Raised when a create collides with an existing or busy resource."""

    pass


def is_terminal(error: BaseException) -> bool:
    """Check whether an error requires human intervention to clear."""
    return isinstance(error, TerminalError)
