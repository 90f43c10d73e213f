"""External task handles as a closed variant.

The platform reports task state as free-form strings. They are mapped to
TaskStatus here, at the adapter boundary, and nothing above the adapter ever
sees the raw strings.

Task handles are never persisted. After a crash the handle is re-derived
from the busy task reported on the observed resource.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum

from .errors import InvalidSpecError, QuotaExceededError, TerminalError

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    """Status of an external task."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


# Platform status strings -> closed variant
_STATUS_MAP: dict[str, TaskStatus] = {
    "queued": TaskStatus.QUEUED,
    "prerunning": TaskStatus.QUEUED,
    "running": TaskStatus.RUNNING,
    "success": TaskStatus.SUCCESS,
    "error": TaskStatus.ERROR,
    "canceled": TaskStatus.ERROR,
    "aborted": TaskStatus.ERROR,
}

# Error messages that mean "will never succeed without a spec change"
_QUOTA_PATTERN = re.compile(r"quota|limit (has been )?exceeded|insufficient (resources|capacity)", re.I)
_INVALID_PATTERN = re.compile(
    r"invalid|does not exist|not found|no such|unsupported|malformed", re.I
)


@dataclass(frozen=True)
class TaskHandle:
    """Reference to an in-flight platform operation.

    Attributes:
        id: Platform task identifier.
        operation: Human-readable operation name for logs.
        status: Closed task status.
        message: Error message when status is ERROR.
        owner_id: External ID of the resource the task acts on, if reported.
    """

    id: str
    operation: str = ""
    status: TaskStatus = TaskStatus.QUEUED
    message: str = ""
    owner_id: str | None = None

    @property
    def is_done(self) -> bool:
        return self.status in (TaskStatus.SUCCESS, TaskStatus.ERROR)


def parse_task_status(raw: str | None) -> TaskStatus:
    """Map a platform status string to TaskStatus.

    Unrecognised values are treated as RUNNING so callers keep polling until
    their deadline instead of misreporting success.
    """
    if not raw:
        return TaskStatus.RUNNING
    status = _STATUS_MAP.get(raw.strip().lower())
    if status is None:
        logger.warning("Unknown task status, treating as running", extra={"status": raw})
        return TaskStatus.RUNNING
    return status


def task_error(task: TaskHandle) -> TerminalError:
    """Build the terminal error for a task that finished with ERROR."""
    message = task.message or f"Task {task.id} ({task.operation or 'unknown'}) failed"
    if _QUOTA_PATTERN.search(message):
        return QuotaExceededError(message)
    if _INVALID_PATTERN.search(message):
        return InvalidSpecError(message)
    return TerminalError(message, reason="TaskFailed")
