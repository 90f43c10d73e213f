"""Typed status conditions and the derived Ready summary.

Each reconciler owns the primary conditions of its own kind. The Ready
condition is never written directly: it is recomputed on every reconcile by
summarize() as a pure function of the primary conditions, which are only
read, never mutated.

Summary rules:
- All children True                      -> Ready=True
- Any child False with severity Error    -> Ready=False, Error
- Else any child False with Warning      -> Ready=False, Warning
- Else any child False                   -> Ready=False, Info
- Else (some child Unknown or missing)   -> Ready=Unknown
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


class ConditionStatus(str, Enum):
    """Tri-state condition status."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ConditionSeverity(str, Enum):
    """Severity of a False condition. Empty when the condition is True."""

    ERROR = "Error"
    WARNING = "Warning"
    INFO = "Info"
    NONE = ""


# Higher rank wins when picking the condition that explains the summary
_SEVERITY_RANK: dict[ConditionSeverity, int] = {
    ConditionSeverity.ERROR: 3,
    ConditionSeverity.WARNING: 2,
    ConditionSeverity.INFO: 1,
    ConditionSeverity.NONE: 0,
}

READY = "Ready"

# VCDCluster conditions
INFRASTRUCTURE_READY = "InfrastructureReady"
CONTROL_PLANE_ENDPOINT_READY = "ControlPlaneEndpointReady"

# VCDMachine conditions
BOOTSTRAP_DATA_AVAILABLE = "BootstrapDataAvailable"
VM_PROVISIONED = "VMProvisioned"
VM_RUNNING = "VMRunning"

CLUSTER_CONDITIONS: tuple[str, ...] = (INFRASTRUCTURE_READY, CONTROL_PLANE_ENDPOINT_READY)
MACHINE_CONDITIONS: tuple[str, ...] = (BOOTSTRAP_DATA_AVAILABLE, VM_PROVISIONED, VM_RUNNING)

# Shared reasons
DELETING_REASON = "Deleting"
DELETION_FAILED_REASON = "DeletionFailed"
WAITING_FOR_MACHINE_DELETION_REASON = "WaitingForMachineDeletion"


class Condition(BaseModel):
    """A typed, timestamped health signal attached to a resource status."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    type: str
    status: ConditionStatus = ConditionStatus.UNKNOWN
    severity: ConditionSeverity = ConditionSeverity.NONE
    reason: str = ""
    message: str = ""
    last_transition_time: datetime = Field(
        default_factory=lambda: datetime.now(UTC), alias="lastTransitionTime"
    )

    def is_true(self) -> bool:
        return self.status == ConditionStatus.TRUE

    def is_false(self) -> bool:
        return self.status == ConditionStatus.FALSE


def get_condition(conditions: Iterable[Condition], condition_type: str) -> Condition | None:
    """Return the condition of the given type, or None."""
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def is_true(conditions: Iterable[Condition], condition_type: str) -> bool:
    condition = get_condition(conditions, condition_type)
    return condition is not None and condition.is_true()


def set_condition(conditions: list[Condition], new: Condition) -> Condition:
    """Insert or replace a condition in place.

    lastTransitionTime only moves when the status changes, so repeated
    reconciles in the same state do not churn timestamps.

    Returns:
        The condition stored in the list.
    """
    existing = get_condition(conditions, new.type)
    if existing is not None:
        if existing.status == new.status:
            new = new.model_copy(update={"last_transition_time": existing.last_transition_time})
        conditions[conditions.index(existing)] = new
    else:
        conditions.append(new)

    # Ready first, then lexicographic, so serialized status is stable
    conditions.sort(key=lambda c: (c.type != READY, c.type))
    return new


def mark_true(conditions: list[Condition], condition_type: str) -> Condition:
    return set_condition(conditions, Condition(type=condition_type, status=ConditionStatus.TRUE))


def mark_false(
    conditions: list[Condition],
    condition_type: str,
    reason: str,
    severity: ConditionSeverity,
    message: str = "",
) -> Condition:
    return set_condition(
        conditions,
        Condition(
            type=condition_type,
            status=ConditionStatus.FALSE,
            severity=severity,
            reason=reason,
            message=message,
        ),
    )


def mark_unknown(
    conditions: list[Condition], condition_type: str, reason: str, message: str = ""
) -> Condition:
    return set_condition(
        conditions,
        Condition(
            type=condition_type,
            status=ConditionStatus.UNKNOWN,
            reason=reason,
            message=message,
        ),
    )


def summarize(conditions: Iterable[Condition], condition_types: Iterable[str]) -> Condition:
    """Derive the Ready condition from the given child condition types.

    Missing children count as Unknown. The returned condition is new; the
    inputs are not modified.

    Args:
        conditions: Current conditions of the resource.
        condition_types: Child condition types that make up readiness.

    Returns:
        The derived Ready condition (not yet stored).
    """
    snapshot = list(conditions)
    children: list[Condition] = []
    missing: list[str] = []
    for condition_type in condition_types:
        child = get_condition(snapshot, condition_type)
        if child is None:
            missing.append(condition_type)
        else:
            children.append(child)

    false_children = [c for c in children if c.is_false()]
    if false_children:
        # Most severe first; ties keep the declared child order
        worst = max(false_children, key=lambda c: _SEVERITY_RANK[c.severity])
        severity = worst.severity
        if severity == ConditionSeverity.NONE:
            severity = ConditionSeverity.INFO
        return Condition(
            type=READY,
            status=ConditionStatus.FALSE,
            severity=severity,
            reason=worst.reason,
            message=_summary_message(false_children),
        )

    unknown_children = [c for c in children if c.status == ConditionStatus.UNKNOWN]
    if unknown_children or missing:
        reason = unknown_children[0].reason if unknown_children else "WaitingForConditions"
        pending = [c.type for c in unknown_children] + missing
        return Condition(
            type=READY,
            status=ConditionStatus.UNKNOWN,
            reason=reason,
            message=f"Waiting for: {', '.join(pending)}",
        )

    return Condition(type=READY, status=ConditionStatus.TRUE)


def set_summary(conditions: list[Condition], condition_types: Iterable[str]) -> Condition:
    """Recompute Ready from the children and store it."""
    return set_condition(conditions, summarize(conditions, condition_types))


def _summary_message(false_children: list[Condition]) -> str:
    parts = []
    for child in false_children:
        detail = child.message or child.reason
        parts.append(f"{child.type}: {detail}" if detail else child.type)
    return "; ".join(parts)
