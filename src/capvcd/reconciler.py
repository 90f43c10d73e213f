"""Shared reconcile machinery for the cluster and machine reconcilers.

A reconciler performs one convergence step per call and is safe to call
repeatedly. Progress is carried entirely by the stored object (status,
finalizers, ID annotations) and the observed external state; nothing is kept
in memory between calls, so a fresh process resumes where the last one
stopped.

Error policy:
- TerminalError   -> phase Failed with the platform message, no requeue.
                     Not retried until the generation changes or the
                     retry annotation is set.
- TaskTimeoutError -> still in flight. Condition False/Info, requeue.
                     Past PROVISIONING_TIMEOUT, counted from when this
                     operation started waiting, it becomes terminal.
- TransientError  -> requeue with backoff, status is not regressed.
- ConflictError   -> propagates to the scheduler.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .adapter import TaskPollingAdapter
from .conditions import (
    ConditionSeverity,
    mark_false,
    mark_unknown,
    set_summary,
)
from .config import Config
from .errors import ConflictError, NotFoundError, TaskTimeoutError, TerminalError
from .models import IN_FLIGHT_SINCE_ANNOTATION, RETRY_ANNOTATION, HubObject
from .platform import ExternalResource, ResourceKind
from .store import ResourceStore

logger = logging.getLogger(__name__)

RETRYING_REASON = "Retrying"


@dataclass
class ReconcileResult:
    """Outcome of a single reconcile pass for one object."""

    key: str
    requeue: bool = False  # retry with backoff
    requeue_after: float | None = None  # retry after a fixed delay
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class ReconcileScope:
    """Per-call working state.

    Attributes:
        obj: Working copy of the object; status edits accumulate here.
        result: Result returned to the scheduler.
        condition_type: Condition of the step currently being worked on.
        removed: Set once the object has left the store.
    """

    obj: Any
    result: ReconcileResult
    condition_type: str
    removed: bool = False


def split_key(key: str) -> tuple[str, str]:
    namespace, _, name = key.partition("/")
    if not name:
        return "default", namespace
    return namespace, name


class Reconciler:
    """Base class holding the store, adapter and config."""

    condition_types: tuple[str, ...] = ()
    failed_phase: Any = None

    def __init__(self, store: ResourceStore, adapter: TaskPollingAdapter, config: Config) -> None:
        self._store = store
        self._adapter = adapter
        self._config = config

    # =========================================================================
    # Failed gating
    # =========================================================================

    def _is_failed_and_unchanged(self, obj: HubObject) -> bool:
        """Failed objects stay put until their spec changes or a retry is requested."""
        return (
            obj.status.phase == self.failed_phase
            and obj.status.observed_generation == obj.metadata.generation
            and RETRY_ANNOTATION not in obj.metadata.annotations
        )

    def _prepare_retry(self, scope: ReconcileScope) -> None:
        """Clear the retry annotation and the error conditions of a previous failure."""
        obj = scope.obj
        retry_requested = RETRY_ANNOTATION in obj.metadata.annotations
        obj.metadata.annotations.pop(RETRY_ANNOTATION, None)
        # A timed-out operation gets a fresh deadline on retry
        stale_clock = obj.metadata.annotations.pop(IN_FLIGHT_SINCE_ANNOTATION, None)
        if retry_requested or stale_clock is not None:
            self._update_metadata(scope)
        if retry_requested:
            logger.info(
                "Retry requested",
                extra={"kind": obj.kind, "key": obj.metadata.key},
            )

        for condition in list(obj.status.conditions):
            if condition.type in self.condition_types and condition.severity == ConditionSeverity.ERROR:
                mark_unknown(obj.status.conditions, condition.type, RETRYING_REASON)
        obj.status.failure_reason = None
        obj.status.failure_message = None

    def _mark_failed(self, scope: ReconcileScope, error: TerminalError) -> None:
        obj = scope.obj
        obj.status.phase = self.failed_phase
        obj.status.ready = False
        obj.status.failure_reason = error.reason
        obj.status.failure_message = str(error)
        obj.status.observed_generation = obj.metadata.generation
        mark_false(
            obj.status.conditions,
            scope.condition_type,
            error.reason,
            ConditionSeverity.ERROR,
            str(error),
        )
        set_summary(obj.status.conditions, self.condition_types)
        logger.error(
            "Reconcile failed permanently",
            extra={
                "kind": obj.kind,
                "key": obj.metadata.key,
                "reason": error.reason,
                "error": str(error),
            },
        )

    # =========================================================================
    # Store writes
    # =========================================================================

    def _update_metadata(self, scope: ReconcileScope) -> None:
        """Persist spec/metadata edits, keeping the in-progress status."""
        status = scope.obj.status
        updated = self._store.update(scope.obj)
        if updated.metadata.deletion_timestamp is not None and not updated.metadata.finalizers:
            scope.removed = True
        updated.status = status
        scope.obj = updated

    def _write_status(self, scope: ReconcileScope) -> None:
        """Persist status, retrying a resourceVersion conflict once."""
        if scope.removed:
            return
        try:
            scope.obj = self._store.update_status(scope.obj)
        except NotFoundError:
            scope.removed = True
        except ConflictError:
            fresh = self._store.get(
                scope.obj.kind, scope.obj.metadata.namespace, scope.obj.metadata.name
            )
            if fresh is None:
                scope.removed = True
                return
            fresh.status = scope.obj.status
            scope.obj = self._store.update_status(fresh)

    def _record_annotation(self, scope: ReconcileScope, annotation: str, value: str) -> None:
        if scope.obj.metadata.annotations.get(annotation) == value:
            return
        scope.obj.metadata.annotations[annotation] = value
        self._update_metadata(scope)

    # =========================================================================
    # External resources
    # =========================================================================

    async def _ensure(
        self,
        scope: ReconcileScope,
        kind: ResourceKind,
        name: str,
        spec: Mapping[str, Any],
        *,
        in_flight_reason: str,
        parent_id: str | None = None,
        annotation: str | None = None,
        resource_id: str | None = None,
    ) -> ExternalResource | None:
        """Create-or-adopt a resource. Returns None while its task is still running.

        The external ID is recorded in annotation as soon as it is known, so a
        restart re-adopts the in-flight resource instead of creating another.
        """
        obj = scope.obj
        if resource_id is None and annotation:
            resource_id = obj.metadata.annotations.get(annotation)

        try:
            resource = await self._adapter.ensure_created(
                kind,
                name,
                spec,
                owner=obj.owner_marker,
                parent_id=parent_id,
                resource_id=resource_id,
            )
        except TaskTimeoutError as e:
            if annotation and e.resource_id:
                self._record_annotation(scope, annotation, e.resource_id)
            self._check_provisioning_deadline(scope, in_flight_reason)
            mark_false(
                scope.obj.status.conditions,
                scope.condition_type,
                in_flight_reason,
                ConditionSeverity.INFO,
                f"Waiting for {kind.value} {name}: {e}",
            )
            scope.result.requeue = True
            logger.info(
                "External operation in flight, requeueing",
                extra={"key": obj.metadata.key, "kind": kind.value, "resource_name": name, "task_id": e.task_id},
            )
            return None

        if annotation:
            self._record_annotation(scope, annotation, resource.id)
        self._clear_in_flight(scope, in_flight_reason)
        return resource

    def _check_provisioning_deadline(self, scope: ReconcileScope, in_flight_reason: str) -> None:
        """Turn an operation stuck past PROVISIONING_TIMEOUT into a terminal failure.

        The clock starts the first time this in-flight reason is seen. Earlier
        waits on the same condition (for the cluster, for bootstrap data) do
        not count.
        """
        annotations = scope.obj.metadata.annotations
        reason, _, since = annotations.get(IN_FLIGHT_SINCE_ANNOTATION, "").partition("@")
        now = datetime.now(UTC)
        try:
            started = datetime.fromisoformat(since) if reason == in_flight_reason else None
        except ValueError:
            started = None
        if started is None:
            self._record_annotation(
                scope, IN_FLIGHT_SINCE_ANNOTATION, f"{in_flight_reason}@{now.isoformat()}"
            )
            return

        elapsed = (now - started).total_seconds()
        if elapsed > self._config.provisioning_timeout_seconds:
            raise TerminalError(
                f"{scope.condition_type} still in progress after {elapsed:.0f}s",
                reason=f"{in_flight_reason}Timeout",
            )

    def _clear_in_flight(self, scope: ReconcileScope, in_flight_reason: str) -> None:
        """Stop the deadline clock of an operation that has finished."""
        annotations = scope.obj.metadata.annotations
        if annotations.get(IN_FLIGHT_SINCE_ANNOTATION, "").partition("@")[0] != in_flight_reason:
            return
        del annotations[IN_FLIGHT_SINCE_ANNOTATION]
        self._update_metadata(scope)

    def _waiting(
        self, scope: ReconcileScope, condition_type: str, reason: str, message: str
    ) -> None:
        """Record a non-error wait and request a requeue."""
        mark_false(scope.obj.status.conditions, condition_type, reason, ConditionSeverity.INFO, message)
        scope.result.requeue = True

    def _summarize(self, scope: ReconcileScope) -> bool:
        ready = set_summary(scope.obj.status.conditions, self.condition_types)
        scope.obj.status.ready = ready.is_true()
        return scope.obj.status.ready
