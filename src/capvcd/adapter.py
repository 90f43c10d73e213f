"""Task-polling adapter over the asynchronous platform API.

Turns "submit a task, wait for it" into idempotent ensure-style operations
the reconcilers can call from a fresh process at any point:

- Observe first. A converged resource causes no mutating call.
- Deterministic names plus an owner marker let a restart re-adopt what a
  previous run created. A same-named resource with a different marker is
  never adopted.
- A resource that is already busy has its running task polled instead of a
  second operation being submitted.
- Polling is bounded. A task still running at the deadline raises
  TaskTimeoutError (carrying the resource ID when known) so the reconciler
  can record it and requeue.

CONCURRENCY: operations on the same external name are serialized with a
per-name asyncio.Lock. Operations on different names run in parallel.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from .config import MAX_API_RETRIES, RETRY_BACKOFF_BASE_SECONDS, Config
from .errors import (
    AlreadyExistsError,
    NotFoundError,
    OwnershipConflictError,
    TaskTimeoutError,
    TerminalError,
    TransientError,
)
from .platform import ExternalResource, Platform, PowerState, ResourceKind, ResourceState
from .tasks import TaskHandle, TaskStatus, task_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TaskPollingAdapter:
    """Idempotent ensure-operations on top of a task-based Platform."""

    def __init__(
        self,
        platform: Platform,
        config: Config,
        *,
        retry_backoff_base_seconds: float = RETRY_BACKOFF_BASE_SECONDS,
    ) -> None:
        self._platform = platform
        self._config = config
        self._retry_backoff_base = retry_backoff_base_seconds
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def platform(self) -> Platform:
        return self._platform

    @asynccontextmanager
    async def _lock(
        self, kind: ResourceKind, name: str, parent_id: str | None
    ) -> AsyncIterator[None]:
        """Hold the lock for one external name. Dropped once nobody holds or waits on it."""
        key = f"{kind.value}:{parent_id or ''}:{name}"
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    # =========================================================================
    # Reads
    # =========================================================================

    async def observe(
        self,
        kind: ResourceKind,
        name: str,
        *,
        parent_id: str | None = None,
        resource_id: str | None = None,
    ) -> ExternalResource | None:
        """Return the current snapshot of a resource, or None if absent.

        A known ID (from a status field or annotation) is tried first; the
        name lookup is the fallback so a lost ID never causes a duplicate.
        """
        if resource_id:
            found = await self._call_with_retry(
                lambda: self._platform.get(kind, resource_id), f"get {kind.value}"
            )
            if found is not None:
                return found
        return await self._call_with_retry(
            lambda: self._platform.find(kind, name, parent_id=parent_id), f"find {kind.value}"
        )

    # =========================================================================
    # Create / delete
    # =========================================================================

    async def ensure_created(
        self,
        kind: ResourceKind,
        name: str,
        spec: Mapping[str, Any],
        *,
        owner: str,
        parent_id: str | None = None,
        resource_id: str | None = None,
        timeout: float | None = None,
    ) -> ExternalResource:
        """Make sure a resource named name exists and is owned by owner.

        Raises:
            OwnershipConflictError: A same-named resource has another owner.
            TerminalError: The platform rejected or failed the create.
            TaskTimeoutError: The create task is still running at the deadline.
            TransientError: Retries exhausted on a transient failure.
        """
        async with self._lock(kind, name, parent_id):
            last_error: TransientError | None = None
            for attempt in range(1, MAX_API_RETRIES + 1):
                existing = await self.observe(
                    kind, name, parent_id=parent_id, resource_id=resource_id
                )
                if existing is not None:
                    return await self._adopt(existing, owner, timeout)

                try:
                    task = await self._platform.create(
                        kind, name, spec, owner=owner, parent_id=parent_id
                    )
                except AlreadyExistsError:
                    # Lost a race or the resource is not yet visible to reads
                    existing = await self.observe(kind, name, parent_id=parent_id)
                    if existing is None:
                        raise TransientError(
                            f"{kind.value} {name} reported as existing but not observable yet"
                        )
                    return await self._adopt(existing, owner, timeout)
                except TransientError as e:
                    last_error = e
                    if attempt < MAX_API_RETRIES:
                        await self._backoff(attempt, f"create {kind.value}", e)
                    continue

                logger.info(
                    "Create submitted",
                    extra={"kind": kind.value, "resource_name": name, "task_id": task.id},
                )
                # A VM is created by recomposing its vApp, so the task owner is the vApp
                created_id = None if kind == ResourceKind.VM else task.owner_id
                await self.wait_for_task(task, timeout=timeout, resource_id=created_id)
                created = await self.observe(
                    kind, name, parent_id=parent_id, resource_id=created_id
                )
                if created is None:
                    raise TransientError(
                        f"{kind.value} {name} create task succeeded but resource is not visible"
                    )
                return created

            assert last_error is not None, "Retry loop completed without setting last_error"
            raise last_error

    async def _adopt(
        self, existing: ExternalResource, owner: str, timeout: float | None
    ) -> ExternalResource:
        if existing.owner != owner:
            raise OwnershipConflictError(
                f"{existing.kind.value} {existing.name} exists but is owned by "
                f"{existing.owner or 'nobody'}, not {owner}"
            )
        if existing.state == ResourceState.FAILED:
            raise TerminalError(
                existing.message or f"{existing.kind.value} {existing.name} failed to realize",
                reason="RealizationFailed",
            )
        if existing.busy_task is None:
            if existing.state == ResourceState.BUSY:
                raise TransientError(f"{existing.kind.value} {existing.name} is still being realized")
            return existing

        # Crash recovery: re-derive the in-flight task instead of resubmitting
        logger.info(
            "Resource busy, polling its running task",
            extra={
                "kind": existing.kind.value,
                "resource_name": existing.name,
                "task_id": existing.busy_task.id,
            },
        )
        await self.wait_for_task(existing.busy_task, timeout=timeout, resource_id=existing.id)
        refreshed = await self.observe(
            existing.kind, existing.name, parent_id=existing.parent_id, resource_id=existing.id
        )
        if refreshed is None:
            raise TransientError(f"{existing.kind.value} {existing.name} vanished after its task")
        return refreshed

    async def ensure_deleted(
        self,
        kind: ResourceKind,
        name: str,
        *,
        owner: str,
        parent_id: str | None = None,
        resource_id: str | None = None,
        timeout: float | None = None,
    ) -> bool:
        """Make sure the resource is gone. Absence counts as success.

        Resources carrying a different owner marker are left untouched.

        Returns:
            True if the resource is gone, False if it was skipped as foreign.
        """
        async with self._lock(kind, name, parent_id):
            existing = await self.observe(kind, name, parent_id=parent_id, resource_id=resource_id)
            if existing is None:
                return True
            if existing.owner != owner:
                logger.warning(
                    "Not deleting resource owned by someone else",
                    extra={"kind": kind.value, "resource_name": name, "owner": existing.owner},
                )
                return False
            if existing.busy_task is not None:
                await self.wait_for_task(existing.busy_task, timeout=timeout, resource_id=existing.id)

            try:
                task = await self._call_with_retry(
                    lambda: self._platform.delete(kind, existing.id), f"delete {kind.value}"
                )
            except NotFoundError:
                return True

            logger.info(
                "Delete submitted",
                extra={"kind": kind.value, "resource_name": name, "task_id": task.id},
            )
            await self.wait_for_task(task, timeout=timeout, resource_id=existing.id)
            return True

    # =========================================================================
    # VM operations
    # =========================================================================

    async def power_on(self, vm: ExternalResource, *, timeout: float | None = None) -> None:
        """Power a VM on. Submitted at most once per call and never retried.

        A VM that is already on is left alone.
        """
        async with self._lock(vm.kind, vm.name, vm.parent_id):
            if vm.power_state == PowerState.POWERED_ON:
                return
            task = await self._platform.power_on(vm.id)
            logger.info("Power on submitted", extra={"vm": vm.name, "task_id": task.id})
            await self.wait_for_task(task, timeout=timeout, resource_id=vm.id)

    async def power_off(self, vm: ExternalResource, *, timeout: float | None = None) -> None:
        async with self._lock(vm.kind, vm.name, vm.parent_id):
            if vm.power_state == PowerState.POWERED_OFF:
                return
            try:
                task = await self._call_with_retry(
                    lambda: self._platform.power_off(vm.id), "power off"
                )
            except NotFoundError:
                return
            await self.wait_for_task(task, timeout=timeout, resource_id=vm.id)

    async def customize_guest(
        self,
        vm: ExternalResource,
        properties: Mapping[str, str],
        *,
        timeout: float | None = None,
    ) -> None:
        """Write guest properties (bootstrap data) unless already present."""
        if all(vm.guest_properties.get(k) == v for k, v in properties.items()):
            return
        async with self._lock(vm.kind, vm.name, vm.parent_id):
            task = await self._call_with_retry(
                lambda: self._platform.set_guest_properties(vm.id, properties),
                "set guest properties",
            )
            await self.wait_for_task(task, timeout=timeout, resource_id=vm.id)

    # =========================================================================
    # Load balancer pool membership
    # =========================================================================

    async def ensure_pool_member(
        self,
        pool: ExternalResource,
        address: str,
        port: int,
        *,
        timeout: float | None = None,
    ) -> None:
        if address in pool.members:
            return
        async with self._lock(pool.kind, pool.name, pool.parent_id):
            current = await self.observe(pool.kind, pool.name, resource_id=pool.id)
            if current is None:
                raise TransientError(f"Load balancer pool {pool.name} not found")
            if address in current.members:
                return
            if current.busy_task is not None:
                await self.wait_for_task(current.busy_task, timeout=timeout, resource_id=pool.id)
            task = await self._platform.add_pool_member(pool.id, address, port)
            await self.wait_for_task(task, timeout=timeout, resource_id=pool.id)

    async def remove_pool_member(
        self,
        pool: ExternalResource,
        address: str,
        *,
        timeout: float | None = None,
    ) -> None:
        if address not in pool.members:
            return
        async with self._lock(pool.kind, pool.name, pool.parent_id):
            try:
                task = await self._call_with_retry(
                    lambda: self._platform.remove_pool_member(pool.id, address),
                    "remove pool member",
                )
            except NotFoundError:
                return
            await self.wait_for_task(task, timeout=timeout, resource_id=pool.id)

    # =========================================================================
    # Task polling
    # =========================================================================

    async def wait_for_task(
        self,
        task: TaskHandle,
        *,
        timeout: float | None = None,
        resource_id: str | None = None,
    ) -> TaskHandle:
        """Poll a task until it finishes or the deadline passes.

        The poll interval starts at task_poll_interval_min and doubles up to
        task_poll_interval_max.

        Raises:
            TerminalError: The task finished with an error.
            TaskTimeoutError: The task was still running at the deadline.
        """
        if timeout is None:
            timeout = self._config.task_poll_timeout_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        interval = self._config.task_poll_interval_min_seconds
        current = task

        while True:
            if current.status == TaskStatus.SUCCESS:
                return current
            if current.status == TaskStatus.ERROR:
                logger.warning(
                    "Task failed",
                    extra={"task_id": current.id, "operation": current.operation, "error": current.message},
                )
                raise task_error(current)

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise TaskTimeoutError(
                    f"Task {current.id} ({current.operation or 'unknown'}) still "
                    f"{current.status.value} after {timeout:.0f}s",
                    task_id=current.id,
                    resource_id=resource_id,
                )

            await asyncio.sleep(min(interval, remaining))
            interval = min(interval * 2, self._config.task_poll_interval_max_seconds)
            task_id = current.id
            current = await self._call_with_retry(
                lambda: self._platform.get_task(task_id), "get task"
            )

    # =========================================================================
    # Retry
    # =========================================================================

    async def _call_with_retry(self, call: Callable[[], Awaitable[T]], operation: str) -> T:
        """Run an idempotent platform call with exponential backoff on transient errors."""
        last_error: TransientError | None = None

        for attempt in range(1, MAX_API_RETRIES + 1):
            try:
                return await call()
            except TransientError as e:
                last_error = e
                if attempt < MAX_API_RETRIES:
                    await self._backoff(attempt, operation, e)

        assert last_error is not None, "Retry loop completed without setting last_error"
        raise last_error

    async def _backoff(self, attempt: int, operation: str, error: Exception) -> None:
        # Exponential backoff with jitter
        backoff = self._retry_backoff_base * (2 ** (attempt - 1))
        jitter = random.uniform(0, backoff * 0.2)
        wait_time = backoff + jitter

        logger.warning(
            "Platform call failed, retrying",
            extra={
                "operation": operation,
                "attempt": attempt,
                "max_attempts": MAX_API_RETRIES,
                "wait_seconds": wait_time,
                "error": str(error),
            },
        )
        await asyncio.sleep(wait_time)
