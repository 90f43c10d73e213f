"""Reconcile scheduling: work queues, worker pools and requeue backoff.

Semantics:
- Single-flight: a key is never reconciled by two workers at once. A key
  added while it is being processed is marked dirty and queued again once
  the current pass finishes, coalescing any number of events into one pass.
- Failed or in-flight reconciles are requeued with per-key exponential
  backoff between BACKOFF_FLOOR and BACKOFF_CEILING. A spec change (new
  generation) resets the backoff for that key.
- Every reconcile runs under RECONCILE_TIMEOUT. Unexpected exceptions are
  logged and treated as transient.
- Conflicts on the store are retried immediately once, then backed off.
- Every resync first refreshes desired state (re-reading manifests), so
  edits and removals reach the store while the process runs.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable

from .config import Config
from .errors import ConflictError
from .models import CLUSTER_KIND, MACHINE_KIND, VCDMachine
from .reconciler import ReconcileResult
from .store import EventType, ResourceStore, WatchEvent

logger = logging.getLogger(__name__)


ReconcileFunc = Callable[[str], Awaitable[ReconcileResult]]


class WorkQueue:
    """Deduplicating, single-flight queue of object keys."""

    def __init__(self, backoff_floor: float, backoff_ceiling: float) -> None:
        self._backoff_floor = backoff_floor
        self._backoff_ceiling = backoff_ceiling
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._failures: dict[str, int] = {}
        self._delayed: dict[str, asyncio.TimerHandle] = {}
        self._ready = asyncio.Event()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def is_processing(self, key: str) -> bool:
        return key in self._processing

    def add(self, key: str) -> None:
        """Queue key unless it is already queued. Keys in flight are marked dirty."""
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._ready.set()

    def add_after(self, key: str, delay: float) -> None:
        """Queue key after delay seconds. An earlier pending add wins."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        when = loop.time() + delay
        existing = self._delayed.get(key)
        if existing is not None:
            if existing.when() <= when:
                return
            existing.cancel()
        self._delayed[key] = loop.call_at(when, self._fire_delayed, key)

    def _fire_delayed(self, key: str) -> None:
        self._delayed.pop(key, None)
        self.add(key)

    def add_rate_limited(self, key: str) -> float:
        """Queue key after its current backoff. Returns the delay used."""
        delay = self.next_backoff(key)
        self.add_after(key, delay)
        return delay

    def next_backoff(self, key: str) -> float:
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        return min(self._backoff_floor * (2**failures), self._backoff_ceiling)

    def num_requeues(self, key: str) -> int:
        return self._failures.get(key, 0)

    def forget(self, key: str) -> None:
        """Reset backoff for key."""
        self._failures.pop(key, None)

    async def get(self) -> str | None:
        """Wait for the next key. Returns None once the queue shuts down."""
        while not self._queue:
            if self._shutting_down:
                return None
            self._ready.clear()
            await self._ready.wait()

        key = self._queue.popleft()
        self._processing.add(key)
        self._dirty.discard(key)
        return key

    def done(self, key: str) -> None:
        """Mark key finished. Re-queues it if it was added while in flight."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.append(key)
            self._ready.set()

    def shutdown(self) -> None:
        self._shutting_down = True
        for handle in self._delayed.values():
            handle.cancel()
        self._delayed.clear()
        self._queue.clear()
        self._ready.set()


class Controller:
    """Worker pool draining one WorkQueue through a reconcile function."""

    def __init__(self, name: str, reconcile: ReconcileFunc, config: Config) -> None:
        self.name = name
        self._reconcile = reconcile
        self._config = config
        self.queue = WorkQueue(config.backoff_floor_seconds, config.backoff_ceiling_seconds)

    async def run(self, shutdown_event: asyncio.Event) -> None:
        workers = [
            asyncio.create_task(self._worker(i), name=f"{self.name}-worker-{i}")
            for i in range(self._config.max_concurrent_reconciles)
        ]
        logger.info(
            "Controller started",
            extra={"controller": self.name, "workers": len(workers)},
        )
        await shutdown_event.wait()
        self.queue.shutdown()
        await asyncio.gather(*workers, return_exceptions=True)
        logger.info("Controller stopped", extra={"controller": self.name})

    async def _worker(self, worker_id: int) -> None:
        while True:
            key = await self.queue.get()
            if key is None:
                return
            try:
                await self.process(key)
            finally:
                self.queue.done(key)

    async def process(self, key: str) -> ReconcileResult | None:
        """Run one reconcile for key and schedule its requeue."""
        try:
            result = await asyncio.wait_for(
                self._reconcile(key), timeout=self._config.reconcile_timeout_seconds
            )
        except TimeoutError:
            delay = self.queue.add_rate_limited(key)
            logger.error(
                "Reconcile timed out",
                extra={
                    "controller": self.name,
                    "key": key,
                    "timeout_seconds": self._config.reconcile_timeout_seconds,
                    "requeue_seconds": delay,
                },
            )
            return None
        except ConflictError as e:
            if self.queue.num_requeues(key) == 0:
                self.queue.next_backoff(key)
                self.queue.add(key)
                delay = 0.0
            else:
                delay = self.queue.add_rate_limited(key)
            logger.info(
                "Conflict writing object, requeueing",
                extra={"controller": self.name, "key": key, "requeue_seconds": delay, "error": str(e)},
            )
            return None
        except Exception as e:
            # Unclassified failures are treated as transient
            delay = self.queue.add_rate_limited(key)
            logger.exception(
                "Unexpected reconcile error",
                extra={"controller": self.name, "key": key, "requeue_seconds": delay, "error": str(e)},
            )
            return None

        if result.requeue:
            delay = self.queue.add_rate_limited(key)
            logger.debug(
                "Requeue with backoff",
                extra={"controller": self.name, "key": key, "requeue_seconds": delay},
            )
        elif result.requeue_after is not None:
            self.queue.forget(key)
            self.queue.add_after(key, result.requeue_after)
        else:
            self.queue.forget(key)
        return result


class Manager:
    """Wires store events to the cluster and machine controllers."""

    def __init__(
        self,
        store: ResourceStore,
        reconcile_cluster: ReconcileFunc,
        reconcile_machine: ReconcileFunc,
        config: Config,
        *,
        refresh: Callable[[], None] | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._refresh = refresh
        self.clusters = Controller("vcdcluster", reconcile_cluster, config)
        self.machines = Controller("vcdmachine", reconcile_machine, config)
        self._shutdown_event = asyncio.Event()
        store.subscribe(self.on_event)

    def on_event(self, event: WatchEvent) -> None:
        """Translate a store change into queue additions."""
        if event.kind == CLUSTER_KIND:
            own = self.clusters
        elif event.kind == MACHINE_KIND:
            own = self.machines
        else:
            return

        if event.type == EventType.DELETED:
            own.queue.forget(event.key)
        elif event.generation_changed:
            own.queue.forget(event.key)

        # Status writes come from the reconciler itself; re-running it on its
        # own status would spin.
        if not event.status_only:
            own.queue.add(event.key)

        namespace = event.obj.metadata.namespace
        if isinstance(event.obj, VCDMachine):
            # Cluster teardown waits for machines to go away
            self.clusters.queue.add(f"{namespace}/{event.obj.spec.cluster_name}")
        else:
            # Machines wait for cluster infrastructure
            for machine in self._store.machines_for_cluster(namespace, event.obj.metadata.name):
                self.machines.queue.add(machine.metadata.key)

    def resync(self) -> None:
        """Refresh desired state, then queue every known object."""
        if self._refresh is not None:
            self._refresh()
        for obj in self._store.list_objects(CLUSTER_KIND):
            self.clusters.queue.add(obj.metadata.key)
        for obj in self._store.list_objects(MACHINE_KIND):
            self.machines.queue.add(obj.metadata.key)

    async def run(self) -> None:
        """Run both controllers with a periodic resync until shutdown."""
        logger.info(
            "Starting manager",
            extra={
                "max_concurrent_reconciles": self._config.max_concurrent_reconciles,
                "resync_interval_seconds": self._config.reconcile_interval_seconds,
            },
        )
        controllers = [
            asyncio.create_task(self.clusters.run(self._shutdown_event)),
            asyncio.create_task(self.machines.run(self._shutdown_event)),
        ]

        self.resync()
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._config.reconcile_interval_seconds,
                )
            except TimeoutError:
                # Normal timeout, resync
                self.resync()

        await asyncio.gather(*controllers)
        logger.info("Manager shutdown complete")

    def shutdown(self) -> None:
        """Signal the manager to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()
