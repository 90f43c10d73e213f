"""Tests for the work queue, controller and manager."""

from __future__ import annotations

import asyncio

import pytest
from conftest import cluster_manifest, machine_manifest, make_config

from capvcd.config import Config
from capvcd.errors import ConflictError, TransientError
from capvcd.models import VCDCluster
from capvcd.reconciler import ReconcileResult
from capvcd.scheduler import Controller, Manager, WorkQueue
from capvcd.store import ResourceStore


def drain(queue: WorkQueue) -> list[str]:
    keys = []
    while len(queue):
        key = queue._queue.popleft()
        queue._dirty.discard(key)
        keys.append(key)
    return keys


async def noop(key: str) -> ReconcileResult:
    return ReconcileResult(key=key)


class TestWorkQueue:
    @pytest.fixture
    def queue(self) -> WorkQueue:
        return WorkQueue(backoff_floor=0.01, backoff_ceiling=0.1)

    def test_add_deduplicates(self, queue: WorkQueue) -> None:
        queue.add("default/c1")
        queue.add("default/c1")
        queue.add("default/c2")

        assert len(queue) == 2

    @pytest.mark.asyncio
    async def test_key_in_flight_is_requeued_once_when_done(self, queue: WorkQueue) -> None:
        queue.add("default/c1")
        key = await queue.get()
        assert key == "default/c1"
        assert queue.is_processing(key)

        queue.add(key)
        queue.add(key)
        assert len(queue) == 0

        queue.done(key)
        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_done_without_new_events_does_not_requeue(self, queue: WorkQueue) -> None:
        queue.add("default/c1")
        key = await queue.get()
        assert key is not None

        queue.done(key)

        assert len(queue) == 0
        assert not queue.is_processing(key)

    def test_backoff_grows_and_caps(self, queue: WorkQueue) -> None:
        delays = [queue.next_backoff("k") for _ in range(6)]

        assert delays[:4] == [0.01, 0.02, 0.04, 0.08]
        assert delays[4:] == [0.1, 0.1]
        assert queue.num_requeues("k") == 6

    def test_forget_resets_backoff(self, queue: WorkQueue) -> None:
        queue.next_backoff("k")
        queue.next_backoff("k")

        queue.forget("k")

        assert queue.num_requeues("k") == 0
        assert queue.next_backoff("k") == 0.01

    @pytest.mark.asyncio
    async def test_add_after(self, queue: WorkQueue) -> None:
        queue.add_after("k", 0.01)
        assert len(queue) == 0

        await asyncio.sleep(0.05)

        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_earlier_add_after_wins(self, queue: WorkQueue) -> None:
        queue.add_after("k", 10.0)
        queue.add_after("k", 0.01)

        await asyncio.sleep(0.05)

        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_shutdown_releases_waiters(self, queue: WorkQueue) -> None:
        waiter = asyncio.create_task(queue.get())
        await asyncio.sleep(0)

        queue.shutdown()

        assert await asyncio.wait_for(waiter, timeout=1) is None
        queue.add("k")
        assert len(queue) == 0


class TestController:
    @pytest.mark.asyncio
    async def test_requeue_uses_backoff(self, config: Config) -> None:
        async def reconcile(key: str) -> ReconcileResult:
            return ReconcileResult(key=key, requeue=True)

        controller = Controller("test", reconcile, config)

        await controller.process("default/c1")
        await controller.process("default/c1")

        assert controller.queue.num_requeues("default/c1") == 2

    @pytest.mark.asyncio
    async def test_success_forgets_backoff(self, config: Config) -> None:
        controller = Controller("test", noop, config)
        controller.queue.next_backoff("default/c1")

        await controller.process("default/c1")

        assert controller.queue.num_requeues("default/c1") == 0

    @pytest.mark.asyncio
    async def test_requeue_after(self, config: Config) -> None:
        async def reconcile(key: str) -> ReconcileResult:
            return ReconcileResult(key=key, requeue_after=0.01)

        controller = Controller("test", reconcile, config)

        await controller.process("default/c1")
        await asyncio.sleep(0.05)

        assert len(controller.queue) == 1
        assert controller.queue.num_requeues("default/c1") == 0

    @pytest.mark.asyncio
    async def test_timeout_is_requeued(self) -> None:
        async def reconcile(key: str) -> ReconcileResult:
            await asyncio.sleep(10)
            return ReconcileResult(key=key)

        config = make_config(reconcile_timeout_seconds=0.01, task_poll_timeout_seconds=0.005)
        controller = Controller("test", reconcile, config)

        result = await controller.process("default/c1")

        assert result is None
        assert controller.queue.num_requeues("default/c1") == 1

    @pytest.mark.asyncio
    async def test_first_conflict_retried_immediately(self, config: Config) -> None:
        async def reconcile(key: str) -> ReconcileResult:
            raise ConflictError("stale resourceVersion")

        controller = Controller("test", reconcile, config)

        await controller.process("default/c1")
        assert len(controller.queue) == 1

        drain(controller.queue)
        await controller.process("default/c1")
        assert len(controller.queue) == 0
        assert controller.queue.num_requeues("default/c1") == 2

    @pytest.mark.asyncio
    async def test_unexpected_error_is_backed_off(self, config: Config) -> None:
        async def reconcile(key: str) -> ReconcileResult:
            raise TransientError("connection reset")

        controller = Controller("test", reconcile, config)

        result = await controller.process("default/c1")

        assert result is None
        assert controller.queue.num_requeues("default/c1") == 1

    @pytest.mark.asyncio
    async def test_key_never_reconciled_concurrently(self, config: Config) -> None:
        running = 0
        max_running = 0
        calls = 0
        release = asyncio.Event()

        async def reconcile(key: str) -> ReconcileResult:
            nonlocal running, max_running, calls
            calls += 1
            running += 1
            max_running = max(max_running, running)
            await release.wait()
            running -= 1
            return ReconcileResult(key=key)

        controller = Controller("test", reconcile, config)
        shutdown = asyncio.Event()
        task = asyncio.create_task(controller.run(shutdown))

        controller.queue.add("default/c1")
        await asyncio.sleep(0.01)
        for _ in range(5):
            controller.queue.add("default/c1")
        await asyncio.sleep(0.01)
        release.set()
        await asyncio.sleep(0.05)

        shutdown.set()
        await asyncio.wait_for(task, timeout=1)

        assert max_running == 1
        assert calls == 2


class TestManager:
    @pytest.fixture
    def manager(self, store: ResourceStore, config: Config) -> Manager:
        return Manager(store, noop, noop, config)

    def test_spec_events_enqueue_object(self, store: ResourceStore, manager: Manager) -> None:
        store.apply_manifest(cluster_manifest())

        assert drain(manager.clusters.queue) == ["default/c1"]

    def test_status_only_event_does_not_enqueue_object(
        self, store: ResourceStore, manager: Manager
    ) -> None:
        obj = store.apply_manifest(cluster_manifest())
        assert isinstance(obj, VCDCluster)
        drain(manager.clusters.queue)

        obj.status.vapp_id = "urn:vcloud:vapp:1"
        store.update_status(obj)

        assert len(manager.clusters.queue) == 0

    def test_cluster_status_wakes_its_machines(
        self, store: ResourceStore, manager: Manager
    ) -> None:
        obj = store.apply_manifest(cluster_manifest())
        store.apply_manifest(machine_manifest("m1"))
        store.apply_manifest(machine_manifest("m2", cluster="other"))
        drain(manager.machines.queue)

        assert isinstance(obj, VCDCluster)
        obj.status.vapp_id = "urn:vcloud:vapp:1"
        store.update_status(obj)

        assert drain(manager.machines.queue) == ["default/m1"]

    def test_machine_event_wakes_cluster(self, store: ResourceStore, manager: Manager) -> None:
        store.apply_manifest(machine_manifest("m1"))

        assert "default/c1" in drain(manager.clusters.queue)

    def test_spec_change_resets_backoff(self, store: ResourceStore, manager: Manager) -> None:
        store.apply_manifest(cluster_manifest())
        manager.clusters.queue.next_backoff("default/c1")

        store.apply_manifest(cluster_manifest(dnsServers=["8.8.8.8"]))

        assert manager.clusters.queue.num_requeues("default/c1") == 0

    def test_resync_enqueues_everything(self, store: ResourceStore, manager: Manager) -> None:
        store.apply_manifest(cluster_manifest())
        store.apply_manifest(machine_manifest())
        drain(manager.clusters.queue)
        drain(manager.machines.queue)

        manager.resync()

        assert drain(manager.clusters.queue) == ["default/c1"]
        assert drain(manager.machines.queue) == ["default/m1"]

    def test_resync_refreshes_desired_state_first(
        self, store: ResourceStore, config: Config
    ) -> None:
        def refresh() -> None:
            store.apply_manifest(cluster_manifest("c2"))

        manager = Manager(store, noop, noop, config, refresh=refresh)

        manager.resync()

        assert store.get_cluster("default", "c2") is not None
        assert drain(manager.clusters.queue) == ["default/c2"]

    @pytest.mark.asyncio
    async def test_run_until_shutdown(self, store: ResourceStore, config: Config) -> None:
        seen: list[str] = []

        async def reconcile(key: str) -> ReconcileResult:
            seen.append(key)
            return ReconcileResult(key=key)

        store.apply_manifest(cluster_manifest())
        manager = Manager(store, reconcile, noop, config)

        task = asyncio.create_task(manager.run())
        await asyncio.sleep(0.05)
        manager.shutdown()
        await asyncio.wait_for(task, timeout=1)

        assert seen == ["default/c1"]
