"""Tests for the task-polling adapter and task status mapping."""

from __future__ import annotations

import asyncio
import logging

import pytest
from vcd_mock import MockPlatform

from capvcd.adapter import TaskPollingAdapter
from capvcd.config import Config
from capvcd.errors import (
    AlreadyExistsError,
    InvalidSpecError,
    NotFoundError,
    OwnershipConflictError,
    QuotaExceededError,
    TaskTimeoutError,
    TerminalError,
    TransientError,
)
from capvcd.platform import PowerState, ResourceKind, ResourceState
from capvcd.tasks import TaskHandle, TaskStatus, parse_task_status, task_error

OWNER = "VCDCluster/default/c1"


class TestTaskStatus:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("queued", TaskStatus.QUEUED),
            ("preRunning", TaskStatus.QUEUED),
            ("running", TaskStatus.RUNNING),
            ("success", TaskStatus.SUCCESS),
            ("error", TaskStatus.ERROR),
            ("aborted", TaskStatus.ERROR),
            ("canceled", TaskStatus.ERROR),
        ],
    )
    def test_known_statuses(self, raw: str, expected: TaskStatus) -> None:
        assert parse_task_status(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "paused-for-approval"])
    def test_unknown_status_keeps_polling(self, raw: str | None) -> None:
        assert parse_task_status(raw) == TaskStatus.RUNNING

    def test_quota_message_classified(self) -> None:
        error = task_error(
            TaskHandle(id="t1", status=TaskStatus.ERROR, message="The VDC quota has been exceeded")
        )
        assert isinstance(error, QuotaExceededError)

    def test_invalid_message_classified(self) -> None:
        error = task_error(
            TaskHandle(id="t1", status=TaskStatus.ERROR, message="Template ubuntu does not exist")
        )
        assert isinstance(error, InvalidSpecError)

    def test_other_failure_is_terminal(self) -> None:
        error = task_error(TaskHandle(id="t1", operation="create vm", status=TaskStatus.ERROR))
        assert type(error) is TerminalError
        assert error.reason == "TaskFailed"
        assert "t1" in str(error)


class TestEnsureCreated:
    """Create-or-adopt semantics."""

    @pytest.mark.asyncio
    async def test_creates_when_absent(
        self, adapter: TaskPollingAdapter, platform: MockPlatform
    ) -> None:
        resource = await adapter.ensure_created(ResourceKind.VAPP, "c1-vapp", {}, owner=OWNER)

        assert resource.name == "c1-vapp"
        assert resource.owner == OWNER
        assert platform.calls["create:vapp"] == 1

    @pytest.mark.asyncio
    async def test_converged_resource_causes_no_mutation(
        self, adapter: TaskPollingAdapter, platform: MockPlatform
    ) -> None:
        first = await adapter.ensure_created(ResourceKind.VAPP, "c1-vapp", {}, owner=OWNER)
        second = await adapter.ensure_created(ResourceKind.VAPP, "c1-vapp", {}, owner=OWNER)

        assert first.id == second.id
        assert platform.calls["create"] == 1

    @pytest.mark.asyncio
    async def test_foreign_resource_not_adopted(
        self, adapter: TaskPollingAdapter, platform: MockPlatform
    ) -> None:
        platform.add_resource(ResourceKind.VAPP, "c1-vapp", owner="VCDCluster/other/c1")

        with pytest.raises(OwnershipConflictError):
            await adapter.ensure_created(ResourceKind.VAPP, "c1-vapp", {}, owner=OWNER)

        assert platform.calls["create"] == 0

    @pytest.mark.asyncio
    async def test_unmarked_resource_not_adopted(
        self, adapter: TaskPollingAdapter, platform: MockPlatform
    ) -> None:
        platform.add_resource(ResourceKind.NETWORK, "net1")

        with pytest.raises(OwnershipConflictError):
            await adapter.ensure_created(ResourceKind.NETWORK, "net1", {}, owner=OWNER)

    @pytest.mark.asyncio
    async def test_failed_resource_is_terminal(
        self, adapter: TaskPollingAdapter, platform: MockPlatform
    ) -> None:
        platform.add_resource(
            ResourceKind.NETWORK, "net1", owner=OWNER, failed_message="realization failed"
        )

        with pytest.raises(TerminalError) as exc_info:
            await adapter.ensure_created(ResourceKind.NETWORK, "net1", {}, owner=OWNER)

        assert exc_info.value.reason == "RealizationFailed"

    @pytest.mark.asyncio
    async def test_in_flight_create_reported_with_resource_id(
        self, config: Config
    ) -> None:
        platform = MockPlatform(hold_tasks=True)
        adapter = TaskPollingAdapter(platform, config, retry_backoff_base_seconds=0.001)

        with pytest.raises(TaskTimeoutError) as exc_info:
            await adapter.ensure_created(ResourceKind.VAPP, "c1-vapp", {}, owner=OWNER)

        vapp = platform.by_name(ResourceKind.VAPP, "c1-vapp")
        assert vapp is not None
        assert exc_info.value.resource_id == vapp.id
        assert exc_info.value.task_id == vapp.task_id

    @pytest.mark.asyncio
    async def test_in_flight_vm_create_does_not_report_vapp_id(
        self, config: Config
    ) -> None:
        platform = MockPlatform(hold_tasks=True)
        vapp = platform.add_resource(ResourceKind.VAPP, "c1-vapp", owner=OWNER)
        adapter = TaskPollingAdapter(platform, config, retry_backoff_base_seconds=0.001)

        with pytest.raises(TaskTimeoutError) as exc_info:
            await adapter.ensure_created(
                ResourceKind.VM, "m1", {}, owner=OWNER, parent_id=vapp.id
            )

        vm = platform.by_name(ResourceKind.VM, "m1")
        assert vm is not None
        assert platform.tasks[vm.task_id].handle().owner_id == vapp.id
        assert exc_info.value.resource_id is None
        assert exc_info.value.task_id == vm.task_id

    @pytest.mark.asyncio
    async def test_busy_resource_polled_not_resubmitted(self, config: Config) -> None:
        """A restarted caller finds the busy VM and waits on its task."""
        platform = MockPlatform(hold_tasks=True)
        adapter = TaskPollingAdapter(platform, config, retry_backoff_base_seconds=0.001)
        with pytest.raises(TaskTimeoutError):
            await adapter.ensure_created(ResourceKind.VM, "m1", {}, owner=OWNER)

        fresh = TaskPollingAdapter(platform, config, retry_backoff_base_seconds=0.001)
        with pytest.raises(TaskTimeoutError):
            await fresh.ensure_created(ResourceKind.VM, "m1", {}, owner=OWNER)

        platform.release()
        vm = await fresh.ensure_created(ResourceKind.VM, "m1", {}, owner=OWNER)

        assert vm.state == ResourceState.READY
        assert platform.calls["create"] == 1
        assert platform.count(ResourceKind.VM) == 1

    @pytest.mark.asyncio
    async def test_transient_create_failure_retried(
        self, adapter: TaskPollingAdapter, platform: MockPlatform
    ) -> None:
        platform.fail_next("create", TransientError("service unavailable", status_code=503))

        await adapter.ensure_created(ResourceKind.VAPP, "c1-vapp", {}, owner=OWNER)

        assert platform.calls["create"] == 2
        assert platform.count(ResourceKind.VAPP) == 1

    @pytest.mark.asyncio
    async def test_transient_retries_exhausted(
        self, adapter: TaskPollingAdapter, platform: MockPlatform
    ) -> None:
        platform.fail_next("create", TransientError("service unavailable", status_code=503), times=3)

        with pytest.raises(TransientError):
            await adapter.ensure_created(ResourceKind.VAPP, "c1-vapp", {}, owner=OWNER)

        assert platform.calls["create"] == 3

    @pytest.mark.asyncio
    async def test_already_exists_but_invisible_is_transient(
        self, adapter: TaskPollingAdapter, platform: MockPlatform
    ) -> None:
        platform.fail_next("create", AlreadyExistsError("duplicate name"))

        with pytest.raises(TransientError):
            await adapter.ensure_created(ResourceKind.VAPP, "c1-vapp", {}, owner=OWNER)

    @pytest.mark.asyncio
    async def test_failed_task_classified(
        self, adapter: TaskPollingAdapter, platform: MockPlatform
    ) -> None:
        platform.fail_task(ResourceKind.VM, "Requested CPU exceeds the VDC quota")

        with pytest.raises(QuotaExceededError):
            await adapter.ensure_created(ResourceKind.VM, "m1", {}, owner=OWNER)

    @pytest.mark.asyncio
    async def test_concurrent_callers_create_once(
        self, adapter: TaskPollingAdapter, platform: MockPlatform
    ) -> None:
        results = await asyncio.gather(
            *(
                adapter.ensure_created(ResourceKind.VAPP, "c1-vapp", {}, owner=OWNER)
                for _ in range(5)
            )
        )

        assert len({r.id for r in results}) == 1
        assert platform.calls["create"] == 1
        assert adapter._locks == {}

    @pytest.mark.asyncio
    async def test_name_locks_released_after_failure(
        self, adapter: TaskPollingAdapter, platform: MockPlatform
    ) -> None:
        platform.add_resource(ResourceKind.NETWORK, "net1", owner="someone-else")

        for _ in range(3):
            with pytest.raises(OwnershipConflictError):
                await adapter.ensure_created(ResourceKind.NETWORK, "net1", {}, owner=OWNER)
        await adapter.ensure_created(ResourceKind.VAPP, "c1-vapp", {}, owner=OWNER)

        assert adapter._locks == {}
        assert adapter._lock_users == {}

    @pytest.mark.asyncio
    async def test_observe_prefers_known_id(
        self, adapter: TaskPollingAdapter, platform: MockPlatform
    ) -> None:
        vapp = platform.add_resource(ResourceKind.VAPP, "renamed", owner=OWNER)

        found = await adapter.observe(ResourceKind.VAPP, "c1-vapp", resource_id=vapp.id)

        assert found is not None
        assert found.id == vapp.id
        assert platform.calls["find"] == 0


class TestEnsureDeleted:
    @pytest.mark.asyncio
    async def test_absent_counts_as_deleted(
        self, adapter: TaskPollingAdapter, platform: MockPlatform
    ) -> None:
        assert await adapter.ensure_deleted(ResourceKind.VAPP, "c1-vapp", owner=OWNER) is True
        assert platform.calls["delete"] == 0

    @pytest.mark.asyncio
    async def test_deletes_owned_resource(
        self, adapter: TaskPollingAdapter, platform: MockPlatform
    ) -> None:
        platform.add_resource(ResourceKind.VAPP, "c1-vapp", owner=OWNER)

        assert await adapter.ensure_deleted(ResourceKind.VAPP, "c1-vapp", owner=OWNER) is True
        assert platform.count(ResourceKind.VAPP) == 0

    @pytest.mark.asyncio
    async def test_foreign_resource_left_alone(
        self, adapter: TaskPollingAdapter, platform: MockPlatform
    ) -> None:
        platform.add_resource(ResourceKind.NETWORK, "shared-net")

        assert await adapter.ensure_deleted(ResourceKind.NETWORK, "shared-net", owner=OWNER) is False
        assert platform.count(ResourceKind.NETWORK) == 1
        assert platform.calls["delete"] == 0

    @pytest.mark.asyncio
    async def test_log_records_carry_resource_name(
        self,
        adapter: TaskPollingAdapter,
        platform: MockPlatform,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        caplog.set_level(logging.DEBUG, logger="capvcd")
        platform.add_resource(ResourceKind.NETWORK, "shared-net", owner="someone-else")

        await adapter.ensure_created(ResourceKind.VAPP, "c1-vapp", {}, owner=OWNER)
        await adapter.ensure_deleted(ResourceKind.VAPP, "c1-vapp", owner=OWNER)
        await adapter.ensure_deleted(ResourceKind.NETWORK, "shared-net", owner=OWNER)

        by_message = {r.getMessage(): r for r in caplog.records}
        assert by_message["Create submitted"].resource_name == "c1-vapp"  # type: ignore[attr-defined]
        assert by_message["Delete submitted"].resource_name == "c1-vapp"  # type: ignore[attr-defined]
        warning = by_message["Not deleting resource owned by someone else"]
        assert warning.resource_name == "shared-net"  # type: ignore[attr-defined]

    @pytest.mark.asyncio
    async def test_not_found_during_delete_is_success(
        self, adapter: TaskPollingAdapter, platform: MockPlatform
    ) -> None:
        platform.add_resource(ResourceKind.VAPP, "c1-vapp", owner=OWNER)
        platform.fail_next("delete", NotFoundError("gone"))

        assert await adapter.ensure_deleted(ResourceKind.VAPP, "c1-vapp", owner=OWNER) is True


class TestVMOperations:
    @pytest.mark.asyncio
    async def test_power_on_skipped_when_on(
        self, adapter: TaskPollingAdapter, platform: MockPlatform
    ) -> None:
        platform.add_resource(ResourceKind.VM, "m1", owner=OWNER, power_state=PowerState.POWERED_ON)
        vm = await adapter.observe(ResourceKind.VM, "m1")
        assert vm is not None

        await adapter.power_on(vm)

        assert platform.calls["power_on"] == 0

    @pytest.mark.asyncio
    async def test_power_on_not_retried(
        self, adapter: TaskPollingAdapter, platform: MockPlatform
    ) -> None:
        platform.add_resource(ResourceKind.VM, "m1", owner=OWNER, power_state=PowerState.POWERED_OFF)
        vm = await adapter.observe(ResourceKind.VM, "m1")
        assert vm is not None
        platform.fail_next("power_on", TransientError("gateway timeout", status_code=504))

        with pytest.raises(TransientError):
            await adapter.power_on(vm)

        assert platform.calls["power_on"] == 1

    @pytest.mark.asyncio
    async def test_power_off_retried(
        self, adapter: TaskPollingAdapter, platform: MockPlatform
    ) -> None:
        platform.add_resource(ResourceKind.VM, "m1", owner=OWNER, power_state=PowerState.POWERED_ON)
        vm = await adapter.observe(ResourceKind.VM, "m1")
        assert vm is not None
        platform.fail_next("power_off", TransientError("busy", status_code=503))

        await adapter.power_off(vm)

        assert platform.calls["power_off"] == 2
        assert platform.by_name(ResourceKind.VM, "m1").power_state == PowerState.POWERED_OFF  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_customize_guest_skipped_when_present(
        self, adapter: TaskPollingAdapter, platform: MockPlatform
    ) -> None:
        platform.add_resource(
            ResourceKind.VM, "m1", owner=OWNER, guest_properties={"guestinfo.userdata": "abc"}
        )
        vm = await adapter.observe(ResourceKind.VM, "m1")
        assert vm is not None

        await adapter.customize_guest(vm, {"guestinfo.userdata": "abc"})

        assert platform.calls["set_guest_properties"] == 0

    @pytest.mark.asyncio
    async def test_pool_member_added_once(
        self, adapter: TaskPollingAdapter, platform: MockPlatform
    ) -> None:
        platform.add_resource(ResourceKind.LB_POOL, "c1-pool", owner=OWNER)
        pool = await adapter.observe(ResourceKind.LB_POOL, "c1-pool")
        assert pool is not None

        await adapter.ensure_pool_member(pool, "10.0.0.10", 6443)
        refreshed = await adapter.observe(ResourceKind.LB_POOL, "c1-pool")
        assert refreshed is not None
        await adapter.ensure_pool_member(refreshed, "10.0.0.10", 6443)

        assert refreshed.members == ("10.0.0.10",)
        assert platform.calls["add_pool_member"] == 1


class TestWaitForTask:
    @pytest.mark.asyncio
    async def test_polls_until_success(self, config: Config) -> None:
        platform = MockPlatform(polls_to_complete=3)
        adapter = TaskPollingAdapter(platform, config)

        await adapter.ensure_created(ResourceKind.VAPP, "c1-vapp", {}, owner=OWNER)

        assert platform.calls["get_task"] == 3

    @pytest.mark.asyncio
    async def test_deadline(self, adapter: TaskPollingAdapter) -> None:
        running = TaskHandle(id="t-missing", status=TaskStatus.RUNNING)

        with pytest.raises(TaskTimeoutError) as exc_info:
            await adapter.wait_for_task(running, timeout=0)

        assert exc_info.value.task_id == "t-missing"

    @pytest.mark.asyncio
    async def test_transient_poll_failure_retried(self, config: Config) -> None:
        platform = MockPlatform(polls_to_complete=1)
        adapter = TaskPollingAdapter(platform, config, retry_backoff_base_seconds=0.001)
        platform.fail_next("get_task", TransientError("reset by peer"))

        await adapter.ensure_created(ResourceKind.VAPP, "c1-vapp", {}, owner=OWNER)

        assert platform.calls["get_task"] == 2
