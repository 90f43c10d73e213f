"""VCDMachine reconciler.

Converges one VM inside its cluster's vApp, one step per call:

1. Wait for the owning cluster's vApp and for bootstrap data (Pending, no error).
2. Create-or-adopt the VM by the machine's name.
3. Write bootstrap data as guest properties before the first power-on.
4. Power on. The power-on call is never retried inside a call; later calls
   only wait for its task.
5. Wait for an address, set providerID once and move to Running. Control
   plane machines are added to the cluster load balancer pool.

Deletion removes the pool member, powers off and deletes the VM. A VM that
is already gone counts as deleted.
"""

from __future__ import annotations

import base64
import logging
from datetime import UTC, datetime

from .cluster_reconciler import api_server_port, network_name, pool_name
from .conditions import (
    BOOTSTRAP_DATA_AVAILABLE,
    DELETING_REASON,
    DELETION_FAILED_REASON,
    INFRASTRUCTURE_READY,
    MACHINE_CONDITIONS,
    VM_PROVISIONED,
    VM_RUNNING,
    ConditionSeverity,
    is_true,
    mark_false,
    mark_true,
)
from .config import MAX_BOOTSTRAP_DATA_SIZE_BYTES
from .errors import InvalidSpecError, TaskTimeoutError, TerminalError, TransientError
from .models import (
    MACHINE_FINALIZER,
    PROVIDER_ID_PREFIX,
    VM_ID_ANNOTATION,
    MachineAddress,
    MachinePhase,
    VCDCluster,
    VCDMachine,
    vm_id_from_provider_id,
)
from .platform import ExternalResource, PowerState, ResourceKind
from .reconciler import ReconcileResult, ReconcileScope, Reconciler, split_key

logger = logging.getLogger(__name__)

GUESTINFO_USERDATA = "guestinfo.userdata"
GUESTINFO_USERDATA_ENCODING = "guestinfo.userdata.encoding"

WAITING_FOR_CLUSTER_REASON = "WaitingForClusterInfrastructure"
WAITING_FOR_BOOTSTRAP_DATA_REASON = "WaitingForBootstrapData"
VM_PROVISIONING_REASON = "VMProvisioning"
POWERING_ON_REASON = "PoweringOn"
WAITING_FOR_ADDRESS_REASON = "WaitingForAddress"
WAITING_FOR_LOAD_BALANCER_REASON = "WaitingForLoadBalancer"

# Forward-only order; Failed -> Provisioning is the one allowed step back
_PHASE_ORDER: dict[MachinePhase, int] = {
    MachinePhase.PENDING: 0,
    MachinePhase.PROVISIONING: 1,
    MachinePhase.RUNNING: 2,
    MachinePhase.DELETING: 3,
    MachinePhase.FAILED: 3,
}


def advance_phase(current: MachinePhase, target: MachinePhase) -> MachinePhase:
    """Return the phase after a requested transition, refusing regressions."""
    if current == MachinePhase.FAILED and target == MachinePhase.PROVISIONING:
        return target
    if target in (MachinePhase.DELETING, MachinePhase.FAILED):
        return target
    if current == MachinePhase.DELETING:
        return current
    if _PHASE_ORDER[target] >= _PHASE_ORDER[current]:
        return target
    return current


def guest_properties(bootstrap_data: bytes) -> dict[str, str]:
    """Guest properties that hand bootstrap data to cloud-init."""
    return {
        GUESTINFO_USERDATA: base64.b64encode(bootstrap_data).decode("ascii"),
        GUESTINFO_USERDATA_ENCODING: "base64",
    }


class MachineReconciler(Reconciler):
    """Reconciles VCDMachine objects."""

    condition_types = MACHINE_CONDITIONS
    failed_phase = MachinePhase.FAILED

    async def reconcile(self, key: str) -> ReconcileResult:
        namespace, name = split_key(key)
        result = ReconcileResult(key=key)

        machine = self._store.get_machine(namespace, name)
        if machine is None:
            logger.debug("Machine no longer exists", extra={"key": key})
            result.end_time = datetime.now(UTC)
            return result

        scope = ReconcileScope(obj=machine, result=result, condition_type=BOOTSTRAP_DATA_AVAILABLE)
        try:
            if machine.metadata.deletion_timestamp is not None:
                if machine.metadata.has_finalizer(MACHINE_FINALIZER):
                    await self._reconcile_delete(scope)
            else:
                await self._reconcile_normal(scope)
        except TerminalError as e:
            if scope.obj.metadata.deletion_timestamp is not None:
                mark_false(
                    scope.obj.status.conditions,
                    VM_PROVISIONED,
                    DELETION_FAILED_REASON,
                    ConditionSeverity.ERROR,
                    str(e),
                )
                result.requeue = True
            else:
                self._mark_failed(scope, e)
            result.error = e
        except TransientError as e:
            logger.warning(
                "Transient error reconciling machine",
                extra={"key": key, "error": str(e)},
            )
            result.error = e
            result.requeue = True
        finally:
            self._write_status(scope)
            result.end_time = datetime.now(UTC)

        logger.info(
            "Machine reconciled",
            extra={
                "key": key,
                "phase": scope.obj.status.phase.value,
                "ready": scope.obj.status.ready,
                "requeue": result.requeue,
                "duration_seconds": result.duration_seconds,
            },
        )
        return result

    def _set_phase(self, scope: ReconcileScope, target: MachinePhase) -> None:
        status = scope.obj.status
        status.phase = advance_phase(status.phase, target)

    # =========================================================================
    # Provisioning
    # =========================================================================

    async def _reconcile_normal(self, scope: ReconcileScope) -> None:
        machine: VCDMachine = scope.obj

        if self._is_failed_and_unchanged(machine):
            logger.debug("Machine failed, waiting for spec change or retry", extra={"key": machine.metadata.key})
            return

        if machine.metadata.add_finalizer(MACHINE_FINALIZER):
            self._update_metadata(scope)
            machine = scope.obj

        status = machine.status
        if status.phase == MachinePhase.FAILED:
            self._prepare_retry(scope)
            self._set_phase(scope, MachinePhase.PROVISIONING)

        # 1. Cluster infrastructure and bootstrap data
        scope.condition_type = BOOTSTRAP_DATA_AVAILABLE
        cluster = self._store.get_cluster(machine.metadata.namespace, machine.spec.cluster_name)
        if (
            cluster is None
            or not cluster.status.vapp_id
            or not is_true(cluster.status.conditions, INFRASTRUCTURE_READY)
        ):
            self._waiting(
                scope,
                VM_PROVISIONED,
                WAITING_FOR_CLUSTER_REASON,
                f"Cluster {machine.spec.cluster_name} infrastructure is not ready",
            )
            self._summarize(scope)
            return

        bootstrap_data = self._bootstrap_data(machine)
        if bootstrap_data is None:
            self._waiting(
                scope,
                BOOTSTRAP_DATA_AVAILABLE,
                WAITING_FOR_BOOTSTRAP_DATA_REASON,
                "Bootstrap data secret is not available yet",
            )
            self._summarize(scope)
            return
        mark_true(status.conditions, BOOTSTRAP_DATA_AVAILABLE)

        # 2. VM
        scope.condition_type = VM_PROVISIONED
        self._set_phase(scope, MachinePhase.PROVISIONING)
        vm = await self._ensure(
            scope,
            ResourceKind.VM,
            machine.metadata.name,
            {
                "catalog": machine.spec.catalog,
                "template": machine.spec.template,
                "sizingPolicy": machine.spec.sizing_policy,
                "placementPolicy": machine.spec.placement_policy,
                "storageProfile": machine.spec.storage_profile,
                "diskSizeMb": machine.spec.disk_size_mb,
                "networkName": network_name(cluster),
            },
            in_flight_reason=VM_PROVISIONING_REASON,
            parent_id=cluster.status.vapp_id,
            annotation=VM_ID_ANNOTATION,
            resource_id=vm_id_from_provider_id(machine.spec.provider_id),
        )
        if vm is None:
            self._summarize(scope)
            return
        mark_true(status.conditions, VM_PROVISIONED)

        # 3. Bootstrap data and power-on
        scope.condition_type = VM_RUNNING
        if vm.power_state != PowerState.POWERED_ON:
            try:
                await self._adapter.customize_guest(vm, guest_properties(bootstrap_data))
                await self._adapter.power_on(vm)
            except TaskTimeoutError as e:
                self._check_provisioning_deadline(scope, POWERING_ON_REASON)
                self._waiting(scope, VM_RUNNING, POWERING_ON_REASON, str(e))
                self._summarize(scope)
                return
            vm = await self._observe_vm(machine, cluster, vm.id)
            if vm is None:
                raise TransientError(f"VM {machine.metadata.name} not visible after power on")
        self._clear_in_flight(scope, POWERING_ON_REASON)

        # 4. Address, providerID, load balancer membership
        if not vm.ip_addresses:
            self._check_provisioning_deadline(scope, WAITING_FOR_ADDRESS_REASON)
            self._waiting(scope, VM_RUNNING, WAITING_FOR_ADDRESS_REASON, "VM has no address yet")
            self._summarize(scope)
            return
        self._clear_in_flight(scope, WAITING_FOR_ADDRESS_REASON)

        status.addresses = [MachineAddress(type="InternalIP", address=ip) for ip in vm.ip_addresses]
        self._set_provider_id(scope, vm)

        if scope.obj.is_control_plane and not await self._join_load_balancer(scope, cluster, vm):
            self._summarize(scope)
            return

        mark_true(status.conditions, VM_RUNNING)
        if self._summarize(scope):
            self._set_phase(scope, MachinePhase.RUNNING)
            status.failure_reason = None
            status.failure_message = None
            status.observed_generation = scope.obj.metadata.generation

    def _bootstrap_data(self, machine: VCDMachine) -> bytes | None:
        secret_name = machine.spec.bootstrap.data_secret_name
        if not secret_name:
            return None
        secret = self._store.get_secret(machine.metadata.namespace, secret_name)
        if secret is None:
            return None
        data = secret.value()
        if data is None:
            return None
        if len(data) > MAX_BOOTSTRAP_DATA_SIZE_BYTES:
            raise InvalidSpecError(
                f"Bootstrap data in {secret_name} is {len(data)} bytes, "
                f"limit is {MAX_BOOTSTRAP_DATA_SIZE_BYTES}"
            )
        return data

    async def _observe_vm(
        self, machine: VCDMachine, cluster: VCDCluster | None, vm_id: str | None
    ) -> ExternalResource | None:
        return await self._adapter.observe(
            ResourceKind.VM,
            machine.metadata.name,
            parent_id=cluster.status.vapp_id if cluster is not None else None,
            resource_id=vm_id,
        )

    def _set_provider_id(self, scope: ReconcileScope, vm: ExternalResource) -> None:
        """Set providerID the first time an address is seen. Never changed afterwards."""
        machine: VCDMachine = scope.obj
        provider_id = f"{PROVIDER_ID_PREFIX}{vm.id}"
        if machine.spec.provider_id is None:
            machine.spec.provider_id = provider_id
            self._update_metadata(scope)
            logger.info(
                "Provider ID set",
                extra={"key": machine.metadata.key, "provider_id": provider_id},
            )
        elif machine.spec.provider_id != provider_id:
            logger.warning(
                "Observed VM does not match providerID, keeping providerID",
                extra={
                    "key": machine.metadata.key,
                    "provider_id": machine.spec.provider_id,
                    "vm_id": vm.id,
                },
            )

    async def _join_load_balancer(
        self, scope: ReconcileScope, cluster: VCDCluster, vm: ExternalResource
    ) -> bool:
        """Add a control plane machine to the API server pool. False while waiting."""
        if not cluster.status.load_balancer_pool_id:
            self._waiting(
                scope,
                VM_RUNNING,
                WAITING_FOR_LOAD_BALANCER_REASON,
                "Cluster load balancer pool is not ready",
            )
            return False
        pool = await self._adapter.observe(
            ResourceKind.LB_POOL,
            pool_name(cluster),
            parent_id=cluster.status.gateway_id,
            resource_id=cluster.status.load_balancer_pool_id,
        )
        if pool is None:
            self._waiting(
                scope, VM_RUNNING, WAITING_FOR_LOAD_BALANCER_REASON, "Load balancer pool not found"
            )
            return False
        try:
            await self._adapter.ensure_pool_member(pool, vm.ip_addresses[0], api_server_port(cluster))
        except TaskTimeoutError as e:
            self._waiting(scope, VM_RUNNING, WAITING_FOR_LOAD_BALANCER_REASON, str(e))
            return False
        return True

    # =========================================================================
    # Teardown
    # =========================================================================

    async def _reconcile_delete(self, scope: ReconcileScope) -> None:
        machine: VCDMachine = scope.obj
        status = machine.status
        self._set_phase(scope, MachinePhase.DELETING)
        status.ready = False
        scope.condition_type = VM_PROVISIONED
        mark_false(status.conditions, VM_RUNNING, DELETING_REASON, ConditionSeverity.INFO)
        self._summarize(scope)

        cluster = self._store.get_cluster(machine.metadata.namespace, machine.spec.cluster_name)
        vm_id = vm_id_from_provider_id(machine.spec.provider_id) or machine.metadata.annotations.get(
            VM_ID_ANNOTATION
        )
        vm = await self._observe_vm(machine, cluster, vm_id)
        if vm is not None and vm.owner != machine.owner_marker:
            logger.warning(
                "VM with this name belongs to someone else, leaving it alone",
                extra={"key": machine.metadata.key, "vm": vm.name, "owner": vm.owner},
            )
            vm = None

        if vm is not None:
            try:
                if machine.is_control_plane and cluster is not None:
                    await self._leave_load_balancer(cluster, vm)
                await self._adapter.power_off(vm)
                await self._adapter.ensure_deleted(
                    ResourceKind.VM,
                    vm.name,
                    owner=machine.owner_marker,
                    parent_id=vm.parent_id,
                    resource_id=vm.id,
                )
            except TaskTimeoutError as e:
                self._waiting(scope, VM_PROVISIONED, DELETING_REASON, str(e))
                self._summarize(scope)
                return
            logger.info("VM deleted", extra={"key": machine.metadata.key, "vm": vm.name})
        else:
            logger.info("No VM of ours left to delete", extra={"key": machine.metadata.key})

        status.addresses = []
        self._write_status(scope)
        scope.obj.metadata.remove_finalizer(MACHINE_FINALIZER)
        self._update_metadata(scope)
        logger.info("Machine finalizer removed", extra={"key": machine.metadata.key})

    async def _leave_load_balancer(self, cluster: VCDCluster, vm: ExternalResource) -> None:
        if not cluster.status.load_balancer_pool_id or not vm.ip_addresses:
            return
        pool = await self._adapter.observe(
            ResourceKind.LB_POOL,
            pool_name(cluster),
            parent_id=cluster.status.gateway_id,
            resource_id=cluster.status.load_balancer_pool_id,
        )
        if pool is None:
            return
        for address in vm.ip_addresses:
            await self._adapter.remove_pool_member(pool, address)
