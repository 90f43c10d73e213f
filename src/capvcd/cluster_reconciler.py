"""VCDCluster reconciler.

Converges the shared infrastructure of one cluster, one step per call:

    Pending -> Provisioning -> Provisioned
    *       -> Deleting     -> (removed)
    *       -> Failed       (terminal error; left alone until the spec
                             changes or the retry annotation is set)

Provisioning order: gateway (observed) -> routed network (created, or the
pre-existing ovdcNetwork observed) -> cluster vApp -> load balancer pool ->
virtual service, whose VIP becomes status.controlPlaneEndpoint.

Teardown runs only after every VCDMachine of the cluster is gone, in the
reverse order: virtual service, pool, vApp, network (only if we created it).
"""

from __future__ import annotations

import hashlib
import logging
from datetime import UTC, datetime

from .conditions import (
    CLUSTER_CONDITIONS,
    CONTROL_PLANE_ENDPOINT_READY,
    DELETING_REASON,
    DELETION_FAILED_REASON,
    INFRASTRUCTURE_READY,
    WAITING_FOR_MACHINE_DELETION_REASON,
    ConditionSeverity,
    mark_false,
    mark_true,
)
from .config import MAX_VCD_NAME_LENGTH
from .errors import (
    InvalidSpecError,
    TaskTimeoutError,
    TerminalError,
    TransientError,
)
from .models import (
    CLUSTER_FINALIZER,
    DEFAULT_API_SERVER_PORT,
    LB_POOL_ID_ANNOTATION,
    NETWORK_ID_ANNOTATION,
    VAPP_ID_ANNOTATION,
    VIRTUAL_SERVICE_ID_ANNOTATION,
    APIEndpoint,
    ClusterPhase,
    VCDCluster,
)
from .platform import ResourceKind
from .reconciler import ReconcileResult, ReconcileScope, Reconciler, split_key

logger = logging.getLogger(__name__)

NETWORK_PROVISIONING_REASON = "NetworkProvisioning"
VAPP_PROVISIONING_REASON = "VAppProvisioning"
LOAD_BALANCER_PROVISIONING_REASON = "LoadBalancerProvisioning"
VIP_PENDING_REASON = "VirtualIPPending"


# =============================================================================
# Deterministic names
# =============================================================================


def _identity_hash(cluster: VCDCluster) -> str:
    identity = f"{cluster.metadata.namespace}/{cluster.metadata.name}"
    return hashlib.sha256(identity.encode()).hexdigest()[:8]


def resource_base_name(cluster: VCDCluster) -> str:
    """<name>-<hash8>, truncated to the platform's name limit."""
    suffix = f"-{_identity_hash(cluster)}"
    # Leave room for the longest per-resource suffix ("-pool", "-vs")
    room = MAX_VCD_NAME_LENGTH - len(suffix) - 5
    return f"{cluster.metadata.name[:room]}{suffix}"


def network_name(cluster: VCDCluster) -> str:
    """Name of the network the cluster's VMs attach to."""
    return cluster.spec.ovdc_network or resource_base_name(cluster)


def vapp_name(cluster: VCDCluster) -> str:
    return resource_base_name(cluster)


def pool_name(cluster: VCDCluster) -> str:
    return f"{resource_base_name(cluster)}-pool"


def virtual_service_name(cluster: VCDCluster) -> str:
    return f"{resource_base_name(cluster)}-vs"


def api_server_port(cluster: VCDCluster) -> int:
    endpoint = cluster.spec.control_plane_endpoint
    if endpoint is not None and endpoint.port:
        return endpoint.port
    return DEFAULT_API_SERVER_PORT


class ClusterReconciler(Reconciler):
    """Reconciles VCDCluster objects."""

    condition_types = CLUSTER_CONDITIONS
    failed_phase = ClusterPhase.FAILED

    async def reconcile(self, key: str) -> ReconcileResult:
        namespace, name = split_key(key)
        result = ReconcileResult(key=key)

        cluster = self._store.get_cluster(namespace, name)
        if cluster is None:
            logger.debug("Cluster no longer exists", extra={"key": key})
            result.end_time = datetime.now(UTC)
            return result

        scope = ReconcileScope(obj=cluster, result=result, condition_type=INFRASTRUCTURE_READY)
        try:
            if cluster.metadata.deletion_timestamp is not None:
                if cluster.metadata.has_finalizer(CLUSTER_FINALIZER):
                    await self._reconcile_delete(scope)
            else:
                await self._reconcile_normal(scope)
        except TerminalError as e:
            if scope.obj.metadata.deletion_timestamp is not None:
                # Teardown keeps retrying; the finalizer must not be dropped
                mark_false(
                    scope.obj.status.conditions,
                    scope.condition_type,
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
                "Transient error reconciling cluster",
                extra={"key": key, "error": str(e)},
            )
            result.error = e
            result.requeue = True
        finally:
            self._write_status(scope)
            result.end_time = datetime.now(UTC)

        logger.info(
            "Cluster reconciled",
            extra={
                "key": key,
                "phase": scope.obj.status.phase.value,
                "ready": scope.obj.status.ready,
                "requeue": result.requeue,
                "duration_seconds": result.duration_seconds,
            },
        )
        return result

    # =========================================================================
    # Provisioning
    # =========================================================================

    async def _reconcile_normal(self, scope: ReconcileScope) -> None:
        cluster: VCDCluster = scope.obj
        status = cluster.status

        if self._is_failed_and_unchanged(cluster):
            logger.debug("Cluster failed, waiting for spec change or retry", extra={"key": cluster.metadata.key})
            return

        if cluster.metadata.add_finalizer(CLUSTER_FINALIZER):
            self._update_metadata(scope)
            cluster = scope.obj
            status = cluster.status

        if status.phase == ClusterPhase.FAILED:
            self._prepare_retry(scope)
        if status.phase in (ClusterPhase.PENDING, ClusterPhase.FAILED):
            status.phase = ClusterPhase.PROVISIONING
        elif (
            status.phase == ClusterPhase.PROVISIONED
            and status.observed_generation != cluster.metadata.generation
        ):
            status.phase = ClusterPhase.PROVISIONING

        if cluster.spec.org != self._config.vcd_org:
            raise InvalidSpecError(
                f"Organization {cluster.spec.org} is not served by this provider "
                f"(configured for {self._config.vcd_org})"
            )

        # --- InfrastructureReady: gateway, network, vApp ---
        scope.condition_type = INFRASTRUCTURE_READY

        vdc = await self._adapter.observe(ResourceKind.VDC, cluster.spec.ovdc)
        if vdc is None:
            raise InvalidSpecError(f"Virtual data center {cluster.spec.ovdc} not found")

        gateway = await self._adapter.observe(
            ResourceKind.GATEWAY, cluster.spec.gateway, parent_id=vdc.id, resource_id=status.gateway_id
        )
        if gateway is None:
            raise InvalidSpecError(f"Edge gateway {cluster.spec.gateway} not found in {cluster.spec.ovdc}")
        status.gateway_id = gateway.id

        if cluster.spec.ovdc_network:
            network = await self._adapter.observe(
                ResourceKind.NETWORK, cluster.spec.ovdc_network, parent_id=vdc.id
            )
            if network is None:
                raise InvalidSpecError(f"Network {cluster.spec.ovdc_network} not found in {cluster.spec.ovdc}")
        else:
            network = await self._ensure(
                scope,
                ResourceKind.NETWORK,
                network_name(cluster),
                {
                    "gatewayId": gateway.id,
                    "networkCidr": cluster.spec.network_cidr,
                    "dnsServers": list(cluster.spec.dns_servers),
                },
                in_flight_reason=NETWORK_PROVISIONING_REASON,
                parent_id=vdc.id,
                annotation=NETWORK_ID_ANNOTATION,
            )
            if network is None:
                self._summarize(scope)
                return
        status.network_id = network.id

        vapp = await self._ensure(
            scope,
            ResourceKind.VAPP,
            vapp_name(cluster),
            {"networkId": network.id, "networkName": network.name},
            in_flight_reason=VAPP_PROVISIONING_REASON,
            parent_id=vdc.id,
            annotation=VAPP_ID_ANNOTATION,
        )
        if vapp is None:
            self._summarize(scope)
            return
        status.vapp_id = vapp.id
        mark_true(status.conditions, INFRASTRUCTURE_READY)

        # --- ControlPlaneEndpointReady: pool, virtual service, VIP ---
        scope.condition_type = CONTROL_PLANE_ENDPOINT_READY
        port = api_server_port(cluster)

        pool = await self._ensure(
            scope,
            ResourceKind.LB_POOL,
            pool_name(cluster),
            {"port": port},
            in_flight_reason=LOAD_BALANCER_PROVISIONING_REASON,
            parent_id=gateway.id,
            annotation=LB_POOL_ID_ANNOTATION,
        )
        if pool is None:
            self._summarize(scope)
            return
        status.load_balancer_pool_id = pool.id

        desired = cluster.spec.control_plane_endpoint
        virtual_service = await self._ensure(
            scope,
            ResourceKind.VIRTUAL_SERVICE,
            virtual_service_name(cluster),
            {
                "poolId": pool.id,
                "port": port,
                "virtualIpAddress": desired.host if desired is not None else None,
                "vipSubnet": cluster.spec.load_balancer_config.vip_subnet,
                "useOneArm": cluster.spec.load_balancer_config.use_one_arm,
            },
            in_flight_reason=LOAD_BALANCER_PROVISIONING_REASON,
            parent_id=gateway.id,
            annotation=VIRTUAL_SERVICE_ID_ANNOTATION,
        )
        if virtual_service is None:
            self._summarize(scope)
            return
        status.virtual_service_id = virtual_service.id

        if not virtual_service.ip_addresses:
            self._waiting(
                scope,
                CONTROL_PLANE_ENDPOINT_READY,
                VIP_PENDING_REASON,
                f"Virtual service {virtual_service.name} has no address yet",
            )
            self._summarize(scope)
            return
        status.control_plane_endpoint = APIEndpoint(host=virtual_service.ip_addresses[0], port=port)
        mark_true(status.conditions, CONTROL_PLANE_ENDPOINT_READY)

        if self._summarize(scope):
            status.phase = ClusterPhase.PROVISIONED
            status.failure_reason = None
            status.failure_message = None
            status.observed_generation = cluster.metadata.generation

    # =========================================================================
    # Teardown
    # =========================================================================

    async def _reconcile_delete(self, scope: ReconcileScope) -> None:
        cluster: VCDCluster = scope.obj
        status = cluster.status
        status.phase = ClusterPhase.DELETING
        status.ready = False
        scope.condition_type = INFRASTRUCTURE_READY

        machines = self._store.machines_for_cluster(cluster.metadata.namespace, cluster.metadata.name)
        if machines:
            self._waiting(
                scope,
                INFRASTRUCTURE_READY,
                WAITING_FOR_MACHINE_DELETION_REASON,
                f"{len(machines)} machine(s) still exist",
            )
            self._summarize(scope)
            logger.info(
                "Cluster deletion waiting for machines",
                extra={"key": cluster.metadata.key, "machines": len(machines)},
            )
            return

        mark_false(status.conditions, INFRASTRUCTURE_READY, DELETING_REASON, ConditionSeverity.INFO)
        mark_false(status.conditions, CONTROL_PLANE_ENDPOINT_READY, DELETING_REASON, ConditionSeverity.INFO)
        self._summarize(scope)

        owner = cluster.owner_marker
        annotations = cluster.metadata.annotations
        gateway_id = status.gateway_id
        vdc = await self._adapter.observe(ResourceKind.VDC, cluster.spec.ovdc)
        vdc_id = vdc.id if vdc is not None else None

        teardown = [
            (
                ResourceKind.VIRTUAL_SERVICE,
                virtual_service_name(cluster),
                gateway_id,
                status.virtual_service_id or annotations.get(VIRTUAL_SERVICE_ID_ANNOTATION),
            ),
            (
                ResourceKind.LB_POOL,
                pool_name(cluster),
                gateway_id,
                status.load_balancer_pool_id or annotations.get(LB_POOL_ID_ANNOTATION),
            ),
            (
                ResourceKind.VAPP,
                vapp_name(cluster),
                vdc_id,
                status.vapp_id or annotations.get(VAPP_ID_ANNOTATION),
            ),
        ]
        if not cluster.spec.ovdc_network:
            teardown.append(
                (
                    ResourceKind.NETWORK,
                    network_name(cluster),
                    vdc_id,
                    status.network_id or annotations.get(NETWORK_ID_ANNOTATION),
                )
            )

        for kind, name, parent_id, resource_id in teardown:
            try:
                await self._adapter.ensure_deleted(
                    kind, name, owner=owner, parent_id=parent_id, resource_id=resource_id
                )
            except TaskTimeoutError as e:
                self._waiting(
                    scope, INFRASTRUCTURE_READY, DELETING_REASON, f"Waiting for {kind.value} {name}: {e}"
                )
                self._summarize(scope)
                return
            logger.info(
                "Cluster resource deleted",
                extra={"key": cluster.metadata.key, "kind": kind.value, "resource_name": name},
            )

        status.virtual_service_id = None
        status.load_balancer_pool_id = None
        status.vapp_id = None
        status.network_id = None
        status.control_plane_endpoint = None

        # Persist the final status before the object can disappear
        self._write_status(scope)
        scope.obj.metadata.remove_finalizer(CLUSTER_FINALIZER)
        self._update_metadata(scope)
        logger.info("Cluster finalizer removed", extra={"key": cluster.metadata.key})
