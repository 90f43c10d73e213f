"""Pydantic models for the hub API version (v1beta2).

These models provide:
1. Type-safe manifest parsing with validation at the boundary
2. The single in-memory representation every reconciler works on
3. Stable serialization back to camelCase manifests

Older API versions live in their own modules and convert through this hub
(see conversion.py).
"""

from __future__ import annotations

import base64
import ipaddress
from datetime import datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

from .conditions import Condition

API_GROUP = "infrastructure.cluster.x-k8s.io"
HUB_VERSION = "v1beta2"
HUB_API_VERSION = f"{API_GROUP}/{HUB_VERSION}"

CLUSTER_KIND = "VCDCluster"
MACHINE_KIND = "VCDMachine"
SECRET_KIND = "Secret"

# Finalizers block removal until external infrastructure is gone
CLUSTER_FINALIZER = "vcdcluster.infrastructure.cluster.x-k8s.io"
MACHINE_FINALIZER = "vcdmachine.infrastructure.cluster.x-k8s.io"

# External IDs recorded as soon as they are known so a restart can re-adopt
NETWORK_ID_ANNOTATION = "capvcd.io/network-id"
VAPP_ID_ANNOTATION = "capvcd.io/vapp-id"
VM_ID_ANNOTATION = "capvcd.io/vm-id"
LB_POOL_ID_ANNOTATION = "capvcd.io/lb-pool-id"
VIRTUAL_SERVICE_ID_ANNOTATION = "capvcd.io/virtual-service-id"

# Set by an operator to retry a Failed object without changing its spec
RETRY_ANNOTATION = "capvcd.io/retry"

# "<reason>@<ISO time>": when the current in-flight operation started waiting
IN_FLIGHT_SINCE_ANNOTATION = "capvcd.io/in-flight-since"

CONTROL_PLANE_LABEL = "cluster.x-k8s.io/control-plane"
PROVIDER_ID_PREFIX = "vmware-cloud-director://"

DEFAULT_NETWORK_CIDR = "10.0.0.1/24"
DEFAULT_API_SERVER_PORT = 6443


# =============================================================================
# Shared
# =============================================================================


class ObjectMeta(BaseModel):
    """Identity and bookkeeping shared by every stored object."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=63)]
    namespace: str = "default"
    uid: str = ""
    resource_version: str = Field("", alias="resourceVersion")
    generation: int = 0
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    creation_timestamp: datetime | None = Field(None, alias="creationTimestamp")
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")

    @property
    def key(self) -> str:
        """Namespaced key, e.g. "default/my-cluster"."""
        return f"{self.namespace}/{self.name}"

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def add_finalizer(self, finalizer: str) -> bool:
        """Add a finalizer. Returns True if the list changed."""
        if finalizer in self.finalizers:
            return False
        self.finalizers.append(finalizer)
        return True

    def remove_finalizer(self, finalizer: str) -> bool:
        """Remove a finalizer. Returns True if the list changed."""
        if finalizer not in self.finalizers:
            return False
        self.finalizers = [f for f in self.finalizers if f != finalizer]
        return True


class APIEndpoint(BaseModel):
    """Host and port of the Kubernetes API server."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    host: str = ""
    port: Annotated[int, Field(ge=0, le=65535)] = DEFAULT_API_SERVER_PORT

    def is_zero(self) -> bool:
        return not self.host


class Bootstrap(BaseModel):
    """Reference to bootstrap data produced by a bootstrap provider."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    data_secret_name: str | None = Field(None, alias="dataSecretName")


class MachineAddress(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    type: str = "InternalIP"
    address: str


class Secret(BaseModel):
    """Minimal Secret carrying bootstrap data under the "value" key."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    api_version: str = Field("v1", alias="apiVersion")
    kind: str = SECRET_KIND
    metadata: ObjectMeta
    data: dict[str, str] = Field(default_factory=dict)
    string_data: dict[str, str] = Field(default_factory=dict, alias="stringData")

    def value(self, key: str = "value") -> bytes | None:
        """Return the decoded value for key, preferring stringData."""
        if key in self.string_data:
            return self.string_data[key].encode()
        if key in self.data:
            return base64.b64decode(self.data[key])
        return None


# =============================================================================
# VCDCluster
# =============================================================================


class ClusterPhase(str, Enum):
    PENDING = "Pending"
    PROVISIONING = "Provisioning"
    PROVISIONED = "Provisioned"
    DELETING = "Deleting"
    FAILED = "Failed"


class LoadBalancerConfig(BaseModel):
    """Load balancer placement for the control-plane endpoint."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    use_one_arm: bool = Field(False, alias="useOneArm")
    vip_subnet: str | None = Field(None, alias="vipSubnet")

    @field_validator("vip_subnet")
    @classmethod
    def validate_vip_subnet(cls, v: str | None) -> str | None:
        if v is None:
            return v
        try:
            ipaddress.ip_network(v, strict=False)
        except ValueError as e:
            raise ValueError(f"vipSubnet must be in CIDR notation: {v}") from e
        return v


class VCDClusterSpec(BaseModel):
    """Desired topology of the cluster's shared infrastructure."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    org: Annotated[str, Field(min_length=1)]
    ovdc: Annotated[str, Field(min_length=1)]
    gateway: Annotated[str, Field(min_length=1)]
    # Pre-existing network to use. When empty a routed network is created.
    ovdc_network: str | None = Field(None, alias="ovdcNetwork")
    network_cidr: str = Field(DEFAULT_NETWORK_CIDR, alias="networkCidr")
    dns_servers: list[str] = Field(default_factory=list, alias="dnsServers")
    control_plane_endpoint: APIEndpoint | None = Field(None, alias="controlPlaneEndpoint")
    load_balancer_config: LoadBalancerConfig = Field(
        default_factory=LoadBalancerConfig, alias="loadBalancerConfigSpec"
    )

    @field_validator("network_cidr")
    @classmethod
    def validate_network_cidr(cls, v: str) -> str:
        # Gateway address plus prefix, e.g. 10.0.0.1/24
        if "/" not in v:
            raise ValueError("networkCidr must be in CIDR notation (e.g., 10.0.0.1/24)")
        try:
            ipaddress.ip_interface(v)
        except ValueError as e:
            raise ValueError(f"networkCidr is not a valid interface address: {v}") from e
        return v

    @field_validator("dns_servers")
    @classmethod
    def validate_dns_servers(cls, v: list[str]) -> list[str]:
        for server in v:
            ipaddress.ip_address(server)
        return v


class VCDClusterStatus(BaseModel):
    """Observed state of the cluster's shared infrastructure."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    phase: ClusterPhase = ClusterPhase.PENDING
    ready: bool = False
    conditions: list[Condition] = Field(default_factory=list)
    observed_generation: int = Field(0, alias="observedGeneration")
    gateway_id: str | None = Field(None, alias="gatewayId")
    network_id: str | None = Field(None, alias="networkId")
    vapp_id: str | None = Field(None, alias="vappId")
    load_balancer_pool_id: str | None = Field(None, alias="loadBalancerPoolId")
    virtual_service_id: str | None = Field(None, alias="virtualServiceId")
    control_plane_endpoint: APIEndpoint | None = Field(None, alias="controlPlaneEndpoint")
    failure_reason: str | None = Field(None, alias="failureReason")
    failure_message: str | None = Field(None, alias="failureMessage")


class VCDCluster(BaseModel):
    """Hub representation of a VCDCluster."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    api_version: str = Field(HUB_API_VERSION, alias="apiVersion")
    kind: str = CLUSTER_KIND
    metadata: ObjectMeta
    spec: VCDClusterSpec
    status: VCDClusterStatus = Field(default_factory=VCDClusterStatus)

    @property
    def owner_marker(self) -> str:
        """Marker stamped on external resources created for this cluster."""
        return f"{CLUSTER_KIND}/{self.metadata.namespace}/{self.metadata.name}"

    def to_manifest(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


# =============================================================================
# VCDMachine
# =============================================================================


class MachinePhase(str, Enum):
    PENDING = "Pending"
    PROVISIONING = "Provisioning"
    RUNNING = "Running"
    DELETING = "Deleting"
    FAILED = "Failed"


class VCDMachineSpec(BaseModel):
    """Desired compute instance."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    cluster_name: Annotated[str, Field(min_length=1)] = Field(alias="clusterName")
    provider_id: str | None = Field(None, alias="providerID")
    catalog: Annotated[str, Field(min_length=1)]
    template: Annotated[str, Field(min_length=1)]
    sizing_policy: str | None = Field(None, alias="sizingPolicy")
    placement_policy: str | None = Field(None, alias="placementPolicy")
    storage_profile: str | None = Field(None, alias="storageProfile")
    disk_size_mb: Annotated[int, Field(ge=1)] | None = Field(None, alias="diskSizeMb")
    bootstrap: Bootstrap = Field(default_factory=Bootstrap)

    @field_validator("provider_id")
    @classmethod
    def validate_provider_id(cls, v: str | None) -> str | None:
        if not v:
            return None
        if not v.startswith(PROVIDER_ID_PREFIX):
            raise ValueError(f"providerID must start with {PROVIDER_ID_PREFIX}")
        return v


class VCDMachineStatus(BaseModel):
    """Observed state of the compute instance."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    phase: MachinePhase = MachinePhase.PENDING
    ready: bool = False
    addresses: list[MachineAddress] = Field(default_factory=list)
    conditions: list[Condition] = Field(default_factory=list)
    observed_generation: int = Field(0, alias="observedGeneration")
    failure_reason: str | None = Field(None, alias="failureReason")
    failure_message: str | None = Field(None, alias="failureMessage")


class VCDMachine(BaseModel):
    """Hub representation of a VCDMachine."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    api_version: str = Field(HUB_API_VERSION, alias="apiVersion")
    kind: str = MACHINE_KIND
    metadata: ObjectMeta
    spec: VCDMachineSpec
    status: VCDMachineStatus = Field(default_factory=VCDMachineStatus)

    @property
    def owner_marker(self) -> str:
        return f"{MACHINE_KIND}/{self.metadata.namespace}/{self.metadata.name}"

    @property
    def is_control_plane(self) -> bool:
        return CONTROL_PLANE_LABEL in self.metadata.labels

    def to_manifest(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


HubObject = VCDCluster | VCDMachine


def vm_id_from_provider_id(provider_id: str | None) -> str | None:
    """Extract the VM URN from a providerID, or None."""
    if not provider_id or not provider_id.startswith(PROVIDER_ID_PREFIX):
        return None
    return provider_id[len(PROVIDER_ID_PREFIX) :]
