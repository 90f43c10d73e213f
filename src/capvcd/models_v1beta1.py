"""Pydantic models for the v1beta1 API version.

v1beta1 is served for existing manifests and clients. It is never used by
the reconcilers; objects are converted to the v1beta2 hub at the store
boundary (see conversion.py).

Differences from the hub:
- VCDCluster: "loadBalancer" instead of "loadBalancerConfigSpec" (no
  vipSubnet), no dnsServers, carries defaultStorageClassOptions. Status has
  no observedGeneration, loadBalancerPoolId or virtualServiceId.
- VCDMachine: "computePolicy" instead of "sizingPolicy", no placementPolicy,
  storageProfile or diskSizeMb, carries enableNvidiaGPU. Status has no
  observedGeneration.
"""

from __future__ import annotations

from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

from .conditions import Condition
from .models import (
    API_GROUP,
    CLUSTER_KIND,
    DEFAULT_NETWORK_CIDR,
    MACHINE_KIND,
    PROVIDER_ID_PREFIX,
    APIEndpoint,
    Bootstrap,
    ClusterPhase,
    MachineAddress,
    MachinePhase,
    ObjectMeta,
)

VERSION = "v1beta1"
API_VERSION = f"{API_GROUP}/{VERSION}"


# =============================================================================
# VCDCluster
# =============================================================================


class LoadBalancer(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    use_one_arm: bool = Field(False, alias="useOneArm")


class DefaultStorageClassOptions(BaseModel):
    """Storage class the provider used to create in the workload cluster."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    vcd_storage_profile_name: str = Field(alias="vcdStorageProfileName")
    k8s_storage_class_name: str = Field(alias="k8sStorageClassName")
    use_delete_reclaim_policy: bool = Field(False, alias="useDeleteReclaimPolicy")
    file_system: str = Field("ext4", alias="fileSystem")


class VCDClusterSpec(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    org: Annotated[str, Field(min_length=1)]
    ovdc: Annotated[str, Field(min_length=1)]
    gateway: Annotated[str, Field(min_length=1)]
    ovdc_network: str | None = Field(None, alias="ovdcNetwork")
    network_cidr: str = Field(DEFAULT_NETWORK_CIDR, alias="networkCidr")
    control_plane_endpoint: APIEndpoint | None = Field(None, alias="controlPlaneEndpoint")
    load_balancer: LoadBalancer = Field(default_factory=LoadBalancer, alias="loadBalancer")
    default_storage_class_options: DefaultStorageClassOptions | None = Field(
        None, alias="defaultStorageClassOptions"
    )


class VCDClusterStatus(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    phase: ClusterPhase = ClusterPhase.PENDING
    ready: bool = False
    conditions: list[Condition] = Field(default_factory=list)
    gateway_id: str | None = Field(None, alias="gatewayId")
    network_id: str | None = Field(None, alias="networkId")
    vapp_id: str | None = Field(None, alias="vappId")
    control_plane_endpoint: APIEndpoint | None = Field(None, alias="controlPlaneEndpoint")
    failure_reason: str | None = Field(None, alias="failureReason")
    failure_message: str | None = Field(None, alias="failureMessage")


class VCDCluster(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: str = CLUSTER_KIND
    metadata: ObjectMeta
    spec: VCDClusterSpec
    status: VCDClusterStatus = Field(default_factory=VCDClusterStatus)

    def to_manifest(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


# =============================================================================
# VCDMachine
# =============================================================================


class VCDMachineSpec(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    cluster_name: Annotated[str, Field(min_length=1)] = Field(alias="clusterName")
    provider_id: str | None = Field(None, alias="providerID")
    catalog: Annotated[str, Field(min_length=1)]
    template: Annotated[str, Field(min_length=1)]
    compute_policy: str | None = Field(None, alias="computePolicy")
    enable_nvidia_gpu: bool = Field(False, alias="enableNvidiaGPU")
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
    model_config = {"extra": "ignore", "populate_by_name": True}

    phase: MachinePhase = MachinePhase.PENDING
    ready: bool = False
    addresses: list[MachineAddress] = Field(default_factory=list)
    conditions: list[Condition] = Field(default_factory=list)
    failure_reason: str | None = Field(None, alias="failureReason")
    failure_message: str | None = Field(None, alias="failureMessage")


class VCDMachine(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: str = MACHINE_KIND
    metadata: ObjectMeta
    spec: VCDMachineSpec
    status: VCDMachineStatus = Field(default_factory=VCDMachineStatus)

    def to_manifest(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)
