"""Lossless conversion between API versions through the v1beta2 hub.

Every non-hub version implements to_hub/from_hub. Fields a version cannot
express are carried in opaque annotations so round trips never drop data:

- HUB_DATA_ANNOTATION on a spoke object holds hub-only fields.
- "<HUB_DATA_ANNOTATION>-<version>" on the hub object holds fields only
  that spoke version knows about.

Both annotations are consumed on the return trip, so for any valid spoke
value S: from_hub(to_hub(S)) == S, and for any hub value H:
to_hub(from_hub(H)) == H. Conversion never contacts the platform.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ValidationError

from . import models_v1beta1 as v1beta1
from .models import (
    CLUSTER_KIND,
    HUB_API_VERSION,
    MACHINE_KIND,
    HubObject,
    LoadBalancerConfig,
    ObjectMeta,
    VCDCluster,
    VCDClusterSpec,
    VCDClusterStatus,
    VCDMachine,
    VCDMachineSpec,
    VCDMachineStatus,
)

HUB_DATA_ANNOTATION = "capvcd.io/conversion-data"


class ConversionError(Exception):
    """Raised when a manifest cannot be converted."""

    pass


def spoke_data_annotation(version: str) -> str:
    """Annotation on the hub object holding fields only `version` knows."""
    return f"{HUB_DATA_ANNOTATION}-{version}"


def _encode(data: dict[str, Any]) -> str:
    # Canonical form so repeated conversions produce identical annotations
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def _pop_data(annotations: dict[str, str], key: str) -> dict[str, Any]:
    raw = annotations.pop(key, None)
    if raw is None:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConversionError(f"Annotation {key} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConversionError(f"Annotation {key} must hold a JSON object")
    return data


def _split_metadata(meta: ObjectMeta, consume: str) -> tuple[ObjectMeta, dict[str, Any]]:
    """Copy metadata, removing and decoding the side-channel annotation."""
    copied = meta.model_copy(deep=True)
    data = _pop_data(copied.annotations, consume)
    return copied, data


def _stash(meta: ObjectMeta, key: str, data: dict[str, Any]) -> None:
    pruned = {section: fields for section, fields in data.items() if fields}
    if pruned:
        meta.annotations[key] = _encode(pruned)


def _copy_list(items: list[BaseModel]) -> list[Any]:
    return [item.model_copy(deep=True) for item in items]


# =============================================================================
# v1beta1 <-> hub
# =============================================================================


def cluster_v1beta1_to_hub(src: v1beta1.VCDCluster) -> VCDCluster:
    metadata, hub_data = _split_metadata(src.metadata, HUB_DATA_ANNOTATION)
    hub_spec = hub_data.get("spec", {})
    hub_status = hub_data.get("status", {})

    spec = VCDClusterSpec(
        org=src.spec.org,
        ovdc=src.spec.ovdc,
        gateway=src.spec.gateway,
        ovdc_network=src.spec.ovdc_network,
        network_cidr=src.spec.network_cidr,
        dns_servers=hub_spec.get("dnsServers", []),
        control_plane_endpoint=(
            src.spec.control_plane_endpoint.model_copy()
            if src.spec.control_plane_endpoint
            else None
        ),
        load_balancer_config=LoadBalancerConfig(
            use_one_arm=src.spec.load_balancer.use_one_arm,
            vip_subnet=hub_spec.get("vipSubnet"),
        ),
    )
    status = VCDClusterStatus(
        phase=src.status.phase,
        ready=src.status.ready,
        conditions=_copy_list(src.status.conditions),
        observed_generation=hub_status.get("observedGeneration", 0),
        gateway_id=src.status.gateway_id,
        network_id=src.status.network_id,
        vapp_id=src.status.vapp_id,
        load_balancer_pool_id=hub_status.get("loadBalancerPoolId"),
        virtual_service_id=hub_status.get("virtualServiceId"),
        control_plane_endpoint=(
            src.status.control_plane_endpoint.model_copy()
            if src.status.control_plane_endpoint
            else None
        ),
        failure_reason=src.status.failure_reason,
        failure_message=src.status.failure_message,
    )

    spoke_spec: dict[str, Any] = {}
    if src.spec.default_storage_class_options is not None:
        spoke_spec["defaultStorageClassOptions"] = (
            src.spec.default_storage_class_options.model_dump(by_alias=True, mode="json")
        )
    _stash(metadata, spoke_data_annotation(v1beta1.VERSION), {"spec": spoke_spec})

    return VCDCluster(metadata=metadata, spec=spec, status=status)


def cluster_hub_to_v1beta1(src: VCDCluster) -> v1beta1.VCDCluster:
    metadata, spoke_data = _split_metadata(
        src.metadata, spoke_data_annotation(v1beta1.VERSION)
    )
    spoke_spec = spoke_data.get("spec", {})

    storage_options = None
    if "defaultStorageClassOptions" in spoke_spec:
        storage_options = v1beta1.DefaultStorageClassOptions.model_validate(
            spoke_spec["defaultStorageClassOptions"]
        )

    spec = v1beta1.VCDClusterSpec(
        org=src.spec.org,
        ovdc=src.spec.ovdc,
        gateway=src.spec.gateway,
        ovdc_network=src.spec.ovdc_network,
        network_cidr=src.spec.network_cidr,
        control_plane_endpoint=(
            src.spec.control_plane_endpoint.model_copy()
            if src.spec.control_plane_endpoint
            else None
        ),
        load_balancer=v1beta1.LoadBalancer(
            use_one_arm=src.spec.load_balancer_config.use_one_arm
        ),
        default_storage_class_options=storage_options,
    )
    status = v1beta1.VCDClusterStatus(
        phase=src.status.phase,
        ready=src.status.ready,
        conditions=_copy_list(src.status.conditions),
        gateway_id=src.status.gateway_id,
        network_id=src.status.network_id,
        vapp_id=src.status.vapp_id,
        control_plane_endpoint=(
            src.status.control_plane_endpoint.model_copy()
            if src.status.control_plane_endpoint
            else None
        ),
        failure_reason=src.status.failure_reason,
        failure_message=src.status.failure_message,
    )

    hub_spec: dict[str, Any] = {}
    if src.spec.dns_servers:
        hub_spec["dnsServers"] = list(src.spec.dns_servers)
    if src.spec.load_balancer_config.vip_subnet is not None:
        hub_spec["vipSubnet"] = src.spec.load_balancer_config.vip_subnet
    hub_status: dict[str, Any] = {}
    if src.status.observed_generation:
        hub_status["observedGeneration"] = src.status.observed_generation
    if src.status.load_balancer_pool_id is not None:
        hub_status["loadBalancerPoolId"] = src.status.load_balancer_pool_id
    if src.status.virtual_service_id is not None:
        hub_status["virtualServiceId"] = src.status.virtual_service_id
    _stash(metadata, HUB_DATA_ANNOTATION, {"spec": hub_spec, "status": hub_status})

    return v1beta1.VCDCluster(metadata=metadata, spec=spec, status=status)


def machine_v1beta1_to_hub(src: v1beta1.VCDMachine) -> VCDMachine:
    metadata, hub_data = _split_metadata(src.metadata, HUB_DATA_ANNOTATION)
    hub_spec = hub_data.get("spec", {})
    hub_status = hub_data.get("status", {})

    spec = VCDMachineSpec(
        cluster_name=src.spec.cluster_name,
        provider_id=src.spec.provider_id,
        catalog=src.spec.catalog,
        template=src.spec.template,
        sizing_policy=src.spec.compute_policy,
        placement_policy=hub_spec.get("placementPolicy"),
        storage_profile=hub_spec.get("storageProfile"),
        disk_size_mb=hub_spec.get("diskSizeMb"),
        bootstrap=src.spec.bootstrap.model_copy(),
    )
    status = VCDMachineStatus(
        phase=src.status.phase,
        ready=src.status.ready,
        addresses=_copy_list(src.status.addresses),
        conditions=_copy_list(src.status.conditions),
        observed_generation=hub_status.get("observedGeneration", 0),
        failure_reason=src.status.failure_reason,
        failure_message=src.status.failure_message,
    )

    spoke_spec: dict[str, Any] = {}
    if src.spec.enable_nvidia_gpu:
        spoke_spec["enableNvidiaGPU"] = True
    _stash(metadata, spoke_data_annotation(v1beta1.VERSION), {"spec": spoke_spec})

    return VCDMachine(metadata=metadata, spec=spec, status=status)


def machine_hub_to_v1beta1(src: VCDMachine) -> v1beta1.VCDMachine:
    metadata, spoke_data = _split_metadata(
        src.metadata, spoke_data_annotation(v1beta1.VERSION)
    )
    spoke_spec = spoke_data.get("spec", {})

    spec = v1beta1.VCDMachineSpec(
        cluster_name=src.spec.cluster_name,
        provider_id=src.spec.provider_id,
        catalog=src.spec.catalog,
        template=src.spec.template,
        compute_policy=src.spec.sizing_policy,
        enable_nvidia_gpu=bool(spoke_spec.get("enableNvidiaGPU", False)),
        bootstrap=src.spec.bootstrap.model_copy(),
    )
    status = v1beta1.VCDMachineStatus(
        phase=src.status.phase,
        ready=src.status.ready,
        addresses=_copy_list(src.status.addresses),
        conditions=_copy_list(src.status.conditions),
        failure_reason=src.status.failure_reason,
        failure_message=src.status.failure_message,
    )

    hub_spec: dict[str, Any] = {}
    for field_name, alias in (
        ("placement_policy", "placementPolicy"),
        ("storage_profile", "storageProfile"),
        ("disk_size_mb", "diskSizeMb"),
    ):
        value = getattr(src.spec, field_name)
        if value is not None:
            hub_spec[alias] = value
    hub_status: dict[str, Any] = {}
    if src.status.observed_generation:
        hub_status["observedGeneration"] = src.status.observed_generation
    _stash(metadata, HUB_DATA_ANNOTATION, {"spec": hub_spec, "status": hub_status})

    return v1beta1.VCDMachine(metadata=metadata, spec=spec, status=status)


# =============================================================================
# Registry
# =============================================================================


# (apiVersion, kind) -> (model class, to_hub, from_hub)
_SPOKES: dict[tuple[str, str], tuple[type[BaseModel], Callable[..., Any], Callable[..., Any]]] = {
    (v1beta1.API_VERSION, CLUSTER_KIND): (
        v1beta1.VCDCluster,
        cluster_v1beta1_to_hub,
        cluster_hub_to_v1beta1,
    ),
    (v1beta1.API_VERSION, MACHINE_KIND): (
        v1beta1.VCDMachine,
        machine_v1beta1_to_hub,
        machine_hub_to_v1beta1,
    ),
}

_HUB_MODELS: dict[str, type[VCDCluster] | type[VCDMachine]] = {
    CLUSTER_KIND: VCDCluster,
    MACHINE_KIND: VCDMachine,
}

SUPPORTED_API_VERSIONS: tuple[str, ...] = (HUB_API_VERSION, v1beta1.API_VERSION)


def parse(manifest: dict[str, Any]) -> BaseModel:
    """Validate a manifest into the model of its own apiVersion and kind."""
    api_version = manifest.get("apiVersion")
    kind = manifest.get("kind")
    if not isinstance(kind, str) or kind not in _HUB_MODELS:
        raise ConversionError(f"Unsupported kind: {kind}")

    if api_version == HUB_API_VERSION:
        model_cls: type[BaseModel] = _HUB_MODELS[kind]
    elif (api_version, kind) in _SPOKES:
        model_cls = _SPOKES[(api_version, kind)][0]
    else:
        raise ConversionError(
            f"Unsupported apiVersion {api_version} for {kind}. "
            f"Supported: {list(SUPPORTED_API_VERSIONS)}"
        )

    try:
        return model_cls.model_validate(manifest)
    except ValidationError as e:
        raise ConversionError(f"Invalid {kind} {api_version}: {e}") from e


def to_hub(obj: BaseModel) -> HubObject:
    """Convert a parsed object of any supported version to the hub."""
    if isinstance(obj, (VCDCluster, VCDMachine)):
        return obj.model_copy(deep=True)
    key = (getattr(obj, "api_version", None), getattr(obj, "kind", None))
    if key not in _SPOKES:
        raise ConversionError(f"No conversion registered for {key}")
    return _SPOKES[key][1](obj)


def from_hub(obj: HubObject, api_version: str) -> BaseModel:
    """Convert a hub object to the requested version."""
    if api_version == HUB_API_VERSION:
        return obj.model_copy(deep=True)
    key = (api_version, obj.kind)
    if key not in _SPOKES:
        raise ConversionError(f"No conversion registered for {key}")
    return _SPOKES[key][2](obj)


def manifest_to_hub(manifest: dict[str, Any]) -> HubObject:
    """Parse a manifest of any supported version straight into the hub."""
    return to_hub(parse(manifest))


def convert(manifest: dict[str, Any], api_version: str) -> dict[str, Any]:
    """Convert a manifest dict to another supported apiVersion.

    Args:
        manifest: Source manifest (any supported apiVersion).
        api_version: Target apiVersion.

    Returns:
        The converted manifest, serialized with camelCase keys.

    Raises:
        ConversionError: If either version or the kind is unsupported, or the
            manifest does not validate.
    """
    if api_version not in SUPPORTED_API_VERSIONS:
        raise ConversionError(
            f"Unsupported target apiVersion {api_version}. "
            f"Supported: {list(SUPPORTED_API_VERSIONS)}"
        )
    hub = manifest_to_hub(manifest)
    converted = from_hub(hub, api_version)
    return converted.model_dump(by_alias=True, mode="json", exclude_none=True)
