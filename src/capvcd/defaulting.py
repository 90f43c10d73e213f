"""Defaulting applied at the store boundary on create and update.

Only fills and normalises values; rejecting objects is the job of the
pydantic validators in models.py.
"""

from __future__ import annotations

from .models import DEFAULT_API_SERVER_PORT, VCDCluster, VCDMachine


def _blank_to_none(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value


def default_cluster(cluster: VCDCluster) -> VCDCluster:
    """Apply defaults to a VCDCluster in place and return it."""
    spec = cluster.spec
    spec.ovdc_network = _blank_to_none(spec.ovdc_network)
    spec.load_balancer_config.vip_subnet = _blank_to_none(spec.load_balancer_config.vip_subnet)

    endpoint = spec.control_plane_endpoint
    if endpoint is not None:
        if endpoint.is_zero():
            spec.control_plane_endpoint = None
        elif endpoint.port == 0:
            endpoint.port = DEFAULT_API_SERVER_PORT
    return cluster


def default_machine(machine: VCDMachine) -> VCDMachine:
    """Apply defaults to a VCDMachine in place and return it."""
    spec = machine.spec
    spec.sizing_policy = _blank_to_none(spec.sizing_policy)
    spec.placement_policy = _blank_to_none(spec.placement_policy)
    spec.storage_profile = _blank_to_none(spec.storage_profile)
    spec.provider_id = _blank_to_none(spec.provider_id)
    spec.bootstrap.data_secret_name = _blank_to_none(spec.bootstrap.data_secret_name)
    return machine
