"""Tests for Pydantic models and defaulting."""

from __future__ import annotations

import base64

import pytest
from pydantic import ValidationError

from capvcd.defaulting import default_cluster, default_machine
from capvcd.models import (
    CONTROL_PLANE_LABEL,
    DEFAULT_API_SERVER_PORT,
    DEFAULT_NETWORK_CIDR,
    ObjectMeta,
    Secret,
    VCDCluster,
    VCDMachine,
    vm_id_from_provider_id,
)


def cluster(**spec: object) -> VCDCluster:
    body = {"org": "tenant1", "ovdc": "ovdc1", "gateway": "edge1"}
    body.update(spec)  # type: ignore[arg-type]
    return VCDCluster.model_validate({"metadata": {"name": "c1"}, "spec": body})


def machine(**spec: object) -> VCDMachine:
    body = {"clusterName": "c1", "catalog": "cat1", "template": "ubuntu"}
    body.update(spec)  # type: ignore[arg-type]
    return VCDMachine.model_validate({"metadata": {"name": "m1"}, "spec": body})


class TestObjectMeta:
    def test_key(self) -> None:
        meta = ObjectMeta(name="c1", namespace="team-a")
        assert meta.key == "team-a/c1"

    def test_finalizers(self) -> None:
        meta = ObjectMeta(name="c1")

        assert meta.add_finalizer("f") is True
        assert meta.add_finalizer("f") is False
        assert meta.has_finalizer("f")
        assert meta.remove_finalizer("f") is True
        assert meta.remove_finalizer("f") is False

    def test_name_required(self) -> None:
        with pytest.raises(ValidationError):
            ObjectMeta(name="")


class TestVCDCluster:
    def test_defaults(self) -> None:
        obj = cluster()

        assert obj.spec.network_cidr == DEFAULT_NETWORK_CIDR
        assert obj.spec.ovdc_network is None
        assert obj.status.phase.value == "Pending"
        assert obj.owner_marker == "VCDCluster/default/c1"

    def test_invalid_network_cidr(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            cluster(networkCidr="10.0.0.1")

        assert "CIDR" in str(exc_info.value)

    def test_invalid_dns_server(self) -> None:
        with pytest.raises(ValidationError):
            cluster(dnsServers=["not-an-ip"])

    def test_invalid_vip_subnet(self) -> None:
        with pytest.raises(ValidationError):
            cluster(loadBalancerConfigSpec={"vipSubnet": "garbage"})

    def test_missing_gateway(self) -> None:
        with pytest.raises(ValidationError):
            VCDCluster.model_validate(
                {"metadata": {"name": "c1"}, "spec": {"org": "tenant1", "ovdc": "ovdc1"}}
            )

    def test_manifest_uses_aliases(self) -> None:
        manifest = cluster(ovdcNetwork="net1").to_manifest()

        assert manifest["spec"]["ovdcNetwork"] == "net1"
        assert "loadBalancerConfigSpec" in manifest["spec"]


class TestVCDMachine:
    def test_control_plane_label(self) -> None:
        obj = VCDMachine.model_validate(
            {
                "metadata": {"name": "m1", "labels": {CONTROL_PLANE_LABEL: ""}},
                "spec": {"clusterName": "c1", "catalog": "cat1", "template": "ubuntu"},
            }
        )
        assert obj.is_control_plane

    def test_provider_id_prefix_enforced(self) -> None:
        with pytest.raises(ValidationError):
            machine(providerID="aws:///i-123")

    def test_empty_provider_id_is_none(self) -> None:
        assert machine(providerID="").spec.provider_id is None

    def test_disk_size_positive(self) -> None:
        with pytest.raises(ValidationError):
            machine(diskSizeMb=0)

    def test_vm_id_from_provider_id(self) -> None:
        assert vm_id_from_provider_id("vmware-cloud-director://urn:vcloud:vm:1") == "urn:vcloud:vm:1"
        assert vm_id_from_provider_id(None) is None
        assert vm_id_from_provider_id("aws:///i-1") is None


class TestSecret:
    def test_string_data_preferred(self) -> None:
        secret = Secret.model_validate(
            {
                "metadata": {"name": "s"},
                "data": {"value": base64.b64encode(b"from-data").decode()},
                "stringData": {"value": "from-string-data"},
            }
        )
        assert secret.value() == b"from-string-data"

    def test_base64_data(self) -> None:
        secret = Secret.model_validate(
            {"metadata": {"name": "s"}, "data": {"value": base64.b64encode(b"#cloud-config").decode()}}
        )
        assert secret.value() == b"#cloud-config"

    def test_missing_key(self) -> None:
        secret = Secret.model_validate({"metadata": {"name": "s"}})
        assert secret.value() is None


class TestDefaulting:
    def test_blank_strings_become_none(self) -> None:
        obj = default_cluster(cluster(ovdcNetwork="  ", loadBalancerConfigSpec={"vipSubnet": None}))

        assert obj.spec.ovdc_network is None
        assert obj.spec.load_balancer_config.vip_subnet is None

    def test_zero_endpoint_dropped(self) -> None:
        obj = default_cluster(cluster(controlPlaneEndpoint={"host": "", "port": 0}))

        assert obj.spec.control_plane_endpoint is None

    def test_endpoint_port_defaulted(self) -> None:
        obj = default_cluster(cluster(controlPlaneEndpoint={"host": "192.168.1.10", "port": 0}))

        assert obj.spec.control_plane_endpoint is not None
        assert obj.spec.control_plane_endpoint.port == DEFAULT_API_SERVER_PORT

    def test_machine_blank_policies(self) -> None:
        obj = default_machine(
            machine(sizingPolicy="", storageProfile=" ", bootstrap={"dataSecretName": ""})
        )

        assert obj.spec.sizing_policy is None
        assert obj.spec.storage_profile is None
        assert obj.spec.bootstrap.data_secret_name is None

    def test_defaulting_is_idempotent(self) -> None:
        obj = default_cluster(cluster(controlPlaneEndpoint={"host": "192.168.1.10", "port": 0}))
        again = default_cluster(obj.model_copy(deep=True))

        assert again == obj
