"""Pytest configuration and fixtures."""

import sys
from pathlib import Path
from typing import Any

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for vcd_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from vcd_mock import MockPlatform  # noqa: E402

from capvcd.adapter import TaskPollingAdapter  # noqa: E402
from capvcd.config import Config  # noqa: E402
from capvcd.models import HUB_API_VERSION  # noqa: E402
from capvcd.store import ResourceStore  # noqa: E402

TEST_ORG = "tenant1"
TEST_VDC = "ovdc1"
TEST_GATEWAY = "edge1"


def make_config(**overrides: Any) -> Config:
    """Config with timings shrunk so tests finish in milliseconds."""
    values: dict[str, Any] = {
        "vcd_endpoint": "https://vcd.example.com",
        "vcd_org": TEST_ORG,
        "reconcile_timeout_seconds": 5.0,
        "backoff_floor_seconds": 0.01,
        "backoff_ceiling_seconds": 0.1,
        "task_poll_interval_min_seconds": 0.001,
        "task_poll_interval_max_seconds": 0.005,
        "task_poll_timeout_seconds": 0.05,
        "provisioning_timeout_seconds": 60.0,
    }
    values.update(overrides)
    return Config(**values)


def cluster_manifest(name: str = "c1", namespace: str = "default", **spec: Any) -> dict[str, Any]:
    body: dict[str, Any] = {"org": TEST_ORG, "ovdc": TEST_VDC, "gateway": TEST_GATEWAY}
    body.update(spec)
    return {
        "apiVersion": HUB_API_VERSION,
        "kind": "VCDCluster",
        "metadata": {"name": name, "namespace": namespace},
        "spec": body,
    }


def machine_manifest(
    name: str = "m1",
    namespace: str = "default",
    *,
    cluster: str = "c1",
    control_plane: bool = False,
    secret: str | None = "m1-bootstrap",
    **spec: Any,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "clusterName": cluster,
        "catalog": "cat1",
        "template": "ubuntu-2204-kube-v1.29",
    }
    if secret is not None:
        body["bootstrap"] = {"dataSecretName": secret}
    body.update(spec)
    labels = {"cluster.x-k8s.io/control-plane": ""} if control_plane else {}
    return {
        "apiVersion": HUB_API_VERSION,
        "kind": "VCDMachine",
        "metadata": {"name": name, "namespace": namespace, "labels": labels},
        "spec": body,
    }


def secret_manifest(
    name: str = "m1-bootstrap", namespace: str = "default", value: str = "#cloud-config\n"
) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": name, "namespace": namespace},
        "stringData": {"value": value},
    }


@pytest.fixture
def config() -> Config:
    return make_config()


@pytest.fixture
def platform() -> MockPlatform:
    """Platform seeded with the tenant's VDC and edge gateway."""
    mock = MockPlatform()
    vdc = mock.add_vdc(TEST_VDC)
    mock.add_gateway(TEST_GATEWAY, vdc_id=vdc.id)
    return mock


@pytest.fixture
def adapter(platform: MockPlatform, config: Config) -> TaskPollingAdapter:
    return TaskPollingAdapter(platform, config, retry_backoff_base_seconds=0.001)


@pytest.fixture
def store() -> ResourceStore:
    return ResourceStore()
