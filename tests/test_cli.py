"""Tests for the capvcd command line."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner
from conftest import cluster_manifest, machine_manifest, secret_manifest

from capvcd import models_v1beta1 as v1beta1
from capvcd.cli import cli
from capvcd.conversion import HUB_DATA_ANNOTATION
from capvcd.models import HUB_API_VERSION


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


class TestValidate:
    def test_valid_directory(self, runner: CliRunner, tmp_path: Path) -> None:
        (tmp_path / "c.yaml").write_text(
            yaml.safe_dump_all([cluster_manifest(), machine_manifest(), secret_manifest()])
        )

        result = runner.invoke(cli, ["validate", str(tmp_path)])

        assert result.exit_code == 0, result.output
        assert "VCDCluster/c1" in result.output
        assert "3 manifests valid" in result.output

    def test_invalid_manifest_fails(self, runner: CliRunner, tmp_path: Path) -> None:
        (tmp_path / "c.yaml").write_text(
            yaml.safe_dump_all([cluster_manifest(), cluster_manifest("c2", networkCidr="bad")])
        )

        result = runner.invoke(cli, ["validate", str(tmp_path)])

        assert result.exit_code == 1
        assert "VCDCluster/c2" in result.output
        assert "1 of 2 manifests are invalid" in result.output

    def test_unreadable_yaml(self, runner: CliRunner, tmp_path: Path) -> None:
        (tmp_path / "c.yaml").write_text("kind: [oops\n")

        result = runner.invoke(cli, ["validate", str(tmp_path)])

        assert result.exit_code == 1
        assert "Invalid YAML" in result.output


class TestConvert:
    def test_hub_to_spoke(self, runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "c.yaml"
        path.write_text(
            yaml.safe_dump_all(
                [
                    cluster_manifest(loadBalancerConfigSpec={"vipSubnet": "192.168.100.0/24"}),
                    secret_manifest(),
                ]
            )
        )

        result = runner.invoke(cli, ["convert", str(path), "--to", v1beta1.API_VERSION])

        assert result.exit_code == 0, result.output
        cluster, secret = list(yaml.safe_load_all(result.output))
        assert cluster["apiVersion"] == v1beta1.API_VERSION
        assert HUB_DATA_ANNOTATION in cluster["metadata"]["annotations"]
        assert secret == secret_manifest()

    def test_spoke_to_hub(self, runner: CliRunner, tmp_path: Path) -> None:
        manifest = machine_manifest()
        manifest["apiVersion"] = v1beta1.API_VERSION
        manifest["spec"]["computePolicy"] = "small"
        path = tmp_path / "m.yaml"
        path.write_text(yaml.safe_dump(manifest))

        result = runner.invoke(cli, ["convert", str(path), "--to", HUB_API_VERSION])

        assert result.exit_code == 0, result.output
        converted = yaml.safe_load(result.output)
        assert converted["apiVersion"] == HUB_API_VERSION
        assert converted["spec"]["sizingPolicy"] == "small"

    def test_unsupported_target_rejected(self, runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "c.yaml"
        path.write_text(yaml.safe_dump(cluster_manifest()))

        result = runner.invoke(cli, ["convert", str(path), "--to", "infrastructure.cluster.x-k8s.io/v1alpha4"])

        assert result.exit_code == 2

    def test_invalid_document(self, runner: CliRunner, tmp_path: Path) -> None:
        manifest = cluster_manifest()
        manifest["apiVersion"] = "infrastructure.cluster.x-k8s.io/v1alpha4"
        path = tmp_path / "c.yaml"
        path.write_text(yaml.safe_dump(manifest))

        result = runner.invoke(cli, ["convert", str(path), "--to", HUB_API_VERSION])

        assert result.exit_code == 1
        assert "Unsupported apiVersion" in result.output


def test_version(runner: CliRunner) -> None:
    result = runner.invoke(cli, ["--version"])

    assert result.exit_code == 0
    assert "0.1.0" in result.output
