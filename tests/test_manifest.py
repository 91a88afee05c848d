"""Tests for ClusterRequest manifest loading."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from vpc_operator.manifest import ManifestLoadError, load_manifest

VALID_MANIFEST = {
    "apiVersion": "infrastructure.cluster.x-k8s.io/v1alpha3",
    "kind": "VPCCluster",
    "metadata": {
        "name": "c1",
        "namespace": "demo",
        "ownerReferences": [
            {"apiVersion": "cluster.x-k8s.io/v1alpha3", "kind": "Cluster", "name": "c1"}
        ],
    },
    "spec": {"region": "us-south", "zone": "us-south-1", "resourceGroup": "rg-123"},
}


def write_manifest(tmp_path: Path, content: object) -> Path:
    path = tmp_path / "cluster.yaml"
    path.write_text(yaml.safe_dump(content) if not isinstance(content, str) else content)
    return path


class TestLoadManifest:
    def test_valid_manifest(self, tmp_path: Path) -> None:
        cr = load_manifest(write_manifest(tmp_path, VALID_MANIFEST))

        assert str(cr.key) == "demo/c1"
        assert cr.spec.zone == "us-south-1"
        assert cr.spec.resource_group == "rg-123"

    def test_kind_defaults(self, tmp_path: Path) -> None:
        manifest = {k: v for k, v in VALID_MANIFEST.items() if k != "kind"}

        assert load_manifest(write_manifest(tmp_path, manifest)).kind == "VPCCluster"

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ManifestLoadError, match="not found"):
            load_manifest(tmp_path / "absent.yaml")

    def test_wrong_kind(self, tmp_path: Path) -> None:
        with pytest.raises(ManifestLoadError, match="Expected kind VPCCluster"):
            load_manifest(write_manifest(tmp_path, {**VALID_MANIFEST, "kind": "Cluster"}))

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        with pytest.raises(ManifestLoadError, match="Invalid YAML"):
            load_manifest(write_manifest(tmp_path, "metadata: [unclosed"))

    def test_not_a_mapping(self, tmp_path: Path) -> None:
        with pytest.raises(ManifestLoadError, match="YAML mapping"):
            load_manifest(write_manifest(tmp_path, "- a\n- b\n"))

    def test_validation_errors_are_listed(self, tmp_path: Path) -> None:
        manifest = {
            **VALID_MANIFEST,
            "status": {"subnet": {"id": "subnet-1", "name": "s", "zone": "us-south-1", "ipv4CidrBlock": "bad"}},
        }

        with pytest.raises(ManifestLoadError) as exc_info:
            load_manifest(write_manifest(tmp_path, manifest))

        message = str(exc_info.value)
        assert "Validation failed" in message
        assert "status.subnet.ipv4CidrBlock" in message

    def test_missing_name(self, tmp_path: Path) -> None:
        with pytest.raises(ManifestLoadError, match="metadata.name"):
            load_manifest(write_manifest(tmp_path, {"kind": "VPCCluster", "metadata": {}}))

    def test_size_limit(self, tmp_path: Path) -> None:
        path = write_manifest(tmp_path, VALID_MANIFEST)

        with patch("vpc_operator.manifest.MAX_MANIFEST_FILE_SIZE_BYTES", 10):
            with pytest.raises(ManifestLoadError, match="exceeds maximum size"):
                load_manifest(path)
