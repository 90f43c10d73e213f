"""Manifest loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.

Manifests are multi-document YAML files holding VCDCluster and VCDMachine
objects of any served API version, plus Secrets carrying bootstrap data.
"""

from __future__ import annotations

import logging
from pathlib import Path
from dataclasses import dataclass
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES
from .conversion import ConversionError, manifest_to_hub
from .errors import InvalidSpecError
from .models import CLUSTER_KIND, MACHINE_KIND, SECRET_KIND, HubObject, Secret
from .store import ResourceStore

logger = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml")

# Secrets first so machines find their bootstrap data, clusters before machines
_APPLY_ORDER = {SECRET_KIND: 0, CLUSTER_KIND: 1, MACHINE_KIND: 2}


class ManifestLoadError(Exception):
    """Raised when manifest loading or validation fails."""

    pass


def read_manifest_file(path: Path) -> list[dict[str, Any]]:
    """Read every YAML document in a file.

    Raises:
        ManifestLoadError: If the file is missing, too large or not valid YAML.
    """
    if not path.exists():
        raise ManifestLoadError(f"Manifest file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ManifestLoadError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise ManifestLoadError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestLoadError(f"Failed to read manifest file {path}: {e}") from e

    try:
        documents = [doc for doc in yaml.safe_load_all(content) if doc is not None]
    except yaml.YAMLError as e:
        raise ManifestLoadError(f"Invalid YAML in {path}: {e}") from e

    for index, document in enumerate(documents):
        if not isinstance(document, dict):
            raise ManifestLoadError(f"Document {index} in {path} must be a YAML mapping")
        if "kind" not in document:
            raise ManifestLoadError(f"Document {index} in {path} has no kind")
    return documents


def load_manifests(directory: Path) -> list[dict[str, Any]]:
    """Read all manifest files in a directory, in file name order."""
    if not directory.is_dir():
        raise ManifestLoadError(f"Manifest directory not found: {directory}")

    manifests: list[dict[str, Any]] = []
    for path in sorted(directory.iterdir()):
        if path.suffix in MANIFEST_SUFFIXES and path.is_file():
            manifests.extend(read_manifest_file(path))
    logger.info(
        "Loaded manifests",
        extra={"directory": str(directory), "documents": len(manifests)},
    )
    return manifests


def validate_manifest(manifest: dict[str, Any]) -> HubObject | Secret:
    """Validate a manifest and return its hub (or Secret) representation.

    Raises:
        ManifestLoadError: If the manifest is not a valid object of a served version.
    """
    if manifest.get("kind") == SECRET_KIND:
        try:
            return Secret.model_validate(manifest)
        except ValidationError as e:
            raise ManifestLoadError(f"Invalid Secret: {_format_errors(e)}") from e
    try:
        return manifest_to_hub(manifest)
    except ConversionError as e:
        raise ManifestLoadError(str(e)) from e


def load_into_store(store: ResourceStore, directory: Path) -> int:
    """Apply every manifest in directory to the store. Returns the count applied.

    Everything is validated before anything is applied, so one bad document
    leaves the store untouched.
    """
    manifests = load_manifests(directory)
    _apply_all(store, manifests)
    return len(manifests)


@dataclass
class SyncResult:
    """Outcome of syncing the store with a manifest directory."""

    applied: int = 0
    deleted: int = 0


def sync_store(store: ResourceStore, directory: Path) -> SyncResult:
    """Make the store match the manifest directory.

    Every document is applied, then objects whose documents are gone get a
    deletion request (and go through their normal teardown). Objects already
    being deleted are left alone.

    Raises:
        ManifestLoadError: If any document is invalid. Nothing is applied or
            deleted in that case.
    """
    manifests = load_manifests(directory)
    objects = _apply_all(store, manifests)
    present = {(obj.kind, obj.metadata.key) for obj in objects}
    result = SyncResult(applied=len(objects))

    for kind in (MACHINE_KIND, CLUSTER_KIND):
        for stored in store.list_objects(kind):
            if (kind, stored.metadata.key) in present or stored.metadata.deletion_timestamp is not None:
                continue
            store.delete(kind, stored.metadata.namespace, stored.metadata.name)
            result.deleted += 1
            logger.info(
                "Manifest removed, deleting object",
                extra={"kind": kind, "key": stored.metadata.key},
            )

    for secret in store.list_secrets():
        if (SECRET_KIND, secret.metadata.key) not in present:
            store.delete_secret(secret.metadata.namespace, secret.metadata.name)
            result.deleted += 1
    return result


def _apply_all(store: ResourceStore, manifests: list[dict[str, Any]]) -> list[HubObject | Secret]:
    # Validate everything first so one bad document leaves the store untouched
    for manifest in manifests:
        obj = validate_manifest(manifest)
        if not isinstance(obj, Secret):
            try:
                store.check_immutable(obj)
            except InvalidSpecError as e:
                raise ManifestLoadError(str(e)) from e

    ordered = sorted(manifests, key=lambda m: _APPLY_ORDER.get(m.get("kind", ""), len(_APPLY_ORDER)))
    return [store.apply_manifest(manifest) for manifest in ordered]


def dump_manifests(manifests: list[dict[str, Any]]) -> str:
    """Serialize manifests as a multi-document YAML string."""
    return yaml.safe_dump_all(manifests, sort_keys=False, default_flow_style=False)


def _format_errors(error: ValidationError) -> str:
    # Format Pydantic validation errors for readability
    parts = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        parts.append(f"{loc}: {item['msg']}")
    return "; ".join(parts)
