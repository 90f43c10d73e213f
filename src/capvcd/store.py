"""In-memory declarative object store.

Holds hub-version VCDCluster and VCDMachine objects plus the Secrets that
carry bootstrap data, with the semantics the reconcilers rely on:

- resourceVersion increments on every write; writes carrying a stale
  resourceVersion raise ConflictError (optimistic locking).
- generation increments only when the spec changes.
- Deleting an object with finalizers only sets deletionTimestamp; the object
  disappears once its last finalizer is removed.
- Every write is published to subscribers as a WatchEvent.

Manifests of any served API version are converted to the hub and defaulted
on the way in, and can be exported in any served version on the way out.
Objects handed out are deep copies; mutating them has no effect until they
are written back.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from . import conversion
from .defaulting import default_cluster, default_machine
from .errors import AlreadyExistsError, ConflictError, InvalidSpecError, NotFoundError
from .models import (
    CLUSTER_KIND,
    MACHINE_KIND,
    SECRET_KIND,
    HubObject,
    Secret,
    VCDCluster,
    VCDMachine,
)

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    ADDED = "Added"
    MODIFIED = "Modified"
    DELETED = "Deleted"


@dataclass(frozen=True)
class WatchEvent:
    """A change to a stored object.

    Attributes:
        type: What happened.
        kind: CLUSTER_KIND or MACHINE_KIND.
        key: Namespaced key of the object.
        obj: Copy of the object after the change (before removal for DELETED).
        generation_changed: True when the spec changed.
        status_only: True when only the status changed.
    """

    type: EventType
    kind: str
    key: str
    obj: HubObject
    generation_changed: bool = False
    status_only: bool = False


Listener = Callable[[WatchEvent], None]


def _key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


class ResourceStore:
    """Versioned, watchable storage for hub objects."""

    def __init__(self) -> None:
        self._objects: dict[str, dict[str, HubObject]] = {CLUSTER_KIND: {}, MACHINE_KIND: {}}
        self._secrets: dict[str, Secret] = {}
        self._listeners: list[Listener] = []
        self._revision = 0

    # =========================================================================
    # Watch
    # =========================================================================

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _publish(self, event: WatchEvent) -> None:
        for listener in self._listeners:
            listener(event)

    def _next_revision(self) -> str:
        self._revision += 1
        return str(self._revision)

    def _bucket(self, kind: str) -> dict[str, HubObject]:
        try:
            return self._objects[kind]
        except KeyError:
            raise ValueError(f"Unsupported kind: {kind}") from None

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, kind: str, namespace: str, name: str) -> HubObject | None:
        obj = self._bucket(kind).get(_key(namespace, name))
        return obj.model_copy(deep=True) if obj is not None else None

    def get_cluster(self, namespace: str, name: str) -> VCDCluster | None:
        return self.get(CLUSTER_KIND, namespace, name)  # type: ignore[return-value]

    def get_machine(self, namespace: str, name: str) -> VCDMachine | None:
        return self.get(MACHINE_KIND, namespace, name)  # type: ignore[return-value]

    def list_objects(self, kind: str, namespace: str | None = None) -> list[HubObject]:
        return [
            obj.model_copy(deep=True)
            for obj in self._bucket(kind).values()
            if namespace is None or obj.metadata.namespace == namespace
        ]

    def machines_for_cluster(self, namespace: str, cluster_name: str) -> list[VCDMachine]:
        return [
            m
            for m in self.list_objects(MACHINE_KIND, namespace)
            if isinstance(m, VCDMachine) and m.spec.cluster_name == cluster_name
        ]

    def get_secret(self, namespace: str, name: str) -> Secret | None:
        secret = self._secrets.get(_key(namespace, name))
        return secret.model_copy(deep=True) if secret is not None else None

    # =========================================================================
    # Writes
    # =========================================================================

    def create(self, obj: HubObject) -> HubObject:
        """Store a new object. Raises AlreadyExistsError if the key is taken."""
        bucket = self._bucket(obj.kind)
        key = obj.metadata.key
        if key in bucket:
            raise AlreadyExistsError(f"{obj.kind} {key} already exists")

        stored = obj.model_copy(deep=True)
        meta = stored.metadata
        meta.uid = meta.uid or str(uuid.uuid4())
        meta.generation = 1
        meta.resource_version = self._next_revision()
        meta.creation_timestamp = meta.creation_timestamp or datetime.now(UTC)
        meta.deletion_timestamp = None
        bucket[key] = stored

        logger.debug("Object created", extra={"kind": obj.kind, "key": key})
        self._publish(WatchEvent(EventType.ADDED, obj.kind, key, stored.model_copy(deep=True), True))
        return stored.model_copy(deep=True)

    def update(self, obj: HubObject) -> HubObject:
        """Write spec and metadata. Status is left untouched.

        Raises:
            NotFoundError: The object does not exist.
            ConflictError: obj carries a stale resourceVersion.
        """
        current = self._current(obj)
        spec_changed = current.spec.model_dump() != obj.spec.model_dump()

        stored = current.model_copy(deep=True)
        stored.spec = obj.spec.model_copy(deep=True)
        stored.metadata.labels = dict(obj.metadata.labels)
        stored.metadata.annotations = dict(obj.metadata.annotations)
        stored.metadata.finalizers = list(obj.metadata.finalizers)
        if spec_changed:
            stored.metadata.generation += 1
        if stored.model_dump() == current.model_dump():
            return current.model_copy(deep=True)
        return self._commit(stored, generation_changed=spec_changed)

    def update_status(self, obj: HubObject) -> HubObject:
        """Write status only. Writing an unchanged status is a no-op.

        Raises:
            NotFoundError: The object does not exist.
            ConflictError: obj carries a stale resourceVersion.
        """
        current = self._current(obj)
        if current.status.model_dump() == obj.status.model_dump():
            return current.model_copy(deep=True)
        stored = current.model_copy(deep=True)
        stored.status = obj.status.model_copy(deep=True)
        return self._commit(stored, status_only=True)

    def delete(self, kind: str, namespace: str, name: str) -> None:
        """Request deletion.

        Objects with finalizers get a deletionTimestamp and stay until the
        finalizers are removed. Objects without finalizers go immediately.
        """
        bucket = self._bucket(kind)
        key = _key(namespace, name)
        current = bucket.get(key)
        if current is None:
            raise NotFoundError(f"{kind} {key} not found")

        if not current.metadata.finalizers:
            del bucket[key]
            logger.debug("Object removed", extra={"kind": kind, "key": key})
            self._publish(WatchEvent(EventType.DELETED, kind, key, current.model_copy(deep=True)))
            return

        if current.metadata.deletion_timestamp is None:
            stored = current.model_copy(deep=True)
            stored.metadata.deletion_timestamp = datetime.now(UTC)
            self._commit(stored)

    def _current(self, obj: HubObject) -> HubObject:
        bucket = self._bucket(obj.kind)
        key = obj.metadata.key
        current = bucket.get(key)
        if current is None:
            raise NotFoundError(f"{obj.kind} {key} not found")
        if obj.metadata.resource_version and obj.metadata.resource_version != current.metadata.resource_version:
            raise ConflictError(
                f"{obj.kind} {key} was modified: resourceVersion "
                f"{obj.metadata.resource_version} != {current.metadata.resource_version}"
            )
        return current

    def _commit(
        self, stored: HubObject, *, generation_changed: bool = False, status_only: bool = False
    ) -> HubObject:
        bucket = self._bucket(stored.kind)
        key = stored.metadata.key

        # Last finalizer removed from an object being deleted
        if stored.metadata.deletion_timestamp is not None and not stored.metadata.finalizers:
            bucket.pop(key, None)
            logger.debug("Object finalized", extra={"kind": stored.kind, "key": key})
            self._publish(WatchEvent(EventType.DELETED, stored.kind, key, stored.model_copy(deep=True)))
            return stored.model_copy(deep=True)

        stored.metadata.resource_version = self._next_revision()
        bucket[key] = stored
        self._publish(
            WatchEvent(
                EventType.MODIFIED,
                stored.kind,
                key,
                stored.model_copy(deep=True),
                generation_changed=generation_changed,
                status_only=status_only,
            )
        )
        return stored.model_copy(deep=True)

    # =========================================================================
    # Secrets
    # =========================================================================

    def put_secret(self, secret: Secret) -> None:
        self._secrets[secret.metadata.key] = secret.model_copy(deep=True)

    def delete_secret(self, namespace: str, name: str) -> None:
        self._secrets.pop(_key(namespace, name), None)

    def list_secrets(self) -> list[Secret]:
        return [secret.model_copy(deep=True) for secret in self._secrets.values()]

    # =========================================================================
    # Manifests
    # =========================================================================

    def apply_manifest(self, manifest: dict[str, Any]) -> HubObject | Secret:
        """Create or update an object from a manifest in any served version.

        Finalizers and status already in the store are kept; the manifest
        supplies spec, labels and annotations. A machine keeps its providerID
        when the manifest leaves it out.

        Raises:
            InvalidSpecError: The manifest changes a providerID that is already set.
        """
        if manifest.get("kind") == SECRET_KIND:
            secret = Secret.model_validate(manifest)
            self.put_secret(secret)
            return secret

        obj = conversion.manifest_to_hub(manifest)
        if isinstance(obj, VCDCluster):
            default_cluster(obj)
        else:
            default_machine(obj)

        existing = self.get(obj.kind, obj.metadata.namespace, obj.metadata.name)
        if existing is None:
            return self.create(obj)

        self.check_immutable(obj)
        if isinstance(existing, VCDMachine) and isinstance(obj, VCDMachine):
            obj.spec.provider_id = obj.spec.provider_id or existing.spec.provider_id
        existing.spec = obj.spec
        existing.metadata.labels = dict(obj.metadata.labels)
        existing.metadata.annotations = {**existing.metadata.annotations, **obj.metadata.annotations}
        return self.update(existing)

    def check_immutable(self, obj: HubObject) -> None:
        """Reject a change to a field that may only be set once.

        Raises:
            InvalidSpecError: obj sets a providerID different from the stored one.
        """
        if not isinstance(obj, VCDMachine):
            return
        existing = self.get_machine(obj.metadata.namespace, obj.metadata.name)
        if existing is None or not existing.spec.provider_id or not obj.spec.provider_id:
            return
        if obj.spec.provider_id != existing.spec.provider_id:
            raise InvalidSpecError(
                f"VCDMachine {obj.metadata.key}: providerID is immutable "
                f"({existing.spec.provider_id} != {obj.spec.provider_id})",
                reason="ImmutableField",
            )

    def export(self, kind: str, namespace: str, name: str, api_version: str) -> dict[str, Any]:
        """Return the stored object as a manifest of the requested version."""
        obj = self.get(kind, namespace, name)
        if obj is None:
            raise NotFoundError(f"{kind} {_key(namespace, name)} not found")
        return conversion.from_hub(obj, api_version).to_manifest()  # type: ignore[attr-defined]
