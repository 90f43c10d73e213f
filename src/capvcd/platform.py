"""Contract of the external virtualization platform.

The reconcilers never talk to the platform directly. The task-polling
adapter (adapter.py) drives any implementation of the Platform protocol:
the httpx client in vcd_client.py in production, an in-memory fake in
tests.

Every mutating call returns a TaskHandle. Errors are raised using the
taxonomy in errors.py.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from .tasks import TaskHandle

OWNER_PREFIX = "capvcd owner="


class ResourceKind(str, Enum):
    """External resource kinds the provider reads or manages."""

    VDC = "vdc"
    GATEWAY = "gateway"
    NETWORK = "network"
    VAPP = "vapp"
    VM = "vm"
    LB_POOL = "lbPool"
    VIRTUAL_SERVICE = "virtualService"


class ResourceState(str, Enum):
    """Coarse lifecycle state of an external resource."""

    READY = "ready"
    BUSY = "busy"  # an operation is still running on it
    FAILED = "failed"  # the platform gave up realizing it


class PowerState(str, Enum):
    POWERED_ON = "poweredOn"
    POWERED_OFF = "poweredOff"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ExternalResource:
    """Observed snapshot of an external resource.

    Attributes:
        kind: Resource kind.
        id: Platform-generated identifier (URN).
        name: Resource name (deterministic for resources we create).
        parent_id: ID of the containing resource (VDC, vApp, gateway).
        owner: Owner marker stamped at creation, None for foreign resources.
        state: Coarse lifecycle state.
        busy_task: Task currently running on the resource, if any.
        message: Platform message when state is FAILED.
        power_state: VMs only.
        ip_addresses: VMs: assigned addresses. Virtual services: the VIP.
        guest_properties: VMs only: guestinfo key/values.
        members: Load balancer pools only: member addresses.
    """

    kind: ResourceKind
    id: str
    name: str
    parent_id: str | None = None
    owner: str | None = None
    state: ResourceState = ResourceState.READY
    busy_task: TaskHandle | None = None
    message: str = ""
    power_state: PowerState = PowerState.UNKNOWN
    ip_addresses: tuple[str, ...] = ()
    guest_properties: Mapping[str, str] = field(default_factory=dict)
    members: tuple[str, ...] = ()


def owner_description(owner: str) -> str:
    """Description text carrying the owner marker."""
    return f"{OWNER_PREFIX}{owner}"


def owner_from_description(description: str | None) -> str | None:
    """Extract the owner marker from a description, or None."""
    if not description or not description.startswith(OWNER_PREFIX):
        return None
    return description[len(OWNER_PREFIX) :].strip() or None


@runtime_checkable
class Platform(Protocol):
    """Asynchronous, task-based platform API."""

    async def find(
        self, kind: ResourceKind, name: str, *, parent_id: str | None = None
    ) -> ExternalResource | None: ...

    async def get(self, kind: ResourceKind, resource_id: str) -> ExternalResource | None: ...

    async def create(
        self,
        kind: ResourceKind,
        name: str,
        spec: Mapping[str, Any],
        *,
        owner: str,
        parent_id: str | None = None,
    ) -> TaskHandle: ...

    async def delete(self, kind: ResourceKind, resource_id: str) -> TaskHandle: ...

    async def get_task(self, task_id: str) -> TaskHandle: ...

    async def power_on(self, vm_id: str) -> TaskHandle: ...

    async def power_off(self, vm_id: str) -> TaskHandle: ...

    async def set_guest_properties(
        self, vm_id: str, properties: Mapping[str, str]
    ) -> TaskHandle: ...

    async def add_pool_member(self, pool_id: str, address: str, port: int) -> TaskHandle: ...

    async def remove_pool_member(self, pool_id: str, address: str) -> TaskHandle: ...
