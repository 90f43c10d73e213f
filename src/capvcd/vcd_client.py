"""Async REST client for VMware Cloud Director.

Implements the Platform protocol on top of httpx:

- Networking, gateways and load balancing use the CloudAPI (/cloudapi/1.0.0).
- vApps, VMs and tasks use the legacy API (/api) with JSON media types.

Authentication uses an API refresh token (exchanged for a bearer token) or a
username/password session. A 401 refreshes the token once and retries.

HTTP failures are mapped onto the error taxonomy in errors.py:

    401/403         -> AuthenticationError
    400/422         -> InvalidSpecError (QuotaExceededError if about quota)
    404             -> NotFoundError
    409             -> AlreadyExistsError
    429             -> RateLimitedError
    5xx, network    -> TransientError
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
from collections.abc import Iterator, Mapping
from typing import Any

import httpx

from .config import Config
from .errors import (
    AlreadyExistsError,
    AuthenticationError,
    CapvcdError,
    InvalidSpecError,
    NotFoundError,
    QuotaExceededError,
    RateLimitedError,
    TransientError,
)
from .platform import (
    ExternalResource,
    PowerState,
    ResourceKind,
    ResourceState,
    owner_description,
    owner_from_description,
)
from .security import Credentials
from .tasks import TaskHandle, TaskStatus, parse_task_status

logger = logging.getLogger(__name__)

CLOUDAPI = "/cloudapi/1.0.0"
ACCESS_TOKEN_HEADER = "X-VMWARE-VCLOUD-ACCESS-TOKEN"

# Legacy VM/vApp status codes
_STATUS_FAILED_CREATION = -1
_STATUS_POWERED_ON = 4
_STATUS_POWERED_OFF = 8

# CloudAPI realization states
_NETWORK_FAILED_STATES = {"REALIZATION_FAILED"}
_NETWORK_BUSY_STATES = {"PENDING", "SAVING", "CONFIGURING"}

_QUOTA_MESSAGE = re.compile(r"quota|limit (has been )?exceeded", re.I)
_TASK_HREF = re.compile(r"/task/([0-9a-fA-F-]+)")

GUEST_PROPERTY_SECTION_INFO = "Cluster API bootstrap properties"


def _uuid(urn_or_href: str) -> str:
    """Last identifier segment of a URN or href."""
    tail = urn_or_href.rstrip("/").rsplit("/", 1)[-1]
    tail = tail.rsplit(":", 1)[-1]
    for prefix in ("vapp-", "vm-", "vdc-"):
        if tail.startswith(prefix):
            return tail[len(prefix) :]
    return tail


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500] or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("message") or body.get("minorErrorCode") or body)[:500]
    return str(body)[:500]


def classify_response(response: httpx.Response) -> CapvcdError:
    """Map an HTTP error response onto the error taxonomy."""
    status = response.status_code
    message = f"{response.request.method} {response.request.url.path}: {_error_message(response)}"

    if status in (401, 403):
        return AuthenticationError(message)
    if status in (400, 422):
        if _QUOTA_MESSAGE.search(message):
            return QuotaExceededError(message)
        return InvalidSpecError(message)
    if status == 404:
        return NotFoundError(message)
    if status == 409:
        return AlreadyExistsError(message)
    if status == 429:
        return RateLimitedError(message, status_code=status)
    return TransientError(message, status_code=status)


def _parse_task(data: Mapping[str, Any], operation: str = "") -> TaskHandle:
    error = data.get("error") or {}
    owner = data.get("owner") or {}
    return TaskHandle(
        id=_uuid(str(data.get("id") or data.get("href") or "")),
        operation=str(data.get("operationName") or data.get("operation") or operation),
        status=parse_task_status(data.get("status")),
        message=str(error.get("message") or ""),
        owner_id=owner.get("id"),
    )


def _running_task(data: Mapping[str, Any]) -> TaskHandle | None:
    """First unfinished task embedded in a legacy entity."""
    tasks = (data.get("tasks") or {}).get("task") or []
    for raw in tasks:
        task = _parse_task(raw)
        if not task.is_done:
            return task
    return None


def _filter(**terms: str | None) -> str:
    parts = [f"{key.replace('__', '.')}=={value}" for key, value in terms.items() if value]
    return "(" + ";".join(parts) + ")"


class VcdClient:
    """Platform implementation backed by the Cloud Director REST API.

    Usage:
        async with VcdClient(config, credentials) as client:
            adapter = TaskPollingAdapter(client, config)
    """

    def __init__(
        self,
        config: Config,
        credentials: Credentials,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._credentials = credentials
        self._accept = f"application/json;version={config.api_version}"
        self._legacy_accept = f"application/*+json;version={config.api_version}"
        self._client = httpx.AsyncClient(
            base_url=config.vcd_endpoint.rstrip("/"),
            timeout=config.request_timeout_seconds,
            verify=config.verify_tls,
            transport=transport,
        )
        self._token: str | None = None
        self._auth_lock = asyncio.Lock()

    async def __aenter__(self) -> VcdClient:
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # =========================================================================
    # Authentication
    # =========================================================================

    async def _authenticate(self) -> str:
        org = self._config.vcd_org
        try:
            if self._credentials.uses_refresh_token:
                resp = await self._client.post(
                    f"/oauth/tenant/{org}/token",
                    data={
                        "grant_type": "refresh_token",
                        "refresh_token": self._credentials.refresh_token,
                    },
                    headers={"Accept": "application/json"},
                )
            else:
                resp = await self._client.post(
                    f"{CLOUDAPI}/sessions",
                    auth=(f"{self._credentials.username}@{org}", self._credentials.password or ""),
                    headers={"Accept": self._accept},
                )
        except httpx.RequestError as e:
            raise TransientError(f"Authentication request failed: {e}") from e

        if resp.status_code >= 400:
            # Never include the response body: it may echo credentials
            if resp.status_code in (400, 401, 403):
                raise AuthenticationError(f"Authentication rejected for org {org}")
            raise classify_response(resp)

        if self._credentials.uses_refresh_token:
            token = resp.json().get("access_token")
        else:
            token = resp.headers.get(ACCESS_TOKEN_HEADER)
        if not token:
            raise AuthenticationError(f"Authentication for org {org} returned no access token")

        logger.info("Authenticated to Cloud Director", extra={"org": org})
        return token

    async def _auth_header(self) -> dict[str, str]:
        async with self._auth_lock:
            if self._token is None:
                self._token = await self._authenticate()
            return {"Authorization": f"Bearer {self._token}"}

    async def _invalidate_token(self, stale: str | None) -> None:
        async with self._auth_lock:
            if self._token == stale:
                self._token = None

    # =========================================================================
    # Transport
    # =========================================================================

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Mapping[str, Any] | None = None,
        legacy: bool = False,
        content_type: str | None = None,
    ) -> httpx.Response:
        """Send a request, refreshing the token once on 401.

        Raises:
            CapvcdError: Classified HTTP or network failure.
        """
        headers = {"Accept": self._legacy_accept if legacy else self._accept}
        if content_type:
            headers["Content-Type"] = content_type

        for attempt in (1, 2):
            auth = await self._auth_header()
            logger.debug("VCD request", extra={"method": method, "path": path})
            try:
                resp = await self._client.request(
                    method, path, json=json, params=params, headers={**headers, **auth}
                )
            except httpx.TimeoutException as e:
                raise TransientError(f"{method} {path} timed out") from e
            except httpx.RequestError as e:
                raise TransientError(f"{method} {path} failed: {e}") from e

            if resp.status_code == 401 and attempt == 1:
                logger.info("Access token rejected, re-authenticating")
                await self._invalidate_token(auth["Authorization"].removeprefix("Bearer "))
                continue
            if resp.status_code >= 400:
                error = classify_response(resp)
                logger.warning(
                    "VCD request failed",
                    extra={"method": method, "path": path, "status": resp.status_code},
                )
                raise error
            return resp

        raise AuthenticationError(f"{method} {path}: access token rejected after refresh")

    async def _get_json(self, path: str, *, params: Mapping[str, Any] | None = None, legacy: bool = False) -> Any:
        resp = await self._request("GET", path, params=params, legacy=legacy)
        return resp.json() if resp.content else None

    async def _get_optional(self, path: str, *, legacy: bool = False) -> Any:
        try:
            return await self._get_json(path, legacy=legacy)
        except NotFoundError:
            return None

    async def _first_value(self, path: str, filter_expr: str) -> dict[str, Any] | None:
        data = await self._get_json(path, params={"filter": filter_expr, "pageSize": 1})
        values = (data or {}).get("values") or []
        return values[0] if values else None

    async def _query_first(self, record_type: str, filter_expr: str) -> dict[str, Any] | None:
        data = await self._get_json(
            "/api/query",
            params={"type": record_type, "format": "records", "filter": filter_expr, "pageSize": 1},
            legacy=True,
        )
        records = (data or {}).get("record") or []
        return records[0] if records else None

    def _task_from_response(self, resp: httpx.Response, operation: str) -> TaskHandle:
        """Extract the task handle from a 202 Location header or a task body."""
        location = resp.headers.get("Location", "")
        match = _TASK_HREF.search(location)
        if match:
            return TaskHandle(id=match.group(1), operation=operation, status=TaskStatus.QUEUED)

        data = resp.json() if resp.content else {}
        if "tasks" in data:
            task = _running_task(data)
            if task is not None:
                return task
            # Entity came back with nothing left to do
            return TaskHandle(id=_uuid(str(data.get("id", ""))), operation=operation, status=TaskStatus.SUCCESS)
        if data.get("id") or data.get("href"):
            return _parse_task(data, operation)
        return TaskHandle(id="", operation=operation, status=TaskStatus.SUCCESS)

    # =========================================================================
    # Platform: reads
    # =========================================================================

    async def find(
        self, kind: ResourceKind, name: str, *, parent_id: str | None = None
    ) -> ExternalResource | None:
        if kind == ResourceKind.VDC:
            raw = await self._first_value(f"{CLOUDAPI}/vdcs", _filter(name=name))
            return self._to_simple(kind, raw) if raw else None
        if kind == ResourceKind.GATEWAY:
            raw = await self._first_value(
                f"{CLOUDAPI}/edgeGateways", _filter(name=name, orgVdc__id=parent_id)
            )
            return self._to_simple(kind, raw, parent_id) if raw else None
        if kind == ResourceKind.NETWORK:
            raw = await self._first_value(
                f"{CLOUDAPI}/orgVdcNetworks", _filter(name=name, orgVdc__id=parent_id)
            )
            return self._to_network(raw, parent_id) if raw else None
        if kind == ResourceKind.VAPP:
            vdc_filter = f"{self._config.vcd_endpoint.rstrip('/')}/api/vdc/{_uuid(parent_id)}" if parent_id else None
            record = await self._query_first("vApp", _filter(name=name, vdc=vdc_filter))
            if record is None:
                return None
            return await self.get(kind, _uuid(record["href"]))
        if kind == ResourceKind.VM:
            if parent_id is None:
                raise InvalidSpecError("VM lookup requires the containing vApp")
            vapp = await self._get_optional(f"/api/vApp/vapp-{_uuid(parent_id)}", legacy=True)
            for vm in ((vapp or {}).get("children") or {}).get("vm") or []:
                if vm.get("name") == name:
                    return await self._to_vm(vm, parent_id)
            return None
        if kind == ResourceKind.LB_POOL:
            raw = await self._first_value(
                f"{CLOUDAPI}/edgeGateways/{parent_id}/loadBalancer/poolSummaries", _filter(name=name)
            )
            return await self.get(kind, raw["id"]) if raw else None
        if kind == ResourceKind.VIRTUAL_SERVICE:
            raw = await self._first_value(
                f"{CLOUDAPI}/edgeGateways/{parent_id}/loadBalancer/virtualServiceSummaries",
                _filter(name=name),
            )
            return await self.get(kind, raw["id"]) if raw else None
        raise ValueError(f"Unsupported resource kind: {kind}")

    async def get(self, kind: ResourceKind, resource_id: str) -> ExternalResource | None:
        if kind == ResourceKind.VDC:
            raw = await self._get_optional(f"{CLOUDAPI}/vdcs/{resource_id}")
            return self._to_simple(kind, raw) if raw else None
        if kind == ResourceKind.GATEWAY:
            raw = await self._get_optional(f"{CLOUDAPI}/edgeGateways/{resource_id}")
            return self._to_simple(kind, raw, (raw or {}).get("orgVdc", {}).get("id")) if raw else None
        if kind == ResourceKind.NETWORK:
            raw = await self._get_optional(f"{CLOUDAPI}/orgVdcNetworks/{resource_id}")
            return self._to_network(raw, (raw or {}).get("orgVdc", {}).get("id")) if raw else None
        if kind == ResourceKind.VAPP:
            raw = await self._get_optional(f"/api/vApp/vapp-{_uuid(resource_id)}", legacy=True)
            return self._to_vapp(raw) if raw else None
        if kind == ResourceKind.VM:
            raw = await self._get_optional(f"/api/vApp/vm-{_uuid(resource_id)}", legacy=True)
            return await self._to_vm(raw, None) if raw else None
        if kind == ResourceKind.LB_POOL:
            raw = await self._get_optional(f"{CLOUDAPI}/loadBalancer/pools/{resource_id}")
            return self._to_pool(raw) if raw else None
        if kind == ResourceKind.VIRTUAL_SERVICE:
            raw = await self._get_optional(f"{CLOUDAPI}/loadBalancer/virtualServices/{resource_id}")
            return self._to_virtual_service(raw) if raw else None
        raise ValueError(f"Unsupported resource kind: {kind}")

    async def get_task(self, task_id: str) -> TaskHandle:
        data = await self._get_json(f"/api/task/{_uuid(task_id)}", legacy=True)
        return _parse_task(data or {"id": task_id})

    # =========================================================================
    # Platform: mutations
    # =========================================================================

    async def create(
        self,
        kind: ResourceKind,
        name: str,
        spec: Mapping[str, Any],
        *,
        owner: str,
        parent_id: str | None = None,
    ) -> TaskHandle:
        description = owner_description(owner)
        if kind == ResourceKind.NETWORK:
            body = self._network_body(name, description, parent_id, spec)
            resp = await self._request("POST", f"{CLOUDAPI}/orgVdcNetworks", json=body)
        elif kind == ResourceKind.VAPP:
            body = self._compose_vapp_body(name, description, spec)
            resp = await self._request(
                "POST",
                f"/api/vdc/{_uuid(parent_id or '')}/action/composeVApp",
                json=body,
                legacy=True,
                content_type="application/vnd.vmware.vcloud.composeVAppParams+json",
            )
        elif kind == ResourceKind.VM:
            body = await self._recompose_body(name, description, spec)
            resp = await self._request(
                "POST",
                f"/api/vApp/vapp-{_uuid(parent_id or '')}/action/recomposeVApp",
                json=body,
                legacy=True,
                content_type="application/vnd.vmware.vcloud.recomposeVAppParams+json",
            )
        elif kind == ResourceKind.LB_POOL:
            body = {
                "name": name,
                "description": description,
                "enabled": True,
                "gatewayRef": {"id": parent_id},
                "algorithm": "ROUND_ROBIN",
                "defaultPort": spec.get("port"),
                "members": [],
            }
            resp = await self._request("POST", f"{CLOUDAPI}/loadBalancer/pools", json=body)
        elif kind == ResourceKind.VIRTUAL_SERVICE:
            body = await self._virtual_service_body(name, description, parent_id or "", spec)
            resp = await self._request("POST", f"{CLOUDAPI}/loadBalancer/virtualServices", json=body)
        else:
            raise ValueError(f"Resource kind {kind.value} cannot be created")
        return self._task_from_response(resp, f"create {kind.value}")

    async def delete(self, kind: ResourceKind, resource_id: str) -> TaskHandle:
        paths = {
            ResourceKind.NETWORK: f"{CLOUDAPI}/orgVdcNetworks/{resource_id}",
            ResourceKind.VAPP: f"/api/vApp/vapp-{_uuid(resource_id)}",
            ResourceKind.VM: f"/api/vApp/vm-{_uuid(resource_id)}",
            ResourceKind.LB_POOL: f"{CLOUDAPI}/loadBalancer/pools/{resource_id}",
            ResourceKind.VIRTUAL_SERVICE: f"{CLOUDAPI}/loadBalancer/virtualServices/{resource_id}",
        }
        if kind not in paths:
            raise ValueError(f"Resource kind {kind.value} cannot be deleted")
        legacy = kind in (ResourceKind.VAPP, ResourceKind.VM)
        resp = await self._request("DELETE", paths[kind], legacy=legacy)
        return self._task_from_response(resp, f"delete {kind.value}")

    async def power_on(self, vm_id: str) -> TaskHandle:
        resp = await self._request(
            "POST", f"/api/vApp/vm-{_uuid(vm_id)}/power/action/powerOn", legacy=True
        )
        return self._task_from_response(resp, "power on")

    async def power_off(self, vm_id: str) -> TaskHandle:
        resp = await self._request(
            "POST", f"/api/vApp/vm-{_uuid(vm_id)}/power/action/powerOff", legacy=True
        )
        return self._task_from_response(resp, "power off")

    async def set_guest_properties(self, vm_id: str, properties: Mapping[str, str]) -> TaskHandle:
        body = {
            "productSection": [
                {
                    "info": {"value": GUEST_PROPERTY_SECTION_INFO},
                    "property": [
                        {
                            "key": key,
                            "type": "string",
                            "userConfigurable": True,
                            "value": {"value": value},
                        }
                        for key, value in properties.items()
                    ],
                }
            ]
        }
        resp = await self._request(
            "PUT",
            f"/api/vApp/vm-{_uuid(vm_id)}/productSections",
            json=body,
            legacy=True,
            content_type="application/vnd.vmware.vcloud.productSections+json",
        )
        return self._task_from_response(resp, "set guest properties")

    async def add_pool_member(self, pool_id: str, address: str, port: int) -> TaskHandle:
        pool = await self._get_json(f"{CLOUDAPI}/loadBalancer/pools/{pool_id}")
        members = list(pool.get("members") or [])
        if any(m.get("ipAddress") == address for m in members):
            return TaskHandle(id="", operation="add pool member", status=TaskStatus.SUCCESS)
        members.append({"ipAddress": address, "port": port, "ratio": 1, "enabled": True})
        pool["members"] = members
        resp = await self._request("PUT", f"{CLOUDAPI}/loadBalancer/pools/{pool_id}", json=pool)
        return self._task_from_response(resp, "add pool member")

    async def remove_pool_member(self, pool_id: str, address: str) -> TaskHandle:
        pool = await self._get_json(f"{CLOUDAPI}/loadBalancer/pools/{pool_id}")
        members = [m for m in pool.get("members") or [] if m.get("ipAddress") != address]
        pool["members"] = members
        resp = await self._request("PUT", f"{CLOUDAPI}/loadBalancer/pools/{pool_id}", json=pool)
        return self._task_from_response(resp, "remove pool member")

    # =========================================================================
    # Request bodies
    # =========================================================================

    @staticmethod
    def _network_body(
        name: str, description: str, vdc_id: str | None, spec: Mapping[str, Any]
    ) -> dict[str, Any]:
        iface = ipaddress.ip_interface(spec["networkCidr"])
        network = iface.network
        dns = list(spec.get("dnsServers") or [])
        subnet: dict[str, Any] = {
            "gateway": str(iface.ip),
            "prefixLength": network.prefixlen,
            "enabled": True,
            "ipRanges": {
                "values": [
                    {
                        "startAddress": str(iface.ip + 1),
                        "endAddress": str(network.broadcast_address - 1),
                    }
                ]
            },
        }
        if dns:
            subnet["dnsServer1"] = dns[0]
        if len(dns) > 1:
            subnet["dnsServer2"] = dns[1]
        return {
            "name": name,
            "description": description,
            "orgVdc": {"id": vdc_id},
            "networkType": "NAT_ROUTED",
            "connection": {
                "routerRef": {"id": spec["gatewayId"]},
                "connectionType": "INTERNAL",
            },
            "subnets": {"values": [subnet]},
        }

    def _compose_vapp_body(
        self, name: str, description: str, spec: Mapping[str, Any]
    ) -> dict[str, Any]:
        network_href = f"{self._config.vcd_endpoint.rstrip('/')}/api/admin/network/{_uuid(spec['networkId'])}"
        return {
            "name": name,
            "description": description,
            "deploy": False,
            "powerOn": False,
            "instantiationParams": {
                "networkConfigSection": {
                    "networkConfig": [
                        {
                            "networkName": spec["networkName"],
                            "configuration": {
                                "parentNetwork": {"href": network_href},
                                "fenceMode": "bridged",
                            },
                        }
                    ]
                }
            },
        }

    async def _recompose_body(
        self, name: str, description: str, spec: Mapping[str, Any]
    ) -> dict[str, Any]:
        template = await self._query_first(
            "vAppTemplate", _filter(name=spec["template"], catalogName=spec["catalog"])
        )
        if template is None:
            raise InvalidSpecError(
                f"Template {spec['template']} not found in catalog {spec['catalog']}"
            )

        item: dict[str, Any] = {
            "source": {"href": template["href"], "name": name},
            "vmGeneralParams": {"name": name, "description": description},
            "instantiationParams": {
                "networkConnectionSection": {
                    "primaryNetworkConnectionIndex": 0,
                    "networkConnection": [
                        {
                            "network": spec["networkName"],
                            "networkConnectionIndex": 0,
                            "isConnected": True,
                            "ipAddressAllocationMode": "POOL",
                        }
                    ],
                }
            },
        }

        compute_policy: dict[str, Any] = {}
        if spec.get("sizingPolicy"):
            compute_policy["vmSizingPolicy"] = {"id": await self._compute_policy_id(spec["sizingPolicy"])}
        if spec.get("placementPolicy"):
            compute_policy["vmPlacementPolicy"] = {"id": await self._compute_policy_id(spec["placementPolicy"])}
        if compute_policy:
            item["computePolicy"] = compute_policy

        if spec.get("storageProfile"):
            profile = await self._query_first("orgVdcStorageProfile", _filter(name=spec["storageProfile"]))
            if profile is None:
                raise InvalidSpecError(f"Storage profile {spec['storageProfile']} not found")
            item["storageProfile"] = {"href": profile["href"]}

        if spec.get("diskSizeMb"):
            item["vmSpecSection"] = {
                "modified": True,
                "diskSection": {
                    "diskSettings": [
                        {"diskId": "2000", "sizeMb": spec["diskSizeMb"], "overrideVmDefault": True}
                    ]
                },
            }

        return {"sourcedItem": [item], "powerOn": False}

    async def _compute_policy_id(self, policy_name: str) -> str:
        raw = await self._first_value(f"{CLOUDAPI}/vdcComputePolicies", _filter(name=policy_name))
        if raw is None:
            raise InvalidSpecError(f"Compute policy {policy_name} not found")
        return str(raw["id"])

    async def _virtual_service_body(
        self, name: str, description: str, gateway_id: str, spec: Mapping[str, Any]
    ) -> dict[str, Any]:
        assignment = await self._first_value(
            f"{CLOUDAPI}/loadBalancer/serviceEngineGroups/assignments",
            _filter(gatewayRef__id=gateway_id),
        )
        if assignment is None:
            raise InvalidSpecError(f"No service engine group assigned to gateway {gateway_id}")

        vip = spec.get("virtualIpAddress") or await self._allocate_vip(gateway_id, spec.get("vipSubnet"))
        return {
            "name": name,
            "description": description,
            "enabled": True,
            "gatewayRef": {"id": gateway_id},
            "loadBalancerPoolRef": {"id": spec["poolId"]},
            "serviceEngineGroupRef": assignment["serviceEngineGroupRef"],
            "virtualIpAddress": vip,
            "servicePorts": [{"portStart": spec["port"]}],
            "applicationProfile": {"systemDefined": True, "type": "L4"},
        }

    async def _allocate_vip(self, gateway_id: str, vip_subnet: str | None) -> str:
        """Pick the first free address from vip_subnet or the gateway uplink."""
        used_data = await self._get_json(
            f"{CLOUDAPI}/edgeGateways/{gateway_id}/usedIpAddresses", params={"pageSize": 128}
        )
        used = {v.get("ipAddress") for v in (used_data or {}).get("values") or []}

        if vip_subnet:
            candidates = (str(ip) for ip in ipaddress.ip_network(vip_subnet, strict=False).hosts())
        else:
            gateway = await self._get_json(f"{CLOUDAPI}/edgeGateways/{gateway_id}")
            candidates = (str(ip) for ip in self._uplink_addresses(gateway))

        for candidate in candidates:
            if candidate not in used:
                return candidate
        raise QuotaExceededError(f"No free virtual IP address on gateway {gateway_id}")

    @staticmethod
    def _uplink_addresses(gateway: Mapping[str, Any]) -> Iterator[ipaddress.IPv4Address | ipaddress.IPv6Address]:
        for uplink in gateway.get("edgeGatewayUplinks") or []:
            for subnet in (uplink.get("subnets") or {}).get("values") or []:
                for ip_range in (subnet.get("ipRanges") or {}).get("values") or []:
                    start = ipaddress.ip_address(ip_range["startAddress"])
                    end = ipaddress.ip_address(ip_range["endAddress"])
                    while start <= end:
                        yield start
                        start += 1

    # =========================================================================
    # Response mapping
    # =========================================================================

    @staticmethod
    def _to_simple(
        kind: ResourceKind, raw: Mapping[str, Any], parent_id: str | None = None
    ) -> ExternalResource:
        return ExternalResource(
            kind=kind,
            id=str(raw["id"]),
            name=str(raw.get("name", "")),
            parent_id=parent_id,
            owner=owner_from_description(raw.get("description")),
        )

    @staticmethod
    def _to_network(raw: Mapping[str, Any], parent_id: str | None) -> ExternalResource:
        status = str(raw.get("status") or "").upper()
        if status in _NETWORK_FAILED_STATES:
            state = ResourceState.FAILED
        elif status in _NETWORK_BUSY_STATES:
            state = ResourceState.BUSY
        else:
            state = ResourceState.READY
        return ExternalResource(
            kind=ResourceKind.NETWORK,
            id=str(raw["id"]),
            name=str(raw.get("name", "")),
            parent_id=parent_id,
            owner=owner_from_description(raw.get("description")),
            state=state,
            message=str(raw.get("errorMessage") or ""),
        )

    @staticmethod
    def _to_vapp(raw: Mapping[str, Any]) -> ExternalResource:
        busy = _running_task(raw)
        if raw.get("status") == _STATUS_FAILED_CREATION:
            state = ResourceState.FAILED
        elif busy is not None:
            state = ResourceState.BUSY
        else:
            state = ResourceState.READY
        vdc_link = next(
            (link.get("href") for link in raw.get("link") or [] if link.get("rel") == "up"), None
        )
        return ExternalResource(
            kind=ResourceKind.VAPP,
            id=str(raw.get("id") or f"urn:vcloud:vapp:{_uuid(raw['href'])}"),
            name=str(raw.get("name", "")),
            parent_id=f"urn:vcloud:vdc:{_uuid(vdc_link)}" if vdc_link else None,
            owner=owner_from_description(raw.get("description")),
            state=state,
            busy_task=busy,
        )

    async def _to_vm(self, raw: Mapping[str, Any], parent_id: str | None) -> ExternalResource:
        busy = _running_task(raw)
        status = raw.get("status")
        if status == _STATUS_FAILED_CREATION:
            state = ResourceState.FAILED
        elif busy is not None:
            state = ResourceState.BUSY
        else:
            state = ResourceState.READY
        if status == _STATUS_POWERED_ON:
            power = PowerState.POWERED_ON
        elif status == _STATUS_POWERED_OFF:
            power = PowerState.POWERED_OFF
        else:
            power = PowerState.UNKNOWN

        addresses: list[str] = []
        for section in raw.get("section") or []:
            for connection in section.get("networkConnection") or []:
                if connection.get("ipAddress"):
                    addresses.append(connection["ipAddress"])

        vm_id = str(raw.get("id") or f"urn:vcloud:vm:{_uuid(raw['href'])}")
        if parent_id is None:
            vapp_link = next(
                (link.get("href") for link in raw.get("link") or [] if link.get("rel") == "up"), None
            )
            parent_id = f"urn:vcloud:vapp:{_uuid(vapp_link)}" if vapp_link else None

        return ExternalResource(
            kind=ResourceKind.VM,
            id=vm_id,
            name=str(raw.get("name", "")),
            parent_id=parent_id,
            owner=owner_from_description(raw.get("description")),
            state=state,
            busy_task=busy,
            power_state=power,
            ip_addresses=tuple(addresses),
            guest_properties=await self._guest_properties(vm_id),
        )

    async def _guest_properties(self, vm_id: str) -> dict[str, str]:
        data = await self._get_optional(f"/api/vApp/vm-{_uuid(vm_id)}/productSections", legacy=True)
        properties: dict[str, str] = {}
        for section in (data or {}).get("productSection") or []:
            for prop in section.get("property") or []:
                value = (prop.get("value") or {}).get("value")
                if prop.get("key") and value is not None:
                    properties[prop["key"]] = value
        return properties

    @staticmethod
    def _to_pool(raw: Mapping[str, Any]) -> ExternalResource:
        return ExternalResource(
            kind=ResourceKind.LB_POOL,
            id=str(raw["id"]),
            name=str(raw.get("name", "")),
            parent_id=(raw.get("gatewayRef") or {}).get("id"),
            owner=owner_from_description(raw.get("description")),
            members=tuple(m["ipAddress"] for m in raw.get("members") or [] if m.get("ipAddress")),
        )

    @staticmethod
    def _to_virtual_service(raw: Mapping[str, Any]) -> ExternalResource:
        vip = raw.get("virtualIpAddress")
        return ExternalResource(
            kind=ResourceKind.VIRTUAL_SERVICE,
            id=str(raw["id"]),
            name=str(raw.get("name", "")),
            parent_id=(raw.get("gatewayRef") or {}).get("id"),
            owner=owner_from_description(raw.get("description")),
            ip_addresses=(vip,) if vip else (),
        )
