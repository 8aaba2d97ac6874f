"""
domain/http_backend.py — REST client for a remote supply-chain service

Maps the DomainBackend operations onto a JSON REST API:

    POST   /nodes                       add_node
    GET    /nodes/{id}                  get_node
    GET    /nodes                       list_nodes
    PATCH  /nodes/{id}                  update_node
    DELETE /nodes/{id}                  remove_node
    GET    /links                       list_links
    POST   /links                       connect
    DELETE /links?source=..&target=..   disconnect
    POST   /simulations                 run_simulation
    GET    /summary                     summary
    GET    /alerts?status=..&limit=..   list_alerts
    GET    /config                      get_config
    PATCH  /config                      update_config

Status mapping: 404 → DomainNotFoundError, 409/422 → DomainConflictError,
transport errors and 5xx → DomainUnavailableError. The service's `error`
field (when present) becomes the exception message so actions can show it.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx

from domain.backend import DomainBackend
from domain.models import (
    Alert,
    AlertStatus,
    Link,
    NetworkConfig,
    NetworkSummary,
    Node,
    NodeType,
    Severity,
    SimulationRun,
)
from exceptions import DomainConflictError, DomainNotFoundError, DomainUnavailableError
from observability.logger import get_logger

log = get_logger(__name__)


class HttpDomainBackend(DomainBackend):

    def __init__(
        self,
        base_url: str,
        api_token: Optional[str] = None,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {"Accept": "application/json"}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
        )

    async def close(self) -> None:
        await self._client.aclose()

    # ── Transport ─────────────────────────────────────────────────────────────

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise DomainUnavailableError("Domain service timed out") from e
        except httpx.HTTPError as e:
            raise DomainUnavailableError(f"Domain service unreachable: {type(e).__name__}") from e

        if response.status_code >= 400:
            detail = _error_detail(response)
            log.warning("domain.http_error", method=method, path=path, status=response.status_code)
            if response.status_code == 404:
                raise DomainNotFoundError(detail or "Resource not found.")
            if response.status_code in (409, 422):
                raise DomainConflictError(detail or "Request conflicts with current state.")
            raise DomainUnavailableError(f"Domain service returned {response.status_code}")

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # ── Operations ────────────────────────────────────────────────────────────

    async def add_node(
        self,
        node_type: NodeType,
        location: str,
        capacity: float,
        name: Optional[str] = None,
    ) -> Node:
        body = {"type": node_type.value, "location": location, "capacity": capacity}
        if name:
            body["name"] = name
        return Node.model_validate(await self._request("POST", "/nodes", json=body))

    async def get_node(self, node_id: str) -> Node:
        return Node.model_validate(await self._request("GET", f"/nodes/{node_id}"))

    async def list_nodes(self) -> list[Node]:
        data = await self._request("GET", "/nodes") or []
        return [Node.model_validate(item) for item in data]

    async def update_node(self, node_id: str, **changes) -> Node:
        body = {k: v for k, v in changes.items() if v is not None}
        if not body:
            raise DomainConflictError(
                "No updates provided. Please specify at least one property to update."
            )
        return Node.model_validate(await self._request("PATCH", f"/nodes/{node_id}", json=body))

    async def remove_node(self, node_id: str) -> None:
        await self._request("DELETE", f"/nodes/{node_id}")

    async def connect(self, source: str, target: str, bidirectional: bool = False) -> Link:
        if source == target:
            raise DomainConflictError("Cannot connect a node to itself.")
        body = {"source": source, "target": target, "bidirectional": bidirectional}
        return Link.model_validate(await self._request("POST", "/links", json=body))

    async def disconnect(self, source: str, target: str) -> None:
        await self._request("DELETE", "/links", params={"source": source, "target": target})

    async def run_simulation(
        self,
        kind: str,
        severity: Severity,
        duration_days: int,
        affected: Optional[list[str]] = None,
    ) -> SimulationRun:
        body = {
            "kind": kind,
            "severity": severity.value,
            "duration_days": duration_days,
            "affected_nodes": affected or [],
        }
        return SimulationRun.model_validate(await self._request("POST", "/simulations", json=body))

    async def summary(self) -> NetworkSummary:
        return NetworkSummary.model_validate(await self._request("GET", "/summary") or {})

    async def list_links(self) -> list[Link]:
        data = await self._request("GET", "/links") or []
        return [Link.model_validate(item) for item in data]

    async def list_alerts(
        self,
        status: AlertStatus = AlertStatus.ACTIVE,
        limit: int = 10,
    ) -> list[Alert]:
        data = await self._request("GET", "/alerts", params={"status": status.value, "limit": limit}) or []
        return [Alert.model_validate(item) for item in data]

    async def get_config(self) -> NetworkConfig:
        return NetworkConfig.model_validate(await self._request("GET", "/config") or {})

    async def update_config(self, **changes) -> NetworkConfig:
        body = {k: v for k, v in changes.items() if v is not None}
        return NetworkConfig.model_validate(await self._request("PATCH", "/config", json=body) or {})


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return ""
    if isinstance(payload, dict):
        return str(payload.get("error") or payload.get("detail") or "")
    return ""
