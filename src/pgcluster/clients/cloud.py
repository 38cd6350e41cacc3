"""Cloud VM provider interface and a Hetzner Cloud implementation."""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from pgcluster.clients.http import HttpApiError, JsonApi

logger = logging.getLogger(__name__)


class CloudApiError(Exception):
    """Raised when the cloud provider rejects a request."""


class ServerSpec(BaseModel):
    """Request to allocate one virtual machine."""

    name: str
    server_type: str
    image: str
    location: str
    ssh_keys: list[str] = Field(default_factory=list)
    labels: dict[str, str] = Field(default_factory=dict)
    user_data: str | None = None


class ServerInfo(BaseModel):
    """A virtual machine as reported by the provider."""

    provider_id: int
    name: str
    status: str = "initializing"
    public_ip: str | None = None
    private_ip: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)


@runtime_checkable
class CloudProvider(Protocol):
    """Protocol for cloud VM backends."""

    def create_server(self, spec: ServerSpec) -> ServerInfo: ...

    def delete_server(self, provider_id: int) -> None: ...

    def get_server(self, provider_id: int) -> ServerInfo | None: ...

    def list_servers(self, label_selector: str) -> list[ServerInfo]: ...

    def list_server_types(self) -> list[dict[str, Any]]: ...

    def list_locations(self) -> list[dict[str, Any]]: ...


class HetznerCloudClient:
    """Hetzner Cloud REST client."""

    def __init__(self, token: str, base_url: str = "https://api.hetzner.cloud/v1", timeout: float = 30.0) -> None:
        self._api = JsonApi(base_url, token, timeout=timeout)

    def create_server(self, spec: ServerSpec) -> ServerInfo:
        body: dict[str, Any] = {
            "name": spec.name,
            "server_type": spec.server_type,
            "image": spec.image,
            "location": spec.location,
            "ssh_keys": spec.ssh_keys,
            "labels": spec.labels,
            "start_after_create": True,
        }
        if spec.user_data:
            body["user_data"] = spec.user_data
        logger.info("Creating server %s (%s in %s)", spec.name, spec.server_type, spec.location)
        data = self._call("POST", "/servers", body)
        if not data or "server" not in data:
            raise CloudApiError(f"Server creation for {spec.name} returned no server")
        return self._to_server(data["server"])

    def delete_server(self, provider_id: int) -> None:
        logger.info("Deleting server %d", provider_id)
        self._call("DELETE", f"/servers/{provider_id}")

    def get_server(self, provider_id: int) -> ServerInfo | None:
        data = self._call("GET", f"/servers/{provider_id}")
        if not data or "server" not in data:
            return None
        return self._to_server(data["server"])

    def list_servers(self, label_selector: str) -> list[ServerInfo]:
        data = self._call("GET", "/servers", query={"label_selector": label_selector})
        return [self._to_server(s) for s in (data or {}).get("servers", [])]

    def list_server_types(self) -> list[dict[str, Any]]:
        data = self._call("GET", "/server_types")
        return list((data or {}).get("server_types", []))

    def list_locations(self) -> list[dict[str, Any]]:
        data = self._call("GET", "/locations")
        return list((data or {}).get("locations", []))

    def _call(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        query: dict[str, str] | None = None,
    ) -> dict[str, Any] | None:
        try:
            return self._api.request(method, path, body=body, query=query)
        except HttpApiError as exc:
            raise CloudApiError(str(exc)) from exc

    @staticmethod
    def _to_server(raw: dict[str, Any]) -> ServerInfo:
        public_net = raw.get("public_net") or {}
        ipv4 = (public_net.get("ipv4") or {}).get("ip")
        private = raw.get("private_net") or []
        return ServerInfo(
            provider_id=int(raw["id"]),
            name=raw.get("name", ""),
            status=raw.get("status", "unknown"),
            public_ip=ipv4,
            private_ip=private[0].get("ip") if private else None,
            labels=raw.get("labels") or {},
        )
