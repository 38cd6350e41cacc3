"""DNS provider interface and a Cloudflare implementation."""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel

from pgcluster.clients.http import HttpApiError, JsonApi

logger = logging.getLogger(__name__)


class DnsApiError(Exception):
    """Raised when the DNS provider rejects a request."""


class DnsRecord(BaseModel):
    record_id: str
    name: str
    content: str
    type: str = "A"
    ttl: int = 300
    proxied: bool = False


@runtime_checkable
class DnsProvider(Protocol):
    """Protocol for DNS backends managing A records."""

    def find_record(self, name: str) -> DnsRecord | None: ...

    def create_record(self, name: str, ip: str) -> DnsRecord: ...

    def update_record(self, record_id: str, name: str, ip: str) -> DnsRecord: ...

    def delete_record(self, record_id: str) -> None: ...


def upsert_record(dns: DnsProvider, name: str, ip: str) -> DnsRecord:
    """Point *name* at *ip*, creating the record if it doesn't exist."""
    existing = dns.find_record(name)
    if existing is None:
        return dns.create_record(name, ip)
    if existing.content == ip:
        return existing
    return dns.update_record(existing.record_id, name, ip)


class CloudflareDnsClient:
    """Cloudflare zone-scoped DNS client.

    Records are DNS-only (not proxied) so clients reach PostgreSQL directly.
    """

    def __init__(
        self,
        token: str,
        zone_id: str,
        base_url: str = "https://api.cloudflare.com/client/v4",
        ttl: int = 60,
        timeout: float = 30.0,
    ) -> None:
        self._api = JsonApi(base_url, token, timeout=timeout)
        self._zone = zone_id
        self._ttl = ttl

    def find_record(self, name: str) -> DnsRecord | None:
        result = self._call("GET", "/dns_records", query={"type": "A", "name": name})
        records = result if isinstance(result, list) else []
        return self._to_record(records[0]) if records else None

    def create_record(self, name: str, ip: str) -> DnsRecord:
        logger.info("Creating DNS record %s -> %s", name, ip)
        result = self._call("POST", "/dns_records", self._body(name, ip))
        return self._to_record(result)

    def update_record(self, record_id: str, name: str, ip: str) -> DnsRecord:
        logger.info("Updating DNS record %s -> %s", name, ip)
        result = self._call("PUT", f"/dns_records/{record_id}", self._body(name, ip))
        return self._to_record(result)

    def delete_record(self, record_id: str) -> None:
        logger.info("Deleting DNS record %s", record_id)
        self._call("DELETE", f"/dns_records/{record_id}")

    def _body(self, name: str, ip: str) -> dict[str, Any]:
        return {"type": "A", "name": name, "content": ip, "ttl": self._ttl, "proxied": False}

    def _call(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        query: dict[str, str] | None = None,
    ) -> Any:
        try:
            data = self._api.request(method, f"/zones/{self._zone}{path}", body=body, query=query)
        except HttpApiError as exc:
            raise DnsApiError(str(exc)) from exc
        if data is None:
            return None
        if not data.get("success", False):
            raise DnsApiError(f"{method} {path} failed: {data.get('errors')}")
        return data.get("result")

    @staticmethod
    def _to_record(raw: dict[str, Any] | None) -> DnsRecord:
        if not raw:
            raise DnsApiError("DNS API returned no record")
        return DnsRecord(
            record_id=raw["id"],
            name=raw["name"],
            content=raw["content"],
            type=raw.get("type", "A"),
            ttl=raw.get("ttl", 300),
            proxied=raw.get("proxied", False),
        )
