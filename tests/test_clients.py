"""Tests for the cloud, DNS and object-storage clients."""

from __future__ import annotations

import io
import json
import urllib.error
import urllib.request

import pytest

from fakes import FakeDns
from pgcluster.clients.cloud import CloudApiError, HetznerCloudClient, ServerSpec
from pgcluster.clients.dns import CloudflareDnsClient, DnsApiError, DnsRecord, upsert_record
from pgcluster.clients.http import HttpApiError, JsonApi
from pgcluster.clients.storage import S3ObjectStorage


class FakeResponse(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class FakeUrlopen:
    """Replays queued responses and records each request."""

    def __init__(self) -> None:
        self.requests: list[urllib.request.Request] = []
        self.responses: list[object] = []

    def queue(self, payload: object = None, status: int = 200, raw: bytes | None = None) -> None:
        body = raw if raw is not None else json.dumps(payload).encode("utf-8")
        if status >= 400:
            self.responses.append(
                urllib.error.HTTPError("http://api.test", status, "error", {}, io.BytesIO(body))
            )
        else:
            self.responses.append(FakeResponse(body))

    def __call__(self, req, timeout):
        self.requests.append(req)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def body(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].data.decode("utf-8"))


@pytest.fixture
def urlopen(monkeypatch):
    fake = FakeUrlopen()
    monkeypatch.setattr(urllib.request, "urlopen", fake)
    return fake


# --- JsonApi ---


class TestJsonApi:
    def test_bearer_json_request(self, urlopen):
        urlopen.queue({"ok": True})
        api = JsonApi("https://api.test/v1/", "tok")
        assert api.request("POST", "/things", body={"a": 1}, query={"x": "1 2"}) == {"ok": True}

        req = urlopen.requests[0]
        assert req.full_url == "https://api.test/v1/things?x=1+2"
        assert req.get_method() == "POST"
        assert req.get_header("Authorization") == "Bearer tok"
        assert urlopen.body() == {"a": 1}

    def test_not_found_is_none(self, urlopen):
        urlopen.queue({"error": "missing"}, status=404)
        assert JsonApi("https://api.test", "t").request("GET", "/x") is None

    def test_empty_body_is_none(self, urlopen):
        urlopen.queue(raw=b"")
        assert JsonApi("https://api.test", "t").request("DELETE", "/x") is None

    def test_error_status(self, urlopen):
        urlopen.queue({"error": "rate limited"}, status=429)
        with pytest.raises(HttpApiError, match="returned 429") as exc_info:
            JsonApi("https://api.test", "t").request("GET", "/x")
        assert exc_info.value.status == 429
        assert "rate limited" in exc_info.value.body

    def test_connection_error(self, urlopen):
        urlopen.responses.append(urllib.error.URLError("no route"))
        with pytest.raises(HttpApiError, match="failed: no route"):
            JsonApi("https://api.test", "t").request("GET", "/x")

    def test_invalid_json(self, urlopen):
        urlopen.queue(raw=b"<html>")
        with pytest.raises(HttpApiError, match="invalid JSON"):
            JsonApi("https://api.test", "t").request("GET", "/x")


# --- Hetzner ---


def hetzner_server(server_id: int = 42, name: str = "orders-node-1") -> dict:
    return {
        "id": server_id,
        "name": name,
        "status": "running",
        "public_net": {"ipv4": {"ip": "203.0.113.7"}},
        "private_net": [{"ip": "10.0.0.7"}],
        "labels": {"cluster": "orders"},
    }


class TestHetznerCloudClient:
    def test_create_server(self, urlopen):
        urlopen.queue({"server": hetzner_server()})
        client = HetznerCloudClient("tok", base_url="https://api.test/v1")
        server = client.create_server(ServerSpec(
            name="orders-node-1", server_type="cx23", image="ubuntu-24.04", location="fsn1",
            ssh_keys=["deploy"], labels={"cluster": "orders"},
        ))

        assert server.provider_id == 42
        assert server.public_ip == "203.0.113.7"
        assert server.private_ip == "10.0.0.7"
        body = urlopen.body()
        assert body["location"] == "fsn1"
        assert body["ssh_keys"] == ["deploy"]
        assert body["start_after_create"] is True
        assert "user_data" not in body

    def test_create_without_server_in_response(self, urlopen):
        urlopen.queue({"action": {}})
        with pytest.raises(CloudApiError, match="returned no server"):
            HetznerCloudClient("tok").create_server(
                ServerSpec(name="n", server_type="cx23", image="i", location="fsn1")
            )

    def test_list_servers_by_label(self, urlopen):
        urlopen.queue({"servers": [hetzner_server(1, "a"), hetzner_server(2, "b")]})
        servers = HetznerCloudClient("tok", base_url="https://api.test/v1").list_servers("cluster=orders")
        assert [s.provider_id for s in servers] == [1, 2]
        assert urlopen.requests[0].full_url == "https://api.test/v1/servers?label_selector=cluster%3Dorders"

    def test_get_missing_server(self, urlopen):
        urlopen.queue({}, status=404)
        assert HetznerCloudClient("tok").get_server(9) is None

    def test_server_without_networks(self, urlopen):
        urlopen.queue({"server": {"id": 3, "name": "bare"}})
        server = HetznerCloudClient("tok").get_server(3)
        assert server.public_ip is None
        assert server.private_ip is None

    def test_api_errors_are_wrapped(self, urlopen):
        urlopen.queue({"error": {"code": "forbidden"}}, status=403)
        with pytest.raises(CloudApiError, match="403"):
            HetznerCloudClient("tok").delete_server(7)


# --- Cloudflare ---


def cf(result: object, success: bool = True) -> dict:
    return {"success": success, "errors": [] if success else [{"message": "bad"}], "result": result}


def cf_record(content: str = "203.0.113.1") -> dict:
    return {"id": "rec-1", "name": "orders.db.test", "content": content, "type": "A", "ttl": 60}


class TestCloudflareDnsClient:
    @pytest.fixture
    def client(self):
        return CloudflareDnsClient("tok", "zone-1", base_url="https://cf.test/client/v4")

    def test_find_record(self, client, urlopen):
        urlopen.queue(cf([cf_record()]))
        record = client.find_record("orders.db.test")
        assert record.record_id == "rec-1"
        assert record.content == "203.0.113.1"
        assert urlopen.requests[0].full_url == (
            "https://cf.test/client/v4/zones/zone-1/dns_records?type=A&name=orders.db.test"
        )

    def test_find_missing(self, client, urlopen):
        urlopen.queue(cf([]))
        assert client.find_record("orders.db.test") is None

    def test_create_is_dns_only(self, client, urlopen):
        urlopen.queue(cf(cf_record()))
        client.create_record("orders.db.test", "203.0.113.1")
        assert urlopen.body() == {
            "type": "A", "name": "orders.db.test", "content": "203.0.113.1", "ttl": 60, "proxied": False,
        }

    def test_update(self, client, urlopen):
        urlopen.queue(cf(cf_record("203.0.113.2")))
        record = client.update_record("rec-1", "orders.db.test", "203.0.113.2")
        assert record.content == "203.0.113.2"
        assert urlopen.requests[0].get_method() == "PUT"
        assert urlopen.requests[0].full_url.endswith("/zones/zone-1/dns_records/rec-1")

    def test_unsuccessful_envelope(self, client, urlopen):
        urlopen.queue(cf(None, success=False))
        with pytest.raises(DnsApiError, match="bad"):
            client.create_record("orders.db.test", "203.0.113.1")

    def test_http_error(self, client, urlopen):
        urlopen.queue({"success": False}, status=500)
        with pytest.raises(DnsApiError, match="500"):
            client.delete_record("rec-1")


class TestUpsertRecord:
    def test_creates(self):
        dns = FakeDns()
        assert upsert_record(dns, "a.db.test", "203.0.113.1").record_id == "rec-1"

    def test_unchanged(self):
        dns = FakeDns()
        dns.records["a.db.test"] = DnsRecord(record_id="r", name="a.db.test", content="203.0.113.1")
        upsert_record(dns, "a.db.test", "203.0.113.1")
        assert dns.updates == []

    def test_updates_in_place(self):
        dns = FakeDns()
        dns.records["a.db.test"] = DnsRecord(record_id="r", name="a.db.test", content="203.0.113.1")
        assert upsert_record(dns, "a.db.test", "203.0.113.9").record_id == "r"
        assert dns.updates == [("a.db.test", "203.0.113.9")]


# --- S3 ---


class TestS3ObjectStorage:
    @pytest.fixture
    def s3(self):
        boto3 = pytest.importorskip("boto3")
        stub_module = pytest.importorskip("botocore.stub")
        client = boto3.client(
            "s3",
            endpoint_url="https://s3.test",
            region_name="eu-central",
            aws_access_key_id="AK",
            aws_secret_access_key="SK",
        )
        stubber = stub_module.Stubber(client)
        stubber.activate()
        yield S3ObjectStorage("backups", client=client), stubber
        stubber.deactivate()

    def test_list_keys(self, s3):
        storage, stubber = s3
        stubber.add_response(
            "list_objects_v2",
            {"Contents": [{"Key": "exports/a.sql.gz"}, {"Key": "exports/b.sql.gz"}], "IsTruncated": False},
            {"Bucket": "backups", "Prefix": "exports/"},
        )
        assert storage.list_keys("exports/") == ["exports/a.sql.gz", "exports/b.sql.gz"]
        stubber.assert_no_pending_responses()

    def test_head_size(self, s3):
        storage, stubber = s3
        stubber.add_response("head_object", {"ContentLength": 2048}, {"Bucket": "backups", "Key": "k"})
        stubber.add_client_error("head_object", service_error_code="404", http_status_code=404)
        assert storage.head_size("k") == 2048
        assert storage.head_size("missing") is None

    def test_head_size_other_errors_propagate(self, s3):
        storage, stubber = s3
        from botocore.exceptions import ClientError

        stubber.add_client_error("head_object", service_error_code="AccessDenied", http_status_code=403)
        with pytest.raises(ClientError):
            storage.head_size("k")

    def test_delete_prefix(self, s3):
        storage, stubber = s3
        stubber.add_response(
            "list_objects_v2",
            {"Contents": [{"Key": "p/1"}, {"Key": "p/2"}], "IsTruncated": False},
            {"Bucket": "backups", "Prefix": "p/"},
        )
        stubber.add_response(
            "delete_objects",
            {"Deleted": [{"Key": "p/1"}, {"Key": "p/2"}]},
            {"Bucket": "backups", "Delete": {"Objects": [{"Key": "p/1"}, {"Key": "p/2"}], "Quiet": True}},
        )
        assert storage.delete_prefix("p/") == 2
        stubber.assert_no_pending_responses()

    def test_delete_empty_prefix(self, s3):
        storage, stubber = s3
        stubber.add_response("list_objects_v2", {"IsTruncated": False}, {"Bucket": "backups", "Prefix": "p/"})
        assert storage.delete_prefix("p/") == 0

    def test_presigned_urls(self, s3):
        storage, _ = s3
        put = storage.presigned_put_url("exports/a.sql.gz", 3600)
        get = storage.presigned_get_url("exports/a.sql.gz", 60)
        assert put.startswith("https://")
        assert "exports/a.sql.gz" in put
        assert "exports/a.sql.gz" in get
        assert storage.bucket == "backups"
