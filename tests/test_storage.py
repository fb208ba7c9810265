"""Tests for storage backends (mintctl.upload.storage).

HTTP backends run against ``httpx.MockTransport``; the S3 backend gets a
mocked boto3 client.
"""

from __future__ import annotations

import hashlib
import json
from unittest.mock import MagicMock

import httpx
import pytest
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    ProxyConnectionError,
    SSLError,
)

from mintctl.exceptions import (
    ConfigurationError,
    CredentialsRejectedError,
    NetworkError,
    PayloadRejectedError,
    RateLimitedError,
)
from mintctl.models import StorageKind
from mintctl.upload.storage import (
    ArweaveStorage,
    IpfsStorage,
    S3Storage,
    StorageSettings,
    build_storage,
    link_image,
    parse_manifest,
)

MANIFEST = json.dumps(
    {
        "name": "Item #0",
        "image": "image.png",
        "properties": {"files": [{"uri": "image.png", "type": "image/png"}]},
    }
).encode()


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ======================================================================
# Manifest helpers
# ======================================================================


class TestManifest:
    def test_parse_valid(self):
        assert parse_manifest(MANIFEST, 0)["name"] == "Item #0"

    def test_invalid_json(self):
        with pytest.raises(PayloadRejectedError, match="not valid JSON"):
            parse_manifest(b"{", 4)

    def test_missing_name(self):
        with pytest.raises(PayloadRejectedError, match="no 'name'"):
            parse_manifest(b'{"symbol": "X"}', 4)

    def test_name_too_long(self):
        with pytest.raises(PayloadRejectedError, match="longer than 32 bytes"):
            parse_manifest(json.dumps({"name": "x" * 33}).encode(), 4)

    def test_link_image_rewrites_both_references(self):
        original = parse_manifest(MANIFEST, 0)

        linked = link_image(original, "https://ipfs.io/ipfs/QmImg")

        assert linked["image"] == "https://ipfs.io/ipfs/QmImg"
        assert linked["properties"]["files"][0]["uri"] == "https://ipfs.io/ipfs/QmImg"
        assert original["image"] == "image.png"


# ======================================================================
# Settings validation
# ======================================================================


class TestStorageSettings:
    """Credentials are checked before any item is processed."""

    def test_ipfs_without_credentials(self):
        with pytest.raises(ConfigurationError, match="Infura project id or secret key"):
            StorageSettings(kind=StorageKind.IPFS, ipfs_project_id="pid").validate()

    def test_aws_without_bucket(self):
        with pytest.raises(ConfigurationError, match="--aws-s3-bucket"):
            StorageSettings(kind=StorageKind.AWS).validate()

    def test_unknown_kind(self):
        with pytest.raises(ConfigurationError, match="'arweave', 'ipfs', or 'aws'"):
            StorageSettings(kind="filecoin").validate()

    def test_build_selects_backend(self):
        http = _client(lambda request: httpx.Response(200))

        assert isinstance(build_storage(StorageSettings(kind=StorageKind.ARWEAVE), http), ArweaveStorage)
        assert isinstance(
            build_storage(
                StorageSettings(kind=StorageKind.IPFS, ipfs_project_id="p", ipfs_secret="s"), http
            ),
            IpfsStorage,
        )
        assert isinstance(
            build_storage(
                StorageSettings(kind=StorageKind.AWS, aws_bucket="b"), s3_client=MagicMock()
            ),
            S3Storage,
        )


# ======================================================================
# Arweave
# ======================================================================


class TestArweaveStorage:
    async def test_returns_manifest_transaction_link(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "messages": [
                        {"filename": "image.png", "transactionId": "img-tx"},
                        {"filename": "manifest.json", "transactionId": "meta-tx"},
                    ]
                },
            )

        storage = ArweaveStorage(_client(handler), "devnet", endpoint="https://upload.test/")

        link = await storage.upload(b"png", MANIFEST, index=0)

        assert link == "https://arweave.net/meta-tx"
        assert len(seen) == 1
        assert b'name="env"' in seen[0].content
        assert b"devnet" in seen[0].content

    async def test_missing_transaction_id(self):
        storage = ArweaveStorage(
            _client(lambda request: httpx.Response(200, json={"messages": []})), "devnet"
        )

        with pytest.raises(PayloadRejectedError, match="No transaction ID for upload: 7"):
            await storage.upload(b"png", MANIFEST, index=7)

    @pytest.mark.parametrize(
        "body",
        [["unexpected"], "ok", {"messages": "pending"}],
    )
    async def test_unexpected_body_is_transient(self, body):
        storage = ArweaveStorage(_client(lambda request: httpx.Response(200, json=body)), "devnet")

        with pytest.raises(NetworkError, match="unexpected upload"):
            await storage.upload(b"png", MANIFEST, index=3)

    async def test_non_dict_messages_skipped(self):
        body = {"messages": ["noise", {"filename": "manifest.json", "transactionId": "meta-tx"}]}
        storage = ArweaveStorage(_client(lambda request: httpx.Response(200, json=body)), "devnet")

        assert await storage.upload(b"png", MANIFEST, index=0) == "https://arweave.net/meta-tx"

    @pytest.mark.parametrize(
        "status, error",
        [
            (429, RateLimitedError),
            (401, CredentialsRejectedError),
            (403, CredentialsRejectedError),
            (502, NetworkError),
            (400, PayloadRejectedError),
        ],
    )
    async def test_status_mapping(self, status, error):
        storage = ArweaveStorage(
            _client(lambda request: httpx.Response(status, text="nope")), "devnet"
        )

        with pytest.raises(error):
            await storage.upload(b"png", MANIFEST, index=0)

    async def test_transport_error_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused")

        storage = ArweaveStorage(_client(handler), "devnet")

        with pytest.raises(NetworkError):
            await storage.upload(b"png", MANIFEST, index=0)


# ======================================================================
# IPFS
# ======================================================================


class TestIpfsStorage:
    async def test_uploads_image_then_linked_manifest(self):
        hashes = iter(["QmImg", "QmMeta"])
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"Hash": next(hashes)})

        storage = IpfsStorage(_client(handler), "pid", "secret", api_url="https://ipfs.test/api/v0")

        link = await storage.upload(b"png", MANIFEST, index=3)

        assert link == "https://ipfs.io/ipfs/QmMeta"
        assert [r.url.path for r in seen] == ["/api/v0/add", "/api/v0/add"]
        assert seen[0].headers["authorization"].startswith("Basic ")
        assert b"https://ipfs.io/ipfs/QmImg" in seen[1].content

    async def test_missing_hash(self):
        storage = IpfsStorage(_client(lambda request: httpx.Response(200, json={})), "p", "s")

        with pytest.raises(NetworkError, match="no hash"):
            await storage.upload(b"png", MANIFEST, index=0)


# ======================================================================
# S3
# ======================================================================


class TestS3Storage:
    async def test_content_addressed_keys(self):
        client = MagicMock()
        storage = S3Storage("my-bucket", client=client)

        link = await storage.upload(b"png", MANIFEST, index=0)

        image_key = hashlib.sha256(b"png").hexdigest() + ".png"
        image_call, manifest_call = client.put_object.call_args_list
        assert image_call.kwargs["Key"] == image_key
        assert image_call.kwargs["ContentType"] == "image/png"
        body = json.loads(manifest_call.kwargs["Body"])
        assert body["image"] == f"https://my-bucket.s3.amazonaws.com/{image_key}"
        assert link == f"https://my-bucket.s3.amazonaws.com/{manifest_call.kwargs['Key']}"
        assert link.endswith(".json")

    @pytest.mark.parametrize(
        "code, error",
        [
            ("SlowDown", RateLimitedError),
            ("AccessDenied", CredentialsRejectedError),
            ("InternalError", NetworkError),
            ("EntityTooLarge", PayloadRejectedError),
        ],
    )
    async def test_client_error_mapping(self, code, error):
        client = MagicMock()
        client.put_object.side_effect = ClientError(
            {"Error": {"Code": code, "Message": "x"}}, "PutObject"
        )

        with pytest.raises(error):
            await S3Storage("b", client=client).upload(b"png", MANIFEST, index=0)

    @pytest.mark.parametrize(
        "exc",
        [
            EndpointConnectionError(endpoint_url="https://s3"),
            ConnectionClosedError(endpoint_url="https://s3"),
            SSLError(endpoint_url="https://s3", error="handshake failed"),
            ProxyConnectionError(proxy_url="http://proxy:3128", error="refused"),
        ],
    )
    async def test_connection_error_is_transient(self, exc):
        client = MagicMock()
        client.put_object.side_effect = exc

        with pytest.raises(NetworkError):
            await S3Storage("b", client=client).upload(b"png", MANIFEST, index=0)
