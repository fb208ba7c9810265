"""Storage backends for item uploads.

All backends implement one capability, :meth:`StorageBackend.upload`, which
stores an image and its metadata manifest and returns the manifest's
stable link.  The manifest is rewritten so that ``image`` and
``properties.files[0].uri`` point at the stored image.

Three variants exist:

* ``arweave`` -- posts both files to the Arweave bundling service.
* ``ipfs``    -- adds both files through the Infura IPFS HTTP API.
* ``aws``     -- puts both files into an existing S3 bucket under
  content-hash keys.

The variant is chosen once at startup by :func:`build_storage`, which checks
the selected backend's credentials before any item is processed.  Library
exceptions (httpx, botocore) are translated into the
:mod:`mintctl.exceptions` upload taxonomy at the call site.
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import boto3
import httpx
from botocore.exceptions import ClientError, HTTPClientError, NoCredentialsError
from botocore.exceptions import ConnectionError as BotoConnectionError

from mintctl.constants import (
    ARWEAVE_GATEWAY,
    ARWEAVE_UPLOAD_ENDPOINT,
    IPFS_API_URL,
    IPFS_GATEWAY,
    MAX_NAME_LENGTH,
)
from mintctl.exceptions import (
    ConfigurationError,
    CredentialsRejectedError,
    NetworkError,
    PayloadRejectedError,
    RateLimitedError,
)
from mintctl.models import StorageKind

logger = logging.getLogger(__name__)

_S3_THROTTLE_CODES = {"SlowDown", "Throttling", "ThrottlingException", "RequestLimitExceeded"}
_S3_CREDENTIAL_CODES = {
    "AccessDenied",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "ExpiredToken",
    "NoSuchBucket",
}
_S3_SERVER_CODES = {"InternalError", "ServiceUnavailable", "RequestTimeout"}


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@dataclass
class StorageSettings:
    """Backend selection plus the credentials each backend needs."""

    kind: StorageKind
    env: str = "devnet"
    ipfs_project_id: str | None = None
    ipfs_secret: str | None = None
    aws_bucket: str | None = None
    arweave_endpoint: str = ARWEAVE_UPLOAD_ENDPOINT
    ipfs_api_url: str = IPFS_API_URL
    ipfs_gateway: str = IPFS_GATEWAY

    def validate(self) -> None:
        """Fail fast if the selected backend lacks what it needs.

        Raises:
            ConfigurationError: With a diagnostic naming the missing flag.
        """
        try:
            kind = StorageKind(self.kind)
        except ValueError:
            raise ConfigurationError(
                "Storage option must either be 'arweave', 'ipfs', or 'aws'."
            ) from None
        self.kind = kind

        if kind == StorageKind.IPFS and not (self.ipfs_project_id and self.ipfs_secret):
            raise ConfigurationError(
                "IPFS selected as storage option but Infura project id or secret key "
                "were not provided.\n"
                "Pass --ipfs-infura-project-id and --ipfs-infura-secret, or run: "
                "mintctl config set-ipfs-credentials"
            )
        if kind == StorageKind.AWS and not self.aws_bucket:
            raise ConfigurationError(
                "aws selected as storage option but existing bucket name "
                "(--aws-s3-bucket) not provided."
            )
        if kind == StorageKind.ARWEAVE and not self.env:
            raise ConfigurationError("arweave storage requires a cluster env")


# ---------------------------------------------------------------------------
# Manifest helpers
# ---------------------------------------------------------------------------


def parse_manifest(manifest: bytes, index: int) -> dict[str, Any]:
    """Decode and validate a metadata manifest.

    Raises:
        PayloadRejectedError: If the manifest is not a JSON object with a
            ``name`` that fits in a config line.
    """
    try:
        data = json.loads(manifest)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise PayloadRejectedError(f"item {index}: metadata is not valid JSON ({exc})") from exc
    if not isinstance(data, dict):
        raise PayloadRejectedError(f"item {index}: metadata must be a JSON object")

    name = data.get("name")
    if not isinstance(name, str) or not name:
        raise PayloadRejectedError(f"item {index}: metadata has no 'name'")
    if len(name.encode("utf-8")) > MAX_NAME_LENGTH:
        raise PayloadRejectedError(
            f"item {index}: name {name!r} is longer than {MAX_NAME_LENGTH} bytes"
        )
    return data


def link_image(manifest: dict[str, Any], image_link: str) -> dict[str, Any]:
    """Return a copy of *manifest* whose image references point at *image_link*."""
    linked = copy.deepcopy(manifest)
    linked["image"] = image_link
    files = linked.get("properties", {}).get("files")
    if isinstance(files, list) and files and isinstance(files[0], dict):
        files[0]["uri"] = image_link
    return linked


def _encode(manifest: dict[str, Any]) -> bytes:
    return json.dumps(manifest).encode("utf-8")


def _check_response(response: httpx.Response, index: int) -> None:
    status = response.status_code
    if status < 400:
        return
    detail = response.text[:200]
    if status == 429:
        raise RateLimitedError(f"item {index}: rate limited ({detail})")
    if status in (401, 403):
        raise CredentialsRejectedError(f"item {index}: credentials rejected ({status}: {detail})")
    if status >= 500:
        raise NetworkError(f"item {index}: server error {status} ({detail})")
    raise PayloadRejectedError(f"item {index}: rejected with {status} ({detail})")


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class StorageBackend(ABC):
    """Capability interface shared by every storage variant."""

    kind: StorageKind

    @abstractmethod
    async def upload(self, image: bytes, manifest: bytes, *, index: int) -> str:
        """Store *image* and *manifest*; return the manifest's link.

        Raises:
            UploadTransientError: On throttling, network failure or 5xx.
            UploadFatalError: On rejected payloads or credentials.
        """

    async def aclose(self) -> None:
        """Release network resources held by the backend."""


class _HttpBackend(StorageBackend):
    def __init__(self, http: httpx.AsyncClient) -> None:
        self._http = http

    async def _post(self, url: str, index: int, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._http.post(url, **kwargs)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"item {index}: request timed out ({exc})") from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"item {index}: {exc}") from exc
        _check_response(response, index)
        return response

    async def aclose(self) -> None:
        await self._http.aclose()


class ArweaveStorage(_HttpBackend):
    """Uploads through the Arweave bundling service.

    The service stores ``image.png`` and ``metadata.json`` together and
    reports one transaction per file; the manifest's transaction id becomes
    the link.
    """

    kind = StorageKind.ARWEAVE

    def __init__(
        self,
        http: httpx.AsyncClient,
        env: str,
        endpoint: str = ARWEAVE_UPLOAD_ENDPOINT,
    ) -> None:
        super().__init__(http)
        self._env = env
        self._endpoint = endpoint

    async def upload(self, image: bytes, manifest: bytes, *, index: int) -> str:
        document = link_image(parse_manifest(manifest, index), "image.png")
        files = [
            ("file[]", ("image.png", image, "image/png")),
            ("file[]", ("metadata.json", _encode(document), "application/json")),
        ]
        response = await self._post(self._endpoint, index, data={"env": self._env}, files=files)
        try:
            body = response.json()
        except ValueError as exc:
            raise NetworkError(f"item {index}: unreadable upload response") from exc
        if not isinstance(body, dict):
            raise NetworkError(f"item {index}: unexpected upload response {body!r:.80}")

        messages = body.get("messages") or []
        if not isinstance(messages, list):
            raise NetworkError(f"item {index}: unexpected upload messages {messages!r:.80}")
        for message in messages:
            if not isinstance(message, dict):
                continue
            if message.get("filename") == "manifest.json" and message.get("transactionId"):
                return f"{ARWEAVE_GATEWAY}/{message['transactionId']}"
        raise PayloadRejectedError(f"No transaction ID for upload: {index}")


class IpfsStorage(_HttpBackend):
    """Uploads through the Infura IPFS API; links are gateway URLs of CIDs."""

    kind = StorageKind.IPFS

    def __init__(
        self,
        http: httpx.AsyncClient,
        project_id: str,
        secret: str,
        api_url: str = IPFS_API_URL,
        gateway: str = IPFS_GATEWAY,
    ) -> None:
        super().__init__(http)
        self._auth = (project_id, secret)
        self._api_url = api_url.rstrip("/")
        self._gateway = gateway.rstrip("/")

    async def _add(self, content: bytes, filename: str, index: int) -> str:
        response = await self._post(
            f"{self._api_url}/add",
            index,
            params={"pin": "true"},
            files={"file": (filename, content)},
            auth=self._auth,
        )
        try:
            return response.json()["Hash"]
        except (ValueError, KeyError) as exc:
            raise NetworkError(f"item {index}: IPFS add returned no hash") from exc

    async def upload(self, image: bytes, manifest: bytes, *, index: int) -> str:
        document = parse_manifest(manifest, index)
        image_cid = await self._add(image, f"{index}.png", index)
        image_link = f"{self._gateway}/{image_cid}"
        manifest_cid = await self._add(
            _encode(link_image(document, image_link)), f"{index}.json", index
        )
        logger.debug("item %d: image %s manifest %s", index, image_cid, manifest_cid)
        return f"{self._gateway}/{manifest_cid}"


class S3Storage(StorageBackend):
    """Uploads into an existing S3 bucket under SHA-256 content keys."""

    kind = StorageKind.AWS

    def __init__(self, bucket: str, client: Any | None = None) -> None:
        self._bucket = bucket
        self._client = client if client is not None else boto3.client("s3")

    def _link(self, key: str) -> str:
        return f"https://{self._bucket}.s3.amazonaws.com/{key}"

    async def _put(self, content: bytes, extension: str, content_type: str, index: int) -> str:
        key = hashlib.sha256(content).hexdigest() + extension
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self._bucket,
                Key=key,
                Body=content,
                ContentType=content_type,
            )
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code in _S3_THROTTLE_CODES:
                raise RateLimitedError(f"item {index}: S3 throttled ({code})") from exc
            if code in _S3_CREDENTIAL_CODES:
                raise CredentialsRejectedError(f"item {index}: S3 refused access ({code})") from exc
            if code in _S3_SERVER_CODES:
                raise NetworkError(f"item {index}: S3 server error ({code})") from exc
            raise PayloadRejectedError(f"item {index}: S3 rejected object ({code})") from exc
        except NoCredentialsError as exc:
            raise CredentialsRejectedError(f"item {index}: no AWS credentials found") from exc
        except (BotoConnectionError, HTTPClientError) as exc:
            raise NetworkError(f"item {index}: {exc}") from exc
        return self._link(key)

    async def upload(self, image: bytes, manifest: bytes, *, index: int) -> str:
        document = parse_manifest(manifest, index)
        image_link = await self._put(image, ".png", "image/png", index)
        return await self._put(
            _encode(link_image(document, image_link)), ".json", "application/json", index
        )


def build_storage(
    settings: StorageSettings,
    http: httpx.AsyncClient | None = None,
    s3_client: Any | None = None,
) -> StorageBackend:
    """Validate *settings* and construct the selected backend.

    Raises:
        ConfigurationError: If required credentials are missing.
    """
    settings.validate()

    if settings.kind == StorageKind.AWS:
        return S3Storage(settings.aws_bucket, client=s3_client)  # type: ignore[arg-type]

    if http is None:
        http = httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0))
    if settings.kind == StorageKind.IPFS:
        return IpfsStorage(
            http,
            settings.ipfs_project_id,  # type: ignore[arg-type]
            settings.ipfs_secret,  # type: ignore[arg-type]
            api_url=settings.ipfs_api_url,
            gateway=settings.ipfs_gateway,
        )
    return ArweaveStorage(http, settings.env, endpoint=settings.arweave_endpoint)
