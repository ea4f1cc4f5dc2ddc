"""Azure Blob storage adapter."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

from azure.core.exceptions import HttpResponseError, ResourceNotFoundError
from azure.identity import DefaultAzureCredential
from azure.storage.blob import BlobServiceClient, ContentSettings

from ...exceptions import BlobStoreError
from ...logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class BlobLocation:
    account_url: str | None
    container: str
    name: str


def parse_azure_uri(uri: str) -> BlobLocation:
    """Split `az://container/name` or `https://acct.blob.core.windows.net/container/name`."""
    parsed = urlparse(uri)
    if parsed.scheme.lower() in ("az", "azure"):
        container = parsed.netloc
        name = parsed.path.lstrip("/")
        account_url = None
    else:
        container, _, name = parsed.path.lstrip("/").partition("/")
        account_url = f"{parsed.scheme}://{parsed.netloc}"
    if not container:
        raise BlobStoreError(f"Azure URI has no container: {uri}")
    return BlobLocation(account_url=account_url, container=container, name=name)


class AzureBlobStore:
    """Blob store backed by Azure Blob Storage."""

    def __init__(self, service: BlobServiceClient):
        self._service = service

    @classmethod
    def for_uri(cls, uri: str, *, account_url: str = "", connection_string: str = "") -> AzureBlobStore:
        if connection_string:
            return cls(BlobServiceClient.from_connection_string(conn_str=connection_string))
        target_account = parse_azure_uri(uri).account_url or account_url
        if not target_account:
            raise BlobStoreError("Azure Blob account URL is required when no connection string is provided.")
        return cls(BlobServiceClient(account_url=target_account, credential=DefaultAzureCredential()))

    def _blob(self, uri: str):
        location = parse_azure_uri(uri)
        if not location.name:
            raise BlobStoreError(f"Azure URI has no blob name: {uri}")
        return self._service.get_blob_client(container=location.container, blob=location.name)

    def local_path(self, uri: str) -> Path | None:
        return None

    def ensure_dir(self, uri: str) -> None:
        # Blob prefixes exist implicitly once a blob is written under them.
        return

    def write_bytes(self, uri: str, data: bytes, *, content_type: str | None = None) -> None:
        settings = ContentSettings(content_type=content_type) if content_type else None
        try:
            self._blob(uri).upload_blob(data, overwrite=True, content_settings=settings)
        except HttpResponseError as exc:
            raise BlobStoreError(f"Failed to upload blob {uri}") from exc

    def read_bytes(self, uri: str) -> bytes:
        try:
            return self._blob(uri).download_blob().readall()
        except ResourceNotFoundError as exc:
            raise BlobStoreError(f"Blob not found: {uri}") from exc
        except HttpResponseError as exc:
            raise BlobStoreError(f"Failed to download blob {uri}") from exc

    def copy(self, src_uri: str, dst_uri: str) -> None:
        self.write_bytes(dst_uri, self.read_bytes(src_uri))

    def exists(self, uri: str) -> bool:
        try:
            return bool(self._blob(uri).exists())
        except HttpResponseError:
            logger.debug("Existence check failed for %s", uri, exc_info=True)
            return False
