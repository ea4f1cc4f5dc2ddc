"""Blob stores for reading sources and publishing derivative trees.

Locations are URIs: plain paths and `file://` map to the local filesystem,
`http(s)://` goes through requests (GET/PUT), and Azure Blob URIs
(`az://container/prefix` or `https://<account>.blob.core.windows.net/...`)
use the Azure SDK.
"""

from __future__ import annotations

import mimetypes
import shutil
from pathlib import Path
from typing import Protocol
from urllib.parse import unquote, urlparse

import requests
from requests import RequestException

from ...exceptions import BlobStoreError
from ...logger import get_logger
from ...models import PipelineOptions
from ...utils import DEFAULT_HEADERS, join_uri

logger = get_logger(__name__)

mimetypes.add_type("image/webp", ".webp")
mimetypes.add_type("image/jp2", ".jp2")


class BlobStore(Protocol):
    def ensure_dir(self, uri: str) -> None: ...

    def write_bytes(self, uri: str, data: bytes, *, content_type: str | None = None) -> None: ...

    def read_bytes(self, uri: str) -> bytes: ...

    def copy(self, src_uri: str, dst_uri: str) -> None: ...

    def exists(self, uri: str) -> bool: ...

    def local_path(self, uri: str) -> Path | None: ...


def guess_content_type(name: str) -> str:
    if name.endswith(".json"):
        return "application/json"
    return mimetypes.guess_type(name)[0] or "application/octet-stream"


def is_local_uri(uri: str) -> bool:
    scheme = urlparse(str(uri)).scheme.lower()
    # Single letters are Windows drive prefixes (C:\...).
    return scheme in ("", "file") or len(scheme) == 1


class LocalBlobStore:
    """Plain filesystem paths and `file://` URIs."""

    def local_path(self, uri: str) -> Path:
        parsed = urlparse(str(uri))
        if parsed.scheme.lower() == "file":
            return Path(unquote(parsed.path))
        return Path(str(uri)).expanduser()

    def ensure_dir(self, uri: str) -> None:
        try:
            self.local_path(uri).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BlobStoreError(f"Cannot create directory {uri}: {exc}") from exc

    def write_bytes(self, uri: str, data: bytes, *, content_type: str | None = None) -> None:
        path = self.local_path(uri)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise BlobStoreError(f"Cannot write {uri}: {exc}") from exc

    def read_bytes(self, uri: str) -> bytes:
        try:
            return self.local_path(uri).read_bytes()
        except OSError as exc:
            raise BlobStoreError(f"Cannot read {uri}: {exc}") from exc

    def copy(self, src_uri: str, dst_uri: str) -> None:
        dst = self.local_path(dst_uri)
        try:
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(self.local_path(src_uri), dst)
        except OSError as exc:
            raise BlobStoreError(f"Cannot copy {src_uri} -> {dst_uri}: {exc}") from exc

    def exists(self, uri: str) -> bool:
        return self.local_path(uri).exists()


class HttpBlobStore:
    """Reads with GET and writes with PUT, e.g. against pre-signed object-store URLs."""

    def __init__(self, session: requests.Session | None = None, *, timeout: int = 30):
        self.session = session or requests.Session()
        self.session.headers.update(DEFAULT_HEADERS)
        self.timeout = timeout

    def local_path(self, uri: str) -> None:
        return None

    def ensure_dir(self, uri: str) -> None:
        return

    def read_bytes(self, uri: str) -> bytes:
        try:
            resp = self.session.get(uri, timeout=self.timeout)
            resp.raise_for_status()
        except RequestException as exc:
            raise BlobStoreError(f"Cannot read {uri}: {exc}") from exc
        return resp.content

    def write_bytes(self, uri: str, data: bytes, *, content_type: str | None = None) -> None:
        headers = {"Content-Type": content_type or guess_content_type(uri)}
        try:
            resp = self.session.put(uri, data=data, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
        except RequestException as exc:
            raise BlobStoreError(f"Cannot write {uri}: {exc}") from exc

    def copy(self, src_uri: str, dst_uri: str) -> None:
        self.write_bytes(dst_uri, self.read_bytes(src_uri))

    def exists(self, uri: str) -> bool:
        try:
            resp = self.session.head(uri, timeout=self.timeout, allow_redirects=True)
        except RequestException:
            logger.debug("HEAD failed for %s", uri, exc_info=True)
            return False
        return resp.status_code < 400


def _is_azure_uri(uri: str) -> bool:
    parsed = urlparse(uri)
    scheme = parsed.scheme.lower()
    if scheme in ("az", "azure"):
        return True
    return scheme == "https" and (parsed.hostname or "").endswith(".blob.core.windows.net")


def get_blob_store(uri: str, options: PipelineOptions | None = None) -> BlobStore:
    """Pick the blob store that understands `uri`."""
    if is_local_uri(uri):
        return LocalBlobStore()
    if _is_azure_uri(uri):
        from .azure_blob import AzureBlobStore

        return AzureBlobStore.for_uri(
            uri,
            account_url=options.azure_account_url if options else "",
            connection_string=options.azure_connection_string if options else "",
        )
    if urlparse(uri).scheme.lower() in ("http", "https"):
        return HttpBlobStore(timeout=options.request_timeout if options else 30)
    raise BlobStoreError(f"Unsupported storage location: {uri}")


def publish_directory(local_dir: Path, store: BlobStore, dest_uri: str) -> int:
    """Copy every file under `local_dir` to `dest_uri`, keeping relative paths."""
    store.ensure_dir(dest_uri)
    count = 0
    for path in sorted(p for p in local_dir.rglob("*") if p.is_file()):
        rel = path.relative_to(local_dir).as_posix()
        store.write_bytes(join_uri(dest_uri, rel), path.read_bytes(), content_type=guess_content_type(path.name))
        count += 1
    logger.info("Published %d file(s) from %s to %s", count, local_dir, dest_uri)
    return count


def fetch_to_file(store: BlobStore, uri: str, dest: Path) -> Path:
    """Materialize `uri` as a local file, reading through the store when it is remote."""
    local = store.local_path(uri)
    if local is not None:
        return local
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_bytes(store.read_bytes(uri))
    return dest
