from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol

import requests

from ComplianceBackend.errors import BlobStorageError

logger = logging.getLogger(__name__)

DEFAULT_BLOB_PREFIX = "rag-documents"
DEFAULT_BLOB_STORE = "rag-documents"
DEFAULT_CONTENT_TYPE = "application/octet-stream"

_UNSAFE_SEGMENT = re.compile(r"[^a-zA-Z0-9._\-]+")


@dataclass(frozen=True)
class BlobLocation:
    provider: str
    store: str
    key: str
    path: str
    url: Optional[str] = None
    size: Optional[int] = None
    etag: Optional[str] = None
    content_type: Optional[str] = None

    def to_dict(self) -> dict:
        out = asdict(self)
        out["contentType"] = out.pop("content_type")
        return out


class BlobStore(Protocol):
    provider: str

    def put(
        self,
        body: bytes,
        *,
        content_type: Optional[str],
        user_id: str,
        document_id: str,
        filename: str,
        metadata: Optional[dict] = None,
    ) -> BlobLocation: ...

    def delete(self, key: str) -> None: ...


def sanitize_path_segment(value: Any, fallback: str) -> str:
    if not isinstance(value, str):
        return fallback
    trimmed = value.strip()
    if not trimmed:
        return fallback
    sanitized = _UNSAFE_SEGMENT.sub("-", trimmed)
    # "." and ".." would walk the key hierarchy
    if not sanitized.strip("."):
        return fallback
    return sanitized


def sanitize_path_prefix(prefix: Any) -> str:
    if not isinstance(prefix, str):
        return ""
    parts = [sanitize_path_segment(p, "") for p in prefix.split("/")]
    return "/".join(p for p in parts if p)


# First of RAG_BLOB_PREFIX / BLOB_PREFIX that survives sanitizing, else the default
def configured_prefix() -> str:
    for name in ("RAG_BLOB_PREFIX", "BLOB_PREFIX"):
        candidate = (os.getenv(name) or "").strip().strip("/")
        sanitized = sanitize_path_prefix(candidate)
        if sanitized:
            return sanitized
    return DEFAULT_BLOB_PREFIX


def configured_store_name() -> str:
    return (os.getenv("RAG_BLOB_STORE") or "").strip() or DEFAULT_BLOB_STORE


# Key layout: {prefix}/{userId}/{documentId}/{isoTimestamp}-{filename}
def build_object_key(
    *,
    prefix: str,
    user_id: str,
    document_id: str,
    filename: str,
    now: Optional[datetime] = None,
) -> str:
    now = now or datetime.now(timezone.utc)
    stamp = now.isoformat(timespec="milliseconds").replace("+00:00", "Z")
    stamp = re.sub(r"[:.]", "-", stamp)
    segments = [
        prefix,
        sanitize_path_segment(user_id, "anonymous"),
        sanitize_path_segment(document_id, format(int(time.time() * 1000), "x")),
        f"{stamp}-{sanitize_path_segment(filename, 'document')}",
    ]
    return "/".join(s for s in segments if s)


# Flattens user metadata to non-empty strings (object stores only carry string headers)
def normalize_blob_metadata(metadata: Optional[dict]) -> dict[str, str]:
    out: dict[str, str] = {}
    for key, value in (metadata or {}).items():
        if value is None:
            continue
        if isinstance(value, str):
            if value.strip():
                out[str(key)] = value.strip()
            continue
        try:
            out[str(key)] = json.dumps(value)
        except (TypeError, ValueError):
            out[str(key)] = str(value)
    return out


# Writes objects under a local directory; used for development and single-node deployments
class LocalBlobStore:
    provider = "local"

    def __init__(self, root: str | Path, *, prefix: Optional[str] = None, store: Optional[str] = None):
        self.root = Path(root)
        self.prefix = prefix if prefix is not None else configured_prefix()
        self.store = store or configured_store_name()

    def _path_for(self, key: str) -> Path:
        root = self.root.resolve()
        path = (root / self.store / key).resolve()
        if not path.is_relative_to(root):
            raise BlobStorageError("Blob key resolves outside the storage root", details={"key": key})
        return path

    def put(self, body, *, content_type, user_id, document_id, filename, metadata=None) -> BlobLocation:
        if not body:
            raise BlobStorageError("Blob upload body is required")
        key = build_object_key(prefix=self.prefix, user_id=user_id, document_id=document_id, filename=filename)
        path = self._path_for(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(body)
            meta = normalize_blob_metadata(metadata)
            if meta:
                path.with_name(path.name + ".meta.json").write_text(json.dumps(meta))
        except OSError as e:
            raise BlobStorageError(f"Failed to write blob: {e}", details={"key": key}) from e

        return BlobLocation(
            provider=self.provider,
            store=self.store,
            key=key,
            path=f"{self.store}/{key}",
            url=path.resolve().as_uri(),
            size=len(body),
            etag=hashlib.md5(body).hexdigest(),
            content_type=content_type or DEFAULT_CONTENT_TYPE,
        )

    def delete(self, key: str) -> None:
        path = self._path_for(key)
        path.unlink(missing_ok=True)
        path.with_name(path.name + ".meta.json").unlink(missing_ok=True)


# PUT/DELETE against an HTTP object service (S3-style presigned gateway or blob proxy)
class HttpBlobStore:
    provider = "http"

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        prefix: Optional[str] = None,
        store: Optional[str] = None,
        timeout_seconds: float = 15.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.prefix = prefix if prefix is not None else configured_prefix()
        self.store = store or configured_store_name()
        self.timeout_seconds = timeout_seconds

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    def _url_for(self, key: str) -> str:
        return f"{self.base_url}/{self.store}/{key}"

    def put(self, body, *, content_type, user_id, document_id, filename, metadata=None) -> BlobLocation:
        if not body:
            raise BlobStorageError("Blob upload body is required")
        key = build_object_key(prefix=self.prefix, user_id=user_id, document_id=document_id, filename=filename)
        url = self._url_for(key)
        resolved_type = content_type or DEFAULT_CONTENT_TYPE
        headers = {**self._headers(), "Content-Type": resolved_type}
        for name, value in normalize_blob_metadata(metadata).items():
            headers[f"x-amz-meta-{name.lower()}"] = value
        try:
            resp = requests.put(url, data=body, headers=headers, timeout=self.timeout_seconds)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise BlobStorageError(f"Blob upload failed: {e}", details={"key": key}) from e

        return BlobLocation(
            provider=self.provider,
            store=self.store,
            key=key,
            path=f"{self.store}/{key}",
            url=url,
            size=len(body),
            etag=(resp.headers.get("ETag") or "").strip('"') or None,
            content_type=resolved_type,
        )

    def delete(self, key: str) -> None:
        try:
            resp = requests.delete(self._url_for(key), headers=self._headers(), timeout=self.timeout_seconds)
            if resp.status_code != 404:
                resp.raise_for_status()
        except requests.RequestException as e:
            raise BlobStorageError(f"Blob delete failed: {e}", details={"key": key}) from e


_blob_store: Optional[BlobStore] = None
_blob_store_loaded = False


# Builds the configured blob store once per process; None when BLOB_BACKEND=none
def get_blob_store() -> Optional[BlobStore]:
    global _blob_store, _blob_store_loaded
    if _blob_store_loaded:
        return _blob_store

    backend = (os.getenv("BLOB_BACKEND") or "local").strip().lower()
    if backend == "none":
        _blob_store = None
    elif backend == "http":
        base_url = os.getenv("BLOB_HTTP_BASE_URL")
        if not base_url:
            raise RuntimeError("BLOB_HTTP_BASE_URL must be set when BLOB_BACKEND=http.")
        _blob_store = HttpBlobStore(base_url, token=os.getenv("BLOB_HTTP_TOKEN") or None)
    elif backend == "local":
        _blob_store = LocalBlobStore(os.getenv("BLOB_LOCAL_ROOT") or "./blob-storage")
    else:
        raise RuntimeError(f"Unsupported BLOB_BACKEND: {backend}")

    _blob_store_loaded = True
    logger.info("blob_store.init: backend=%s", backend)
    return _blob_store


def reset_blob_store() -> None:
    global _blob_store, _blob_store_loaded
    _blob_store = None
    _blob_store_loaded = False
