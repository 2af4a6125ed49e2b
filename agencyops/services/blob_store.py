"""
Blob store — opaque storage for task attachments.

Contract: ``store(data, content_type) -> {"url", "size"}`` and
``fetch(url) -> bytes``. Callers treat the url as an opaque key.

Backends:
    - LocalBlobStore: files under ``BLOB_STORAGE_DIR`` (dev / single node).
    - MemoryBlobStore: process memory (tests).
"""

import logging
import mimetypes
import os
import threading
import uuid

from flask import current_app

from agencyops.core.exceptions import DependencyFailure, NotFoundError

logger = logging.getLogger(__name__)

EXTENSION_KEY = "agencyops.blob_store"


def _new_key(content_type: str) -> str:
    ext = mimetypes.guess_extension(content_type or "") or ".bin"
    return f"{uuid.uuid4().hex}{ext}"


class LocalBlobStore:
    scheme = "file"

    def __init__(self, root: str):
        self.root = root

    def _path_for(self, url: str) -> str:
        prefix = f"{self.scheme}://"
        if not url.startswith(prefix):
            raise NotFoundError("Blob", url)
        key = url[len(prefix):]
        # Keys are generated here; anything with a path component is not ours
        if os.path.basename(key) != key:
            raise NotFoundError("Blob", url)
        return os.path.join(self.root, key)

    def store(self, data: bytes, content_type: str) -> dict:
        key = _new_key(content_type)
        try:
            os.makedirs(self.root, exist_ok=True)
            with open(os.path.join(self.root, key), "wb") as fh:
                fh.write(data)
        except OSError as exc:
            logger.error("Blob write failed: %s", exc)
            raise DependencyFailure("blob_store") from exc
        return {"url": f"{self.scheme}://{key}", "size": len(data)}

    def fetch(self, url: str) -> bytes:
        path = self._path_for(url)
        if not os.path.exists(path):
            raise NotFoundError("Blob", url)
        try:
            with open(path, "rb") as fh:
                return fh.read()
        except OSError as exc:
            logger.error("Blob read failed: %s", exc)
            raise DependencyFailure("blob_store") from exc


class MemoryBlobStore:
    scheme = "memory"

    def __init__(self):
        self._blobs: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def store(self, data: bytes, content_type: str) -> dict:
        url = f"{self.scheme}://{_new_key(content_type)}"
        with self._lock:
            self._blobs[url] = bytes(data)
        return {"url": url, "size": len(data)}

    def fetch(self, url: str) -> bytes:
        with self._lock:
            if url not in self._blobs:
                raise NotFoundError("Blob", url)
            return self._blobs[url]


def init_blob_store(app):
    if app.config.get("BLOB_BACKEND") == "memory":
        store = MemoryBlobStore()
    else:
        store = LocalBlobStore(app.config["BLOB_STORAGE_DIR"])
    app.extensions[EXTENSION_KEY] = store
    return store


def get_blob_store():
    return current_app.extensions[EXTENSION_KEY]
