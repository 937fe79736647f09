"""Byte blob storage for source PDFs and rendered page images."""

from __future__ import annotations

import os
import re
import threading
import time
from typing import Dict, Optional

from ..errors import TransientIOError
from ..logging import get_logger
from ..paths import state_dir

LOG = get_logger("pipeline-blobstore")

_SAFE_KEY = re.compile(r"[^A-Za-z0-9._/-]+")


def _clean_key(key: str) -> str:
    cleaned = _SAFE_KEY.sub("_", (key or "").strip()).strip("/")
    parts = [p for p in cleaned.split("/") if p not in ("", ".", "..")]
    if not parts:
        raise ValueError(f"invalid blob key: {key!r}")
    return "/".join(parts)


class MemoryBlobStore:
    """Process-local store, used by tests and dry runs."""

    def __init__(self) -> None:
        self._data: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, key: str, data: bytes) -> str:
        ref = _clean_key(key)
        with self._lock:
            self._data[ref] = bytes(data)
        return ref

    def get(self, ref: str) -> bytes:
        with self._lock:
            try:
                return self._data[ref]
            except KeyError:
                raise KeyError(f"blob not found: {ref}") from None

    def exists(self, ref: str) -> bool:
        with self._lock:
            return ref in self._data


class LocalBlobStore:
    """Files under <project-root>/var/blobs, written atomically via a temp file."""

    def __init__(self, root_dir: Optional[str] = None, *, attempts: int = 3, sleep_seconds: float = 0.2) -> None:
        self.base_dir = state_dir("blobs", root_dir)
        self.attempts = max(1, attempts)
        self.sleep_seconds = sleep_seconds
        LOG.info(f"Blob store at {self.base_dir}")

    def _path(self, ref: str) -> str:
        return os.path.join(self.base_dir, *_clean_key(ref).split("/"))

    def put(self, key: str, data: bytes) -> str:
        ref = _clean_key(key)
        path = self._path(ref)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp = f"{path}.{os.getpid()}.{threading.get_ident()}.tmp"
        last_exc: Optional[OSError] = None
        for i in range(self.attempts):
            try:
                with open(tmp, "wb") as f:
                    f.write(data)
                os.replace(tmp, path)
                return ref
            except OSError as exc:
                last_exc = exc
                LOG.warning(f"Write attempt {i+1}/{self.attempts} failed for {ref}: {exc}")
                time.sleep(self.sleep_seconds)
        raise TransientIOError(f"could not write blob {ref}: {last_exc}")

    def get(self, ref: str) -> bytes:
        path = self._path(ref)
        if not os.path.isfile(path):
            raise KeyError(f"blob not found: {ref}")
        last_exc: Optional[OSError] = None
        for i in range(self.attempts):
            try:
                with open(path, "rb") as f:
                    return f.read()
            except OSError as exc:
                last_exc = exc
                LOG.warning(f"Read attempt {i+1}/{self.attempts} failed for {ref}: {exc}")
                time.sleep(self.sleep_seconds)
        raise TransientIOError(f"could not read blob {ref}: {last_exc}")

    def exists(self, ref: str) -> bool:
        try:
            return os.path.isfile(self._path(ref))
        except ValueError:
            return False
