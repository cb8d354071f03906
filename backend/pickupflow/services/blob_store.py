"""Content-addressable storage for proof photos and documents."""
from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Protocol

from pickupflow.core.config import get_settings
from pickupflow.core.logging import logger


class BlobStore(Protocol):
    def put(self, content: bytes, suffix: str = "") -> str:
        ...

    def delete(self, reference: str) -> None:
        ...


class LocalBlobStore:
    """Stores blobs on disk under their SHA-256 digest.

    References look like ``blob://<sha256><suffix>``; the core only keeps the
    reference string and never reads content back.
    """

    SCHEME = "blob://"

    def __init__(self, root: str | None = None) -> None:
        settings = get_settings()
        self._root = Path(root or settings.upload_dir)
        self._root.mkdir(parents=True, exist_ok=True)

    def _path_for(self, reference: str) -> Path:
        if not reference.startswith(self.SCHEME):
            raise ValueError(f"Unsupported blob reference '{reference}'")
        name = reference[len(self.SCHEME):]
        if not name or "/" in name or name.startswith("."):
            raise ValueError(f"Malformed blob reference '{reference}'")
        return self._root / name[:2] / name

    def put(self, content: bytes, suffix: str = "") -> str:
        digest = hashlib.sha256(content).hexdigest()
        suffix = suffix if suffix.startswith(".") or not suffix else f".{suffix}"
        reference = f"{self.SCHEME}{digest}{suffix.lower()}"
        path = self._path_for(reference)
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(path.suffix + ".tmp")
            tmp_path.write_bytes(content)
            tmp_path.replace(path)
        logger.info("Blob stored", reference=reference, size=len(content))
        return reference

    def delete(self, reference: str) -> None:
        path = self._path_for(reference)
        if not path.exists():
            raise FileNotFoundError(reference)
        path.unlink()

    def exists(self, reference: str) -> bool:
        try:
            return self._path_for(reference).exists()
        except ValueError:
            return False
