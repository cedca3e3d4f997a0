from __future__ import annotations

from pathlib import Path
from typing import Protocol


class BlobStore(Protocol):
    def read(self, path: str) -> bytes: ...
    def write(self, path: str, data: bytes) -> None: ...
    def exists(self, path: str) -> bool: ...
    def create(self, path: str, data: bytes) -> None: ...


class BlobNotFound(KeyError):
    pass


class BlobExists(FileExistsError):
    pass


def _norm_rel(path: str) -> str:
    parts = [p for p in path.replace("\\", "/").split("/") if p not in ("", ".", "..")]
    return "/".join(parts)


def blob_key(doc_id: str, version: str, kind: str, suffix: str) -> str:
    """Flat key for one artifact of a document version."""
    return _norm_rel(f"{kind}/{doc_id}-{version}.{suffix}")


class LocalBlobStore:
    """Blob store backed by a local directory."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _abs(self, path: str) -> Path:
        rel = _norm_rel(path)
        if not rel:
            raise ValueError("empty blob path")
        return self.root / rel

    def read(self, path: str) -> bytes:
        p = self._abs(path)
        if not p.is_file():
            raise BlobNotFound(path)
        return p.read_bytes()

    def write(self, path: str, data: bytes) -> None:
        p = self._abs(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)

    def exists(self, path: str) -> bool:
        return self._abs(path).is_file()

    def create(self, path: str, data: bytes) -> None:
        """Write *data* only if nothing is stored at *path* yet."""
        p = self._abs(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(p, "xb") as f:
                f.write(data)
        except FileExistsError as exc:
            raise BlobExists(path) from exc
