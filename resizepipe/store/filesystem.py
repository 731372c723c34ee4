from __future__ import annotations

import json
import mimetypes
import os
import tempfile
from collections.abc import Mapping
from pathlib import Path

from resizepipe.core.errors import ObjectNotFoundError, StorePermissionError, StoreUnavailableError
from resizepipe.core.path_safety import PathSafetyError, resolve_under_root
from resizepipe.store.base import ObjectStore, StoredObject


class FilesystemObjectStore(ObjectStore):
    def __init__(self, root: Path):
        self._root = root.resolve(strict=False)
        self._objects_root = self._root / "objects"
        self._metadata_root = self._root / "metadata"

    def _paths(self, collection: str, key: str) -> tuple[Path, Path]:
        try:
            object_path = resolve_under_root(self._objects_root, collection, key)
            metadata_path = resolve_under_root(self._metadata_root, collection, f"{key}.json")
        except PathSafetyError as exc:
            raise StorePermissionError(f"Unsafe object location {collection}/{key}: {exc}") from exc
        return object_path, metadata_path

    def get(self, collection: str, key: str, version: str | None = None) -> StoredObject:
        object_path, metadata_path = self._paths(collection, key)
        try:
            data = object_path.read_bytes()
        except (FileNotFoundError, IsADirectoryError) as exc:
            raise ObjectNotFoundError(f"Object not found: {collection}/{key}") from exc
        except PermissionError as exc:
            raise StorePermissionError(f"Permission denied reading {collection}/{key}") from exc
        except OSError as exc:
            raise StoreUnavailableError(f"Failed to read {collection}/{key}: {exc}") from exc

        content_type = mimetypes.guess_type(object_path.name)[0] or "application/octet-stream"
        metadata: dict[str, str] = {}
        try:
            raw = json.loads(metadata_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raw = None
        except (OSError, ValueError) as exc:
            raise StoreUnavailableError(f"Failed to read metadata for {collection}/{key}: {exc}") from exc
        if isinstance(raw, dict):
            content_type = str(raw.get("content_type") or content_type)
            metadata = {str(k): str(v) for k, v in dict(raw.get("metadata") or {}).items()}

        return StoredObject(data=data, content_type=content_type, metadata=metadata, version=version)

    def put(
        self,
        collection: str,
        key: str,
        data: bytes,
        content_type: str,
        metadata: Mapping[str, str] | None = None,
    ) -> None:
        object_path, metadata_path = self._paths(collection, key)
        sidecar = json.dumps(
            {"content_type": content_type, "metadata": dict(metadata or {})},
            sort_keys=True,
        ).encode("utf-8")
        try:
            self._atomic_write(metadata_path, sidecar)
            self._atomic_write(object_path, data)
        except PermissionError as exc:
            raise StorePermissionError(f"Permission denied writing {collection}/{key}") from exc
        except OSError as exc:
            raise StoreUnavailableError(f"Failed to write {collection}/{key}: {exc}") from exc

    def _atomic_write(self, target: Path, payload: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=".tmp-", dir=target.parent)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, target)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise
