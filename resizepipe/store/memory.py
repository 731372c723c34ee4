from __future__ import annotations

import threading
from collections.abc import Mapping

from resizepipe.core.errors import ObjectNotFoundError
from resizepipe.store.base import ObjectStore, StoredObject


class InMemoryObjectStore(ObjectStore):
    def __init__(self) -> None:
        self._objects: dict[tuple[str, str], StoredObject] = {}
        self._lock = threading.Lock()
        self.put_count = 0

    def get(self, collection: str, key: str, version: str | None = None) -> StoredObject:
        with self._lock:
            item = self._objects.get((collection, key))
        if item is None:
            raise ObjectNotFoundError(f"Object not found: {collection}/{key}")
        if version is not None and item.version is not None and item.version != version:
            raise ObjectNotFoundError(f"Object version not found: {collection}/{key}@{version}")
        return item

    def put(
        self,
        collection: str,
        key: str,
        data: bytes,
        content_type: str,
        metadata: Mapping[str, str] | None = None,
    ) -> None:
        with self._lock:
            self._objects[(collection, key)] = StoredObject(
                data=bytes(data),
                content_type=content_type,
                metadata=dict(metadata or {}),
            )
            self.put_count += 1

    def keys(self, collection: str) -> list[str]:
        with self._lock:
            return sorted(key for owner, key in self._objects if owner == collection)
