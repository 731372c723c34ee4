from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field


@dataclass(frozen=True)
class StoredObject:
    data: bytes
    content_type: str
    metadata: dict[str, str] = field(default_factory=dict)
    version: str | None = None


class ObjectStore(ABC):
    @abstractmethod
    def get(self, collection: str, key: str, version: str | None = None) -> StoredObject:
        """Fetch an object; raises ObjectNotFoundError or StoreUnavailableError."""

    @abstractmethod
    def put(
        self,
        collection: str,
        key: str,
        data: bytes,
        content_type: str,
        metadata: Mapping[str, str] | None = None,
    ) -> None:
        """Write an object; raises StoreUnavailableError or StorePermissionError."""
