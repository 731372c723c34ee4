from __future__ import annotations

from functools import lru_cache

from resizepipe.core.config import Settings, get_settings
from resizepipe.store.base import ObjectStore
from resizepipe.store.filesystem import FilesystemObjectStore
from resizepipe.store.memory import InMemoryObjectStore
from resizepipe.store.s3 import S3ObjectStore


def build_object_store(settings: Settings) -> ObjectStore:
    if settings.store_backend == "memory":
        return InMemoryObjectStore()
    if settings.store_backend == "filesystem":
        return FilesystemObjectStore(settings.store_root)
    return S3ObjectStore(region_name=settings.s3_region, endpoint_url=settings.s3_endpoint_url)


@lru_cache(maxsize=1)
def get_object_store() -> ObjectStore:
    return build_object_store(get_settings())
