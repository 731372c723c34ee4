from resizepipe.store.base import ObjectStore, StoredObject
from resizepipe.store.factory import build_object_store, get_object_store
from resizepipe.store.filesystem import FilesystemObjectStore
from resizepipe.store.memory import InMemoryObjectStore
from resizepipe.store.s3 import S3ObjectStore

__all__ = [
    "ObjectStore",
    "StoredObject",
    "FilesystemObjectStore",
    "InMemoryObjectStore",
    "S3ObjectStore",
    "build_object_store",
    "get_object_store",
]
