from __future__ import annotations

from pathlib import Path


class PathSafetyError(ValueError):
    pass


def validate_object_key(raw_key: str) -> Path:
    if not raw_key or not raw_key.strip():
        raise PathSafetyError("Object key cannot be blank")
    if raw_key.startswith("/"):
        raise PathSafetyError("Object key must be relative")
    if "\\" in raw_key or "\x00" in raw_key:
        raise PathSafetyError("Object key contains forbidden characters")
    if ".." in Path(raw_key).parts:
        raise PathSafetyError("Path traversal is not allowed")
    if "~" in raw_key:
        raise PathSafetyError("Home expansion is not allowed")
    if "$" in raw_key:
        raise PathSafetyError("Environment variable expansion is not allowed")
    return Path(raw_key)


def validate_collection_name(raw_name: str) -> str:
    name = raw_name.strip()
    if not name:
        raise PathSafetyError("Collection name cannot be blank")
    if "/" in name or "\\" in name or name in {".", ".."}:
        raise PathSafetyError(f"Invalid collection name: {raw_name}")
    return name


def resolve_under_root(root: Path, collection: str, raw_key: str) -> Path:
    rel = validate_object_key(raw_key)
    base = (root / validate_collection_name(collection)).resolve(strict=False)
    candidate = (base / rel).resolve(strict=False)

    if base in candidate.parents:
        return candidate

    raise PathSafetyError("Path escapes store root")
