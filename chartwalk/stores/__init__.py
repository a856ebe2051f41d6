"""Persistent digest stores used to skip unchanged applications."""

from .hash_store import (
    HashStore,
    HashStoreError,
    HashStrategy,
    JSONHashStore,
    SumFileStore,
    build_hash_store,
)

__all__ = [
    "HashStore",
    "HashStoreError",
    "HashStrategy",
    "JSONHashStore",
    "SumFileStore",
    "build_hash_store",
]
