"""Digest stores keyed by application name."""

from __future__ import annotations

import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Callable, Dict

import yaml

from ..logging import get_logger

GENERATED_KEY = "//"
GENERATED_MARKER = "AUTO GENERATED. DO NOT EDIT."
JSON_FILENAME = "hashes.json"
SUM_FILENAME = "hash.sum"

logger = get_logger("stores")


class HashStoreError(RuntimeError):
    """Raised when stored digests cannot be read or persisted."""


class HashStrategy(str, Enum):
    """Whether a store may write digests or only read them."""

    READ_WRITE = "readwrite"
    READ = "read"


class HashStore(ABC):
    """Maps application names to the digest of their last render."""

    @abstractmethod
    def add(self, name: str, digest: str) -> None:
        """Record ``digest`` for ``name``."""

    @abstractmethod
    def get(self, name: str) -> str:
        """Return the stored digest, or ``""`` when none exists."""

    @abstractmethod
    def save(self) -> None:
        """Persist pending digests."""


class JSONHashStore(HashStore):
    """Keeps every digest in one JSON file written on :meth:`save`.

    The reserved ``"//"`` entry marks the file as generated. Application names
    are Kubernetes object names and never contain ``/``.
    """

    def __init__(self, path: Path, strategy: HashStrategy = HashStrategy.READ_WRITE) -> None:
        self.path = path
        self.strategy = HashStrategy(strategy)
        self._lock = threading.Lock()
        self._hashes = self._load(path)
        self._hashes[GENERATED_KEY] = GENERATED_MARKER

    def add(self, name: str, digest: str) -> None:
        with self._lock:
            self._hashes[name] = digest

    def get(self, name: str) -> str:
        with self._lock:
            return self._hashes.get(name, "")

    def save(self) -> None:
        if self.strategy is HashStrategy.READ:
            return
        with self._lock:
            payload = json.dumps(self._hashes, indent=2, sort_keys=True)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            _atomic_write(self.path, payload + "\n")
        except OSError as exc:
            raise HashStoreError(f"error writing hashes to {self.path}: {exc}") from exc

    @staticmethod
    def _load(path: Path) -> Dict[str, str]:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise HashStoreError(f"error reading hashes from {path}: {exc}") from exc

        if not text.strip():
            return {}
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            # Start from scratch so the next save produces a valid file.
            logger.warning("Unable to parse hashes from %s: %s", path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("Unable to parse hashes from %s: expected a mapping", path)
            return {}
        return {
            key: value
            for key, value in data.items()
            if isinstance(key, str) and isinstance(value, str)
        }


class SumFileStore(HashStore):
    """Writes each digest to ``<root>/<name>/hash.sum`` as soon as it is added."""

    def __init__(self, root: Path, strategy: HashStrategy = HashStrategy.READ_WRITE) -> None:
        self.root = root
        self.strategy = HashStrategy(strategy)

    def add(self, name: str, digest: str) -> None:
        if self.strategy is HashStrategy.READ:
            return
        target = self.filepath(name)
        data = yaml.safe_dump({"hash": digest}, default_flow_style=False)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            _atomic_write(target, data)
        except OSError as exc:
            raise HashStoreError(f"error writing file hash to {target}: {exc}") from exc

    def get(self, name: str) -> str:
        target = self.filepath(name)
        try:
            text = target.read_text(encoding="utf-8")
        except FileNotFoundError:
            # Nodes rendered for the first time (and the root) have no sum file.
            return ""
        except OSError as exc:
            raise HashStoreError(f"error reading file hash from {target}: {exc}") from exc

        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise HashStoreError(f"error unmarshaling hash {target}: {exc}") from exc
        if data is None:
            return ""
        if not isinstance(data, dict) or not isinstance(data.get("hash", ""), str):
            raise HashStoreError(f"error unmarshaling hash {target}: unexpected content")
        return data.get("hash", "")

    def save(self) -> None:
        # Already written in add().
        return None

    def filepath(self, name: str) -> Path:
        return self.root / name / SUM_FILENAME


def _atomic_write(target: Path, data: str) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(data)
        os.chmod(tmp_name, 0o664)
        os.replace(tmp_name, target)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


_STORE_FACTORIES: Dict[str, Callable[[Path, HashStrategy], HashStore]] = {
    "sumfile": lambda output, strategy: SumFileStore(output, strategy),
    "json": lambda output, strategy: JSONHashStore(output / JSON_FILENAME, strategy),
}


def build_hash_store(kind: str, strategy: str, output_dir: Path) -> HashStore:
    """Create the store named ``kind`` rooted at the render output directory."""
    factory = _STORE_FACTORIES.get(kind)
    if factory is None:
        raise ValueError(
            f"Invalid hash store: {kind} (expected one of {', '.join(sorted(_STORE_FACTORIES))})"
        )
    try:
        resolved_strategy = HashStrategy(strategy)
    except ValueError as exc:
        raise ValueError(f"Invalid hash strategy: {strategy}") from exc
    return factory(output_dir, resolved_strategy)


__all__ = [
    "GENERATED_KEY",
    "GENERATED_MARKER",
    "HashStore",
    "HashStoreError",
    "HashStrategy",
    "JSON_FILENAME",
    "JSONHashStore",
    "SUM_FILENAME",
    "SumFileStore",
    "build_hash_store",
]
