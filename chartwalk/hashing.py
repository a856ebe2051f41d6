"""Content fingerprints deciding whether an application must be re-rendered.

A digest chains three sha256 components:

* the canonical JSON form of the Application document itself,
* every file under ``spec.source.path`` (symlinks resolved, paths sorted),
* every non-ignored helm value file, in declaration order.

Identical inputs always produce identical digests, independent of directory
listing order or the machine the run happens on.
"""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
from typing import Dict, FrozenSet, Optional

from .logging import get_logger
from .models import Application, SourceKind

_PARENT_SEGMENT = "../"

logger = get_logger("hashing")


class HashingError(RuntimeError):
    """Raised when a source tree or value file cannot be fingerprinted."""


def hash_file(path: Path) -> str:
    """Return the hex sha256 of a single file's bytes."""
    digest = hashlib.sha256()
    try:
        with path.open("rb") as handle:
            for chunk in iter(lambda: handle.read(1024 * 1024), b""):
                digest.update(chunk)
    except OSError as exc:
        raise HashingError(f"error reading {path}: {exc}") from exc
    return digest.hexdigest()


def collect_file_hashes(root: Path) -> Dict[str, str]:
    """Map every regular file below ``root`` to its sha256.

    Keys are ``/``-separated paths relative to ``root``; symlinked files and
    directories are followed to their targets, so a symlink to a directory
    hashes exactly like the directory. When ``root`` is itself a file the
    single key is its name.
    """
    real_root = _resolve(root)
    if real_root.is_file():
        return {root.name: hash_file(real_root)}
    if not real_root.is_dir():
        raise HashingError(f"error walking the file path {root}: not a file or directory")

    hashes: Dict[str, str] = {}
    _collect_dir(real_root, "", frozenset({real_root}), hashes)
    return hashes


def tree_hash(root: Path) -> str:
    """Return one hex digest summarising every file below ``root``."""
    file_hashes = collect_file_hashes(root)
    paths = sorted(file_hashes)
    if len(paths) == 1:
        return file_hashes[paths[0]]
    digest = hashlib.sha256()
    for rel_path in paths:
        digest.update(f"{file_hashes[rel_path]}  {rel_path}\n".encode("utf-8"))
    return digest.hexdigest()


def strip_parent_segments(value_file: str) -> str:
    """Drop leading ``../`` segments from a chart-relative value file path."""
    while value_file.startswith(_PARENT_SEGMENT):
        value_file = value_file[len(_PARENT_SEGMENT):]
    return value_file


class ContentHasher:
    """Computes application digests relative to a base directory."""

    def __init__(self, ignore_value_file: str = "", base_dir: Path | None = None) -> None:
        self.ignore_value_file = ignore_value_file
        self.base_dir = base_dir

    def digest(self, app: Application) -> Optional[str]:
        """Return the hex digest for ``app``.

        Returns ``None`` for applications whose source kind is unsupported;
        callers skip those instead of failing. Unreadable files and broken
        symlinks raise :class:`HashingError`.
        """
        if app.source_kind is SourceKind.UNSUPPORTED:
            logger.debug("Skipping hash for unsupported source: %s", app.name)
            return None

        final = hashlib.sha256()
        identity = hashlib.sha256(app.canonical_json().encode("utf-8")).hexdigest()
        final.update(f"{identity}\n".encode("utf-8"))

        source = app.spec.source
        if source.path:
            final.update(f"{tree_hash(self._resolve_path(source.path))}\n".encode("utf-8"))

        if source.helm is not None and source.helm.value_files:
            values = hashlib.sha256()
            for value_file in source.helm.value_files:
                if self._is_ignored(value_file):
                    continue
                trimmed = self._resolve_path(strip_parent_segments(value_file))
                if source.helm.ignore_missing_value_files and not os.path.lexists(trimmed):
                    logger.debug("Ignoring missing value file %s for %s", value_file, app.name)
                    continue
                values.update(f"{tree_hash(trimmed)}\n".encode("utf-8"))
            final.update(f"{values.hexdigest()}\n".encode("utf-8"))

        return final.hexdigest()

    def _is_ignored(self, value_file: str) -> bool:
        return bool(self.ignore_value_file) and self.ignore_value_file in value_file

    def _resolve_path(self, path: str) -> Path:
        candidate = Path(path)
        if self.base_dir is None or candidate.is_absolute():
            return candidate
        return self.base_dir / candidate


def _resolve(path: Path) -> Path:
    try:
        return path.resolve(strict=True)
    except FileNotFoundError as exc:
        if path.is_symlink():
            raise HashingError(f"failed to follow symlink {path}: target does not exist") from exc
        raise HashingError(f"error walking the file path {path}: {exc}") from exc
    except (OSError, RuntimeError) as exc:
        # RuntimeError: symlink loop on older interpreters
        raise HashingError(f"failed to resolve {path}: {exc}") from exc


def _collect_dir(
    directory: Path,
    prefix: str,
    ancestors: FrozenSet[Path],
    hashes: Dict[str, str],
) -> None:
    try:
        entries = sorted(os.scandir(directory), key=lambda entry: entry.name)
    except OSError as exc:
        raise HashingError(f"error walking the file path {directory}: {exc}") from exc

    for entry in entries:
        rel_path = f"{prefix}{entry.name}"
        target = _resolve(Path(entry.path))
        if target.is_dir():
            if target in ancestors:
                raise HashingError(f"symlink loop detected at {entry.path}")
            _collect_dir(target, f"{rel_path}/", ancestors | {target}, hashes)
        elif target.is_file():
            hashes[rel_path] = hash_file(target)
