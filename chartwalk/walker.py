"""Depth-first, concurrency-bounded walk over a tree of Argo applications."""

from __future__ import annotations

import os
import shutil
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, List, Optional, Protocol, Sequence, Set

from .config import INFINITE_DEPTH
from .documents import DocumentError, is_document_file, read_applications
from .helm import MANIFEST_FILENAME, empty_manifest
from .logging import get_logger
from .models import APPLICATION_KIND, Application, RenderOutcome
from .render import Renderer
from .stores import HashStore

DEFAULT_CONCURRENCY = 10

logger = get_logger("walker")


class Hasher(Protocol):
    def digest(self, app: Application) -> Optional[str]: ...


class WalkError(RuntimeError):
    """Aggregates every branch failure collected during a walk."""

    def __init__(self, errors: Sequence[BaseException]) -> None:
        flattened: List[BaseException] = []
        for error in errors:
            if isinstance(error, WalkError):
                flattened.extend(error.errors)
            else:
                flattened.append(error)
        self.errors = flattened
        message = str(flattened[0]) if flattened else "walk failed"
        if len(flattened) > 1:
            message += f" (and {len(flattened) - 1} more failures)"
        super().__init__(message)


class VisitedSet:
    """Output paths touched during the current run."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._paths: Set[Path] = set()

    def add(self, path: Path) -> None:
        with self._lock:
            self._paths.add(path)

    def __contains__(self, path: object) -> bool:
        with self._lock:
            return path in self._paths

    def __len__(self) -> int:
        with self._lock:
            return len(self._paths)

    def snapshot(self) -> FrozenSet[Path]:
        with self._lock:
            return frozenset(self._paths)


@dataclass
class WalkStats:
    """Names of applications by what the walk did with them."""

    rendered: Set[str] = field(default_factory=set)
    cached: Set[str] = field(default_factory=set)
    skipped: Set[str] = field(default_factory=set)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record(self, bucket: str, name: str) -> None:
        with self._lock:
            getattr(self, bucket).add(name)

    def summary(self) -> str:
        with self._lock:
            return (
                f"{len(self.rendered)} rendered, {len(self.cached)} cached, "
                f"{len(self.skipped)} skipped"
            )


class Walker:
    """Renders every application reachable from a root directory.

    Each directory level fans its document files out to a pool of
    ``concurrency`` workers. A worker renders the applications of one file
    and walks into each application's output before it finishes, so a level
    only completes once its whole subtree has. Failures are collected and
    raised together as :class:`WalkError` after the level's workers finish.
    """

    def __init__(
        self,
        renderer: Renderer,
        hasher: Hasher,
        *,
        ignore_suffix: str = "",
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be positive, got {concurrency}")
        self.renderer = renderer
        self.hasher = hasher
        self.ignore_suffix = ignore_suffix
        self.concurrency = concurrency

    def walk(
        self,
        input_path: Path,
        output_path: Path,
        max_depth: int,
        hashes: HashStore,
    ) -> WalkStats:
        """Walk ``input_path``, render into ``output_path`` and prune stale output.

        Pruning only happens for unbounded walks (``max_depth == -1``).
        """
        visited = VisitedSet()
        stats = WalkStats()

        self._walk(input_path, output_path, 0, max_depth, visited, hashes, stats)
        hashes.save()

        if max_depth == INFINITE_DEPTH:
            prune_unvisited(visited, output_path)
        return stats

    def _walk(
        self,
        input_path: Path,
        output_path: Path,
        depth: int,
        max_depth: int,
        visited: VisitedSet,
        hashes: HashStore,
        stats: WalkStats,
    ) -> None:
        if max_depth != INFINITE_DEPTH and depth > max_depth:
            return

        logger.info("Dropping into %s", input_path)
        documents = _list_documents(input_path)
        if not documents:
            return

        errors: List[BaseException] = []
        with ThreadPoolExecutor(
            max_workers=min(self.concurrency, len(documents)),
            thread_name_prefix=f"chartwalk-d{depth}",
        ) as executor:
            futures = [
                executor.submit(
                    self._process_document,
                    document,
                    output_path,
                    depth,
                    max_depth,
                    visited,
                    hashes,
                    stats,
                )
                for document in documents
            ]
            for future in futures:
                error = future.exception()
                if error is not None:
                    errors.append(error)

        if errors:
            raise WalkError(errors)

    def _process_document(
        self,
        document: Path,
        output_path: Path,
        depth: int,
        max_depth: int,
        visited: VisitedSet,
        hashes: HashStore,
        stats: WalkStats,
    ) -> None:
        for app in read_applications(document):
            if app.kind != APPLICATION_KIND:
                continue
            if self.ignore_suffix and app.name.endswith(self.ignore_suffix):
                logger.debug("Ignoring %s", app.name)
                continue
            self._process_application(
                app, output_path, depth, max_depth, visited, hashes, stats
            )

    def _process_application(
        self,
        app: Application,
        output_path: Path,
        depth: int,
        max_depth: int,
        visited: VisitedSet,
        hashes: HashStore,
        stats: WalkStats,
    ) -> None:
        node_output = output_path / app.name
        # Marked before rendering so a failed render is never pruned next run.
        visited.add(node_output)

        previous = hashes.get(app.name)
        digest = self.hasher.digest(app)
        if digest is None:
            stats.record("skipped", app.name)
            return

        if _needs_render(previous, digest, node_output):
            logger.info("No match detected. Render: %s", app.name)
            outcome = self.renderer.render(app, node_output)
            if outcome is RenderOutcome.UNSUPPORTED:
                stats.record("skipped", app.name)
                return
            hashes.add(app.name, digest)
            stats.record("rendered", app.name)
        else:
            logger.debug("Up to date: %s", app.name)
            stats.record("cached", app.name)

        self._walk(node_output, output_path, depth + 1, max_depth, visited, hashes, stats)


def prune_unvisited(visited: VisitedSet, output_path: Path) -> List[Path]:
    """Remove top-level directories of ``output_path`` not visited this run."""
    removed: List[Path] = []
    for entry in sorted(os.scandir(output_path), key=lambda item: item.name):
        if not entry.is_dir(follow_symlinks=False):
            continue
        path = output_path / entry.name
        if path in visited:
            continue
        logger.info("Pruning %s", path)
        shutil.rmtree(path)
        removed.append(path)
    return removed


def _needs_render(previous: str, digest: str, node_output: Path) -> bool:
    if previous != digest:
        return True
    if not node_output.is_dir():
        return True
    return empty_manifest(node_output / MANIFEST_FILENAME)


def _list_documents(directory: Path) -> List[Path]:
    try:
        entries = list(os.scandir(directory))
    except OSError as exc:
        raise DocumentError(f"error listing {directory}: {exc}") from exc
    return sorted(
        Path(entry.path)
        for entry in entries
        if is_document_file(entry.name) and entry.is_file()
    )


__all__ = [
    "DEFAULT_CONCURRENCY",
    "Hasher",
    "VisitedSet",
    "WalkError",
    "WalkStats",
    "Walker",
    "prune_unvisited",
]
