"""Tests for the incremental walker."""

from __future__ import annotations

import json
import threading
import time
from pathlib import Path
from typing import List

import pytest

from chartwalk.hashing import ContentHasher, strip_parent_segments
from chartwalk.helm import write_manifest
from chartwalk.models import Application
from chartwalk.render import Renderer, copy_source
from chartwalk.stores import HashStrategy, JSONHashStore, SumFileStore, build_hash_store
from chartwalk.walker import VisitedSet, WalkError, Walker, prune_unvisited
from tests._fixtures.tree_builder import TreeBuilder, app_doc

UNBOUNDED = -1


class Harness:
    """Walker wired to an in-process helm stand-in that records every render."""

    def __init__(self, tree: TreeBuilder, *, concurrency: int = 10) -> None:
        self.tree = tree
        self.helm_calls: List[str] = []
        self.copy_calls: List[str] = []
        renderer = Renderer(self._helm_template, self._copy)
        hasher = ContentHasher("overrides-to-ignore", base_dir=tree.path())
        self.walker = Walker(
            renderer, hasher, ignore_suffix="-ignore", concurrency=concurrency
        )

    def _helm_template(self, app: Application, output: Path) -> None:
        self.helm_calls.append(app.name)
        helm = app.spec.source.helm
        assert helm is not None
        lines = [f"# app: {app.name}"]
        lines.extend(f"# {param.name}={param.value}" for param in helm.parameters)
        for value_file in helm.value_files:
            content = self.tree.path(strip_parent_segments(value_file)).read_text(encoding="utf-8")
            lines.extend(f"# {line}" for line in content.splitlines())
        write_manifest(("\n".join(lines) + "\n").encode("utf-8"), output)

    def _copy(self, app: Application, output: Path) -> None:
        self.copy_calls.append(app.name)
        copy_source(app, output, base_dir=self.tree.path())

    @property
    def rendered(self) -> List[str]:
        return sorted(self.helm_calls + self.copy_calls)

    def reset(self) -> None:
        self.helm_calls.clear()
        self.copy_calls.clear()

    def run(self, hashes=None, max_depth: int = UNBOUNDED):
        if hashes is None:
            hashes = SumFileStore(self.tree.output)
        self.tree.output.mkdir(exist_ok=True)
        return self.walker.walk(self.tree.path("bootstrap"), self.tree.output, max_depth, hashes)


def _services(foo_values: str = "../../overrides/foo.yaml") -> list:
    return [
        app_doc(
            "foo",
            "charts/foo",
            helm=True,
            parameters={"region": "us-east-1"},
            value_files=[foo_values],
        ),
        app_doc("bar", "charts/bar", helm=True, value_files=["../../overrides/bar.yaml"]),
        app_doc("plain", "manifests/plain"),
        app_doc("plain-ignore", "manifests/plain"),
    ]


def _build_tree(tree: TreeBuilder) -> None:
    tree.write(
        {
            "charts/foo/Chart.yaml": "name: foo\n",
            "charts/foo/templates/cm.yaml": "kind: ConfigMap\n",
            "charts/bar/Chart.yaml": "name: bar\n",
            "overrides/foo.yaml": "replicas: 1\n",
            "overrides/bar.yaml": "replicas: 2\n",
            "manifests/plain/deployment.yaml": "kind: Deployment\nmetadata:\n  name: plain\n",
            "kustomize/base/kustomization.yaml": "resources: []\n",
        }
    )
    tree.write_apps("bootstrap/root.yaml", [app_doc("cluster", "apps/cluster")])
    tree.write_apps("apps/cluster/services.yaml", _services())
    tree.write_apps("apps/cluster/kustomize.yaml", [app_doc("kust", "kustomize/base", kustomize=True)])


@pytest.fixture
def harness(tree: TreeBuilder) -> Harness:
    _build_tree(tree)
    return Harness(tree)


def test_first_run_renders_every_reachable_application(harness: Harness, tree: TreeBuilder) -> None:
    stats = harness.run()

    assert harness.rendered == ["bar", "cluster", "foo", "plain"]
    assert stats.rendered == {"bar", "cluster", "foo", "plain"}
    assert stats.skipped == {"kust"}
    assert (tree.output / "foo" / "manifest.yaml").read_text(encoding="utf-8").startswith("# app: foo\n")
    assert (tree.output / "plain" / "deployment.yaml").exists()
    assert (tree.output / "cluster" / "services.yaml").exists()
    assert not (tree.output / "plain-ignore").exists()
    assert (tree.output / "foo" / "hash.sum").exists()


@pytest.mark.parametrize("store_kind", ["sumfile", "json"])
def test_second_run_is_all_cache_hits(harness: Harness, tree: TreeBuilder, store_kind: str) -> None:
    harness.run(build_hash_store(store_kind, "readwrite", tree.output))
    first = tree.snapshot()
    harness.reset()

    stats = harness.run(build_hash_store(store_kind, "readwrite", tree.output))

    assert harness.rendered == []
    assert stats.cached == {"bar", "cluster", "foo", "plain"}
    assert tree.snapshot() == first


def test_value_file_change_rerenders_only_that_application(harness: Harness, tree: TreeBuilder) -> None:
    harness.run()
    harness.reset()

    tree.write({"overrides/foo.yaml": "replicas: 9\n"})
    stats = harness.run()

    assert harness.rendered == ["foo"]
    assert stats.cached == {"bar", "cluster", "plain"}
    assert "# replicas: 9" in (tree.output / "foo" / "manifest.yaml").read_text(encoding="utf-8")


def test_chart_change_rerenders_application(harness: Harness, tree: TreeBuilder) -> None:
    harness.run()
    harness.reset()

    tree.write({"charts/bar/templates/new.yaml": "kind: Secret\n"})
    harness.run()

    assert harness.rendered == ["bar"]


def test_unbounded_walk_prunes_unvisited_output(harness: Harness, tree: TreeBuilder) -> None:
    harness.run()
    stale = tree.output / "stale"
    stale.mkdir()
    (stale / "manifest.yaml").write_text("old\n", encoding="utf-8")

    harness.run()

    assert not stale.exists()
    assert (tree.output / "foo").is_dir()
    assert (tree.output / "cluster").is_dir()


def test_removed_application_is_pruned(harness: Harness, tree: TreeBuilder) -> None:
    harness.run()
    harness.reset()

    tree.write_apps("apps/cluster/services.yaml", _services()[:2])
    harness.run()

    assert harness.rendered == ["cluster"]
    assert not (tree.output / "plain").exists()
    assert (tree.output / "foo").is_dir()
    assert (tree.output / "bar").is_dir()


def test_bounded_walk_never_prunes(harness: Harness, tree: TreeBuilder) -> None:
    harness.run()
    stale = tree.output / "stale"
    stale.mkdir()

    harness.run(max_depth=1)

    assert stale.is_dir()


def test_max_depth_limits_recursion(harness: Harness, tree: TreeBuilder) -> None:
    stats = harness.run(max_depth=0)

    assert harness.rendered == ["cluster"]
    assert stats.rendered == {"cluster"}
    assert not (tree.output / "foo").exists()


def test_unsupported_application_is_skipped(harness: Harness, tree: TreeBuilder) -> None:
    hashes = JSONHashStore(tree.output / "hashes.json")
    stats = harness.run(hashes)

    assert "kust" in stats.skipped
    assert hashes.get("kust") == ""
    assert hashes.get("foo") != ""
    assert not (tree.output / "kust").exists()


def test_unsupported_application_keeps_previous_output(harness: Harness, tree: TreeBuilder) -> None:
    previous = tree.output / "kust"
    previous.mkdir(parents=True)
    (previous / "manifest.yaml").write_text("kept\n", encoding="utf-8")

    harness.run()

    assert (previous / "manifest.yaml").read_text(encoding="utf-8") == "kept\n"


def test_empty_manifest_forces_rerender(harness: Harness, tree: TreeBuilder) -> None:
    harness.run()
    harness.reset()

    (tree.output / "foo" / "manifest.yaml").write_bytes(b"")
    harness.run()

    assert harness.rendered == ["foo"]
    assert (tree.output / "foo" / "manifest.yaml").stat().st_size > 0


def test_deleted_output_directory_is_rerendered(harness: Harness, tree: TreeBuilder) -> None:
    hashes_path = tree.output / "hashes.json"
    harness.run(JSONHashStore(hashes_path))
    harness.reset()

    for child in sorted((tree.output / "bar").iterdir()):
        child.unlink()
    (tree.output / "bar").rmdir()
    harness.run(JSONHashStore(hashes_path))

    assert harness.rendered == ["bar"]


def test_read_only_store_renders_but_does_not_record(harness: Harness, tree: TreeBuilder) -> None:
    hashes_path = tree.output / "hashes.json"
    harness.run(JSONHashStore(hashes_path, HashStrategy.READ))

    assert harness.rendered == ["bar", "cluster", "foo", "plain"]
    assert not hashes_path.exists()


def test_concrete_scenario_with_json_store(tree: TreeBuilder) -> None:
    tree.write(
        {
            "charts/foo/Chart.yaml": "name: foo\n",
            "charts/foo/templates/cm.yaml": "kind: ConfigMap\n",
            "overrides/foo.yaml": "replicas: 1\n",
        }
    )
    tree.write_apps(
        "bootstrap/apps.yaml",
        [
            app_doc(
                "foo",
                "charts/foo",
                helm=True,
                parameters={"region": "us-east-1"},
                value_files=["../../overrides/foo.yaml"],
            )
        ],
    )
    harness = Harness(tree)
    hashes_path = tree.output / "hashes.json"

    harness.run(JSONHashStore(hashes_path))
    d1 = json.loads(hashes_path.read_text(encoding="utf-8"))["foo"]
    assert harness.helm_calls == ["foo"]

    tree.write({"overrides/foo.yaml": "replicas: 2\n"})
    harness.reset()
    harness.run(JSONHashStore(hashes_path))
    d2 = json.loads(hashes_path.read_text(encoding="utf-8"))["foo"]
    assert d2 != d1
    assert harness.helm_calls == ["foo"]
    second = tree.snapshot()

    harness.reset()
    harness.run(JSONHashStore(hashes_path))
    assert harness.helm_calls == []
    assert tree.snapshot() == second


def test_branch_failures_are_collected_after_siblings_finish(tree: TreeBuilder) -> None:
    tree.write({"manifests/good/cm.yaml": "kind: ConfigMap\n"})
    tree.write_apps("bootstrap/a.yaml", [app_doc("broken-a", "charts/missing-a", helm=True)])
    tree.write_apps("bootstrap/b.yaml", [app_doc("broken-b", "charts/missing-b", helm=True)])
    tree.write_apps("bootstrap/c.yaml", [app_doc("good", "manifests/good")])
    harness = Harness(tree)
    tree.output.mkdir()
    (tree.output / "stale").mkdir()
    hashes_path = tree.output / "hashes.json"

    with pytest.raises(WalkError) as excinfo:
        harness.run(JSONHashStore(hashes_path))

    assert len(excinfo.value.errors) == 2
    assert "2 more" not in str(excinfo.value)
    assert "1 more" in str(excinfo.value)
    assert harness.copy_calls == ["good"]
    assert (tree.output / "good" / "cm.yaml").exists()
    assert (tree.output / "stale").is_dir()
    assert not hashes_path.exists()


def test_malformed_document_fails_the_walk(tree: TreeBuilder) -> None:
    tree.write({"bootstrap/broken.yaml": "kind: Application\nmetadata: [oops\n"})
    harness = Harness(tree)

    with pytest.raises(WalkError, match="decode failed"):
        harness.run()


def test_concurrency_is_bounded_per_level(tree: TreeBuilder) -> None:
    for index in range(6):
        tree.write({f"manifests/app{index}/README.md": f"app {index}\n"})
        tree.write_apps(f"bootstrap/app{index}.yaml", [app_doc(f"app{index}", f"manifests/app{index}")])
    harness = Harness(tree, concurrency=2)

    lock = threading.Lock()
    in_flight = 0
    peak = 0
    copy = harness._copy

    def _slow_copy(app: Application, output: Path) -> None:
        nonlocal in_flight, peak
        with lock:
            in_flight += 1
            peak = max(peak, in_flight)
        time.sleep(0.05)
        try:
            copy(app, output)
        finally:
            with lock:
                in_flight -= 1

    harness.walker.renderer.copy = _slow_copy
    stats = harness.run()

    assert len(stats.rendered) == 6
    assert peak <= 2


def test_walker_rejects_non_positive_concurrency(tree: TreeBuilder) -> None:
    with pytest.raises(ValueError):
        Harness(tree, concurrency=0)


def test_visited_set_is_idempotent() -> None:
    visited = VisitedSet()
    visited.add(Path("out/foo"))
    visited.add(Path("out/foo"))

    assert len(visited) == 1
    assert Path("out/foo") in visited
    assert visited.snapshot() == frozenset({Path("out/foo")})


def test_prune_unvisited_keeps_files_and_visited_dirs(tmp_path: Path) -> None:
    (tmp_path / "keep").mkdir()
    (tmp_path / "drop").mkdir()
    (tmp_path / "hashes.json").write_text("{}", encoding="utf-8")
    visited = VisitedSet()
    visited.add(tmp_path / "keep")

    removed = prune_unvisited(visited, tmp_path)

    assert removed == [tmp_path / "drop"]
    assert (tmp_path / "keep").is_dir()
    assert (tmp_path / "hashes.json").exists()


def test_walk_error_flattens_nested_errors() -> None:
    inner = WalkError([ValueError("a"), ValueError("b")])
    outer = WalkError([inner, RuntimeError("c")])

    assert [str(error) for error in outer.errors] == ["a", "b", "c"]
    assert str(outer) == "a (and 2 more failures)"
