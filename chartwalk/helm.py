"""Render helm-sourced applications with ``helm template``."""

from __future__ import annotations

import os
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Sequence, Tuple

from .logging import get_logger
from .models import Application

MANIFEST_FILENAME = "manifest.yaml"
SKIP_RENDER_VALUE = "CONSCIOUSLY_NOT_RENDERED"

_MISSING_DEPENDENCY_MARKERS = (
    "found in requirements.yaml, but missing in charts",
    "found in Chart.yaml, but missing in charts/ directory",
)

logger = get_logger("helm")


class HelmError(RuntimeError):
    """Raised when ``helm`` fails to template a chart."""


@dataclass
class CommandResult:
    """Exit status and captured streams of an external command."""

    returncode: int
    stdout: bytes
    stderr: str


CommandRunner = Callable[[Sequence[str], Path], CommandResult]


def default_runner(args: Sequence[str], cwd: Path) -> CommandResult:
    try:
        completed = subprocess.run(
            list(args),
            cwd=str(cwd),
            capture_output=True,
            check=False,
        )
    except FileNotFoundError as exc:
        raise HelmError(f"Unable to locate '{args[0]}'. Is helm installed?") from exc
    return CommandResult(
        returncode=completed.returncode,
        stdout=completed.stdout,
        stderr=completed.stderr.decode("utf-8", errors="replace"),
    )


def is_missing_dependency_error(stderr: str) -> bool:
    return any(marker in stderr for marker in _MISSING_DEPENDENCY_MARKERS)


def build_params(
    app: Application, ignore_value_file: str = "", base_dir: Path | None = None
) -> Tuple[str, str]:
    """Return the comma-joined ``--set`` pairs and ``-f`` value files for ``app``.

    Value files containing ``ignore_value_file`` are dropped, as are files
    missing on disk when the application sets ``ignoreMissingValueFiles``.
    """
    source = app.spec.source
    helm = source.helm
    if helm is None:
        return "", ""

    set_values = ",".join(f"{param.name}={param.value}" for param in helm.parameters)

    chart_dir = _chart_dir(app, base_dir)
    files: List[str] = []
    for value_file in helm.value_files:
        explicitly_ignored = bool(ignore_value_file) and ignore_value_file in value_file
        missing_and_ignored = (
            helm.ignore_missing_value_files
            and not os.path.exists(os.path.normpath(chart_dir / value_file))
        )
        if not explicitly_ignored and not missing_and_ignored:
            files.append(value_file)

    return set_values, ",".join(files)


def empty_manifest(path: Path) -> bool:
    """Whether ``path`` exists but holds no bytes.

    Missing manifests are not empty: root directories never contain one.
    """
    try:
        return path.stat().st_size == 0
    except FileNotFoundError:
        return False
    except OSError as exc:
        raise HelmError(f"error checking if {path} is empty: {exc}") from exc


def verify_render_dir(path: Path) -> None:
    """Create the render output root when it does not exist yet."""
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise HelmError(f"error creating render directory {path}: {exc}") from exc


def write_manifest(manifest: bytes, output: Path) -> Path:
    output.mkdir(parents=True, exist_ok=True)
    target = output / MANIFEST_FILENAME
    target.write_bytes(manifest)
    os.chmod(target, 0o664)
    return target


class HelmTemplater:
    """Runs ``helm template`` for an application's chart directory."""

    def __init__(
        self,
        *,
        skip_render_key: str = "",
        ignore_value_file: str = "",
        base_dir: Path | None = None,
        executable: str = "helm",
        runner: CommandRunner | None = None,
    ) -> None:
        self.skip_render_key = skip_render_key
        self.ignore_value_file = ignore_value_file
        self.base_dir = base_dir
        self.executable = executable
        self._runner = runner or default_runner

    def run(self, app: Application, output: Path) -> None:
        """Template ``app`` and write the result to ``output/manifest.yaml``."""
        manifest = self.template(app)
        try:
            write_manifest(manifest, output)
        except OSError as exc:
            raise HelmError(f"error writing manifest for {app.name} to {output}: {exc}") from exc

    def template(self, app: Application) -> bytes:
        """Return the rendered manifest bytes for ``app``."""
        chart_dir = _chart_dir(app, self.base_dir)
        values_file = _write_values_file(app.spec.source.helm.values) if app.spec.source.helm else None
        try:
            args = self._template_args(app, values_file)
            result = self._runner(args, chart_dir)
            if result.returncode != 0 and is_missing_dependency_error(result.stderr):
                self._install_dependencies(chart_dir)
                result = self._runner(args, chart_dir)
        finally:
            if values_file is not None:
                values_file.unlink(missing_ok=True)

        if result.returncode != 0:
            logger.error("helm template failed for %s: %s", app.name, result.stderr.strip())
            raise HelmError(
                f"error templating manifest for {app.name} (exit {result.returncode}): "
                f"{result.stderr.strip()}"
            )
        return result.stdout

    def _template_args(self, app: Application, values_file: Path | None) -> List[str]:
        set_values, file_values = build_params(app, self.ignore_value_file, self.base_dir)
        args = [self.executable, "template", "."]
        if set_values:
            args.extend(["--set", set_values])
        if file_values:
            args.extend(["-f", file_values])
        if values_file is not None:
            args.extend(["-f", str(values_file)])
        args.extend(["-n", app.spec.destination.namespace])
        if self.skip_render_key:
            args.extend(["--set", f"{self.skip_render_key}={SKIP_RENDER_VALUE}"])
        return args

    def _install_dependencies(self, chart_dir: Path) -> None:
        logger.info("Updating dependencies for %s", chart_dir)
        result = self._runner([self.executable, "dependency", "update"], chart_dir)
        if result.returncode != 0:
            raise HelmError(
                f"error updating dependencies for {chart_dir}: {result.stderr.strip()}"
            )


def _chart_dir(app: Application, base_dir: Path | None) -> Path:
    chart = Path(app.spec.source.path)
    if base_dir is None or chart.is_absolute():
        return chart
    return base_dir / chart


def _write_values_file(values: str) -> Path | None:
    if not values:
        return None
    handle = tempfile.NamedTemporaryFile(
        "w", encoding="utf-8", prefix="temp.", suffix=".yaml", delete=False
    )
    with handle:
        handle.write(values)
    return Path(handle.name)


__all__ = [
    "CommandResult",
    "CommandRunner",
    "HelmError",
    "HelmTemplater",
    "MANIFEST_FILENAME",
    "SKIP_RENDER_VALUE",
    "build_params",
    "default_runner",
    "empty_manifest",
    "is_missing_dependency_error",
    "verify_render_dir",
    "write_manifest",
]
