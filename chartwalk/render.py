"""Pick and run the renderer for an application."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Callable, Optional

from .logging import get_logger
from .models import Application, RenderOutcome, SourceKind

RenderFunc = Callable[[Application, Path], None]
PostRenderFunc = Callable[[Path], None]

logger = get_logger("render")


class RenderError(RuntimeError):
    """Raised when an application's manifests cannot be produced."""


class PostRenderError(RenderError):
    """Raised when the post-render command fails after a successful render."""


def copy_source(app: Application, output: Path, base_dir: Path | None = None) -> None:
    """Copy the application's source directory into ``output`` as-is."""
    if not app.spec.source.path:
        output.mkdir(parents=True, exist_ok=True)
        return
    source = Path(app.spec.source.path)
    if base_dir is not None and not source.is_absolute():
        source = base_dir / source
    try:
        shutil.copytree(source, output, dirs_exist_ok=True)
    except (OSError, shutil.Error) as exc:
        raise RenderError(f"error copying {source} to {output}: {exc}") from exc


def post_render_command(command: str) -> PostRenderFunc:
    """Return a hook that runs ``command <output>`` and fails on non-zero exit."""

    def _run(output: Path) -> None:
        # stderr is inherited so the command's diagnostics reach the CI log.
        try:
            subprocess.run([command, str(output)], check=True, stdout=subprocess.DEVNULL)
        except (OSError, subprocess.CalledProcessError) as exc:
            raise PostRenderError(f"post render failed for {output}: {exc}") from exc

    return _run


class Renderer:
    """Dispatches applications to helm, raw copy, or the unsupported path."""

    def __init__(
        self,
        helm_template: RenderFunc,
        copy: RenderFunc,
        post_render: Optional[PostRenderFunc] = None,
    ) -> None:
        self.helm_template = helm_template
        self.copy = copy
        self.post_render = post_render

    def render(self, app: Application, output: Path) -> RenderOutcome:
        """Replace ``output`` with freshly rendered manifests for ``app``.

        Unsupported sources return :attr:`RenderOutcome.UNSUPPORTED` without
        touching ``output``. A failing post-render hook leaves the rendered
        files in place and raises :class:`PostRenderError`.
        """
        logger.info("Render %s", app.name)

        kind = app.source_kind
        if kind is SourceKind.UNSUPPORTED:
            logger.warning("kustomize not supported, skipping %s", app.name)
            return RenderOutcome.UNSUPPORTED
        render = self.helm_template if kind is SourceKind.HELM else self.copy

        try:
            shutil.rmtree(output)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise RenderError(f"error clearing {output}: {exc}") from exc

        try:
            render(app, output)
        except RenderError:
            raise
        except Exception as exc:
            raise RenderError(f"error rendering {app.name}: {exc}") from exc

        if self.post_render is not None:
            try:
                self.post_render(output)
            except PostRenderError:
                raise
            except Exception as exc:
                raise PostRenderError(f"post render failed for {output}: {exc}") from exc

        return RenderOutcome.RENDERED


__all__ = [
    "PostRenderError",
    "PostRenderFunc",
    "RenderError",
    "RenderFunc",
    "Renderer",
    "copy_source",
    "post_render_command",
]
