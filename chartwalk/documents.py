"""Read Argo CD Application documents from YAML or JSON files."""

from __future__ import annotations

from pathlib import Path
from typing import List

import yaml
from pydantic import ValidationError

from .models import APPLICATION_KIND, Application


class DocumentError(RuntimeError):
    """Raised when a document file cannot be read or decoded."""


def read_applications(path: Path) -> List[Application]:
    """Return every Application declared in ``path``, in document order.

    Files may hold several ``---`` separated YAML documents or a single JSON
    object. Empty documents and documents of other kinds are ignored.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise DocumentError(f"error reading document {path}: {exc}") from exc

    try:
        documents = list(yaml.safe_load_all(text))
    except yaml.YAMLError as exc:
        raise DocumentError(f"document decode failed for {path}: {exc}") from exc

    applications: List[Application] = []
    for index, document in enumerate(documents):
        if not isinstance(document, dict):
            continue
        if document.get("kind") != APPLICATION_KIND:
            continue
        try:
            app = Application.model_validate(document)
        except ValidationError as exc:
            raise DocumentError(
                f"invalid {APPLICATION_KIND} in {path} (document {index}): {exc}"
            ) from exc
        _check_name(app, path, index)
        applications.append(app)
    return applications


def _check_name(app: Application, path: Path, index: int) -> None:
    # Names become output directory names, one level below the render root.
    name = app.name
    if not name or name in {".", ".."} or "/" in name or "\\" in name:
        raise DocumentError(
            f"invalid {APPLICATION_KIND} name {name!r} in {path} (document {index})"
        )


def is_document_file(name: str) -> bool:
    """Whether a directory entry name looks like a YAML document."""
    return ".yaml" in name


__all__ = ["DocumentError", "is_document_file", "read_applications"]
