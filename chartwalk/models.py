"""Core data models shared across chartwalk components."""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

APPLICATION_KIND = "Application"


class _Document(BaseModel):
    model_config = ConfigDict(
        extra="allow", populate_by_name=True, coerce_numbers_to_str=True
    )


class HelmParameter(_Document):
    name: str = ""
    value: str = ""


class HelmSource(_Document):
    parameters: List[HelmParameter] = Field(default_factory=list)
    value_files: List[str] = Field(default_factory=list, alias="valueFiles")
    values: str = ""
    ignore_missing_value_files: bool = Field(False, alias="ignoreMissingValueFiles")


class ApplicationSource(_Document):
    path: str = ""
    repo_url: str = Field("", alias="repoURL")
    target_revision: str = Field("", alias="targetRevision")
    helm: Optional[HelmSource] = None
    kustomize: Optional[Dict[str, Any]] = None


class ApplicationDestination(_Document):
    namespace: str = ""
    server: str = ""


class ApplicationSpec(_Document):
    project: str = ""
    source: ApplicationSource = Field(default_factory=ApplicationSource)
    destination: ApplicationDestination = Field(default_factory=ApplicationDestination)


class ObjectMeta(_Document):
    name: str = ""
    namespace: str = ""


class SourceKind(str, Enum):
    """How an application's manifests are produced."""

    HELM = "helm"
    COPY = "copy"
    UNSUPPORTED = "unsupported"


class RenderOutcome(str, Enum):
    """Result of dispatching a render that did not fail."""

    RENDERED = "rendered"
    UNSUPPORTED = "unsupported"


class Application(_Document):
    """An Argo CD Application document: the unit of caching and rendering."""

    api_version: str = Field("", alias="apiVersion")
    kind: str = ""
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: ApplicationSpec = Field(default_factory=ApplicationSpec)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def source_kind(self) -> SourceKind:
        source = self.spec.source
        # kustomize wins over helm when a source declares both.
        if source.kustomize is not None:
            return SourceKind.UNSUPPORTED
        if source.helm is not None:
            return SourceKind.HELM
        return SourceKind.COPY

    def canonical_json(self) -> str:
        """Serialize the full definition with stable key ordering."""
        payload = self.model_dump(mode="json", by_alias=True, exclude_unset=True)
        return json.dumps(payload, sort_keys=True, separators=(",", ":"))


__all__ = [
    "APPLICATION_KIND",
    "Application",
    "ApplicationDestination",
    "ApplicationSource",
    "ApplicationSpec",
    "HelmParameter",
    "HelmSource",
    "ObjectMeta",
    "RenderOutcome",
    "SourceKind",
]
