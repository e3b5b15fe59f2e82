"""Loading and rendering of manifest files."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml
from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError

logger = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml", ".yaml.j2", ".yml.j2")
TEMPLATE_SUFFIX = ".j2"


class ManifestError(ValueError):
    """A manifest file could not be read, rendered or parsed."""

    def __init__(self, path: str, message: str):
        super().__init__(f"{path}: {message}")
        self.path = path


@dataclass(slots=True)
class Manifest:
    path: str
    document: str
    resources: list[str]


def is_manifest_file(path: Path) -> bool:
    return path.is_file() and path.name.endswith(MANIFEST_SUFFIXES)


def describe_resources(document: str) -> list[str]:
    """Return `kind/name` for every object in a multi-document YAML string."""
    resources: list[str] = []
    for obj in yaml.safe_load_all(document):
        if obj is None:
            continue
        if not isinstance(obj, dict):
            raise ValueError("manifest documents must be mappings")
        kind = obj.get("kind")
        name = (obj.get("metadata") or {}).get("name")
        if not kind or not name:
            raise ValueError("every document needs kind and metadata.name")
        resources.append(f"{str(kind).lower()}/{name}")
    return resources


class ManifestLoader:
    """Reads manifest files, rendering `*.j2` templates with rollout variables."""

    def __init__(self, *, extra_context: Optional[dict[str, Any]] = None):
        self._extra_context = dict(extra_context or {})

    def load(self, path: str, *, image: str, namespace: str, deployment: str) -> Manifest:
        file_path = Path(path)
        try:
            raw = file_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ManifestError(path, f"unable to read manifest: {exc}") from exc

        if file_path.name.endswith(TEMPLATE_SUFFIX):
            document = self._render(file_path, image=image, namespace=namespace, deployment=deployment)
        else:
            document = raw

        try:
            resources = describe_resources(document)
        except (yaml.YAMLError, ValueError) as exc:
            raise ManifestError(path, f"invalid manifest: {exc}") from exc
        if not resources:
            raise ManifestError(path, "manifest contains no resources")
        return Manifest(path=path, document=document, resources=resources)

    def _render(self, file_path: Path, *, image: str, namespace: str, deployment: str) -> str:
        env = Environment(
            loader=FileSystemLoader(file_path.parent),
            autoescape=False,
            undefined=StrictUndefined,
        )
        context = {
            **self._extra_context,
            "image": image,
            "namespace": namespace,
            "deployment": deployment,
        }
        try:
            template = env.get_template(file_path.name)
            rendered = template.render(**context)
        except (TemplateError, OSError, UnicodeDecodeError) as exc:
            raise ManifestError(str(file_path), f"template rendering failed: {exc}") from exc
        logger.debug("Rendered manifest template %s", file_path)
        return rendered
