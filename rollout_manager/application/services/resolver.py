"""Turns raw rollout input into a normalized DeploymentRequest."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Iterable, Optional, Union

import httpx
from pydantic import ValidationError

from rollout_manager.errors import InvalidTarget
from rollout_manager.manifests import is_manifest_file
from rollout_manager.models import DeploymentRequest, HealthCheckSpec

DNS_LABEL_RE = re.compile(r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$")
DNS_SUBDOMAIN_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")
DNS_SUBDOMAIN_MAX_LENGTH = 253
ENDPOINT_SCHEMES = ("http", "https")

ManifestInput = Union[str, Path, Iterable[Union[str, Path]]]


def validate_dns_label(value: str, *, field: str) -> str:
    if not DNS_LABEL_RE.match(value):
        raise InvalidTarget(
            f"Invalid {field} {value!r}: use at most 63 lowercase letters, digits or '-', "
            "starting and ending with a letter or digit"
        )
    return value


def validate_dns_subdomain(value: str, *, field: str) -> str:
    if len(value) > DNS_SUBDOMAIN_MAX_LENGTH or not DNS_SUBDOMAIN_RE.match(value):
        raise InvalidTarget(
            f"Invalid {field} {value!r}: use at most 253 lowercase letters, digits, '-' or '.', "
            "with each dot-separated part starting and ending with a letter or digit"
        )
    return value


def normalize_endpoint(raw: str) -> str:
    """Return the endpoint without a trailing slash; it must be an absolute http(s) URL."""
    endpoint = raw.strip().rstrip("/")
    try:
        url = httpx.URL(endpoint)
    except httpx.InvalidURL as exc:
        raise InvalidTarget(f"Invalid endpoint {raw!r}: {exc}") from exc
    if url.scheme not in ENDPOINT_SCHEMES or not url.host:
        raise InvalidTarget(f"Invalid endpoint {raw!r}: expected an http:// or https:// URL with a host")
    return endpoint


def normalize_image_ref(raw: str) -> str:
    image = raw.strip()
    if not image or any(ch.isspace() for ch in image):
        raise InvalidTarget(f"Invalid image reference {raw!r}")
    if "@" in image:
        return image
    last_segment = image.rsplit("/", 1)[-1]
    if ":" in last_segment:
        if last_segment.endswith(":"):
            raise InvalidTarget(f"Invalid image reference {raw!r}: empty tag")
        return image
    return f"{image}:latest"


def expand_manifests(manifests: ManifestInput) -> tuple[str, ...]:
    """Expand a directory into its manifest files, or keep an explicit file order."""
    if isinstance(manifests, (str, Path)):
        candidate = Path(manifests)
        if candidate.is_dir():
            files = sorted(p for p in candidate.iterdir() if is_manifest_file(p))
            return tuple(str(p) for p in files)
        entries: list[Union[str, Path]] = [manifests]
    else:
        entries = list(manifests)

    seen: set[str] = set()
    ordered: list[str] = []
    for entry in entries:
        path = str(entry).strip()
        if not path or path in seen:
            continue
        seen.add(path)
        ordered.append(path)
    return tuple(ordered)


def resolve_target(
    *,
    image_ref: str,
    namespace: str,
    manifests: ManifestInput,
    deployment_name: str,
    timeout_seconds: int = 300,
    container: Optional[str] = None,
    endpoint: Optional[str] = None,
    health_checks: Iterable[HealthCheckSpec] = (),
    poll_interval_seconds: float = 5,
) -> DeploymentRequest:
    """Validate and normalize a requested rollout. Pure apart from listing a manifest directory."""
    validate_dns_label(namespace.strip(), field="namespace")
    validate_dns_subdomain(deployment_name.strip(), field="deployment name")
    if container is not None:
        validate_dns_label(container.strip(), field="container name")
    if timeout_seconds <= 0:
        raise InvalidTarget("timeout_seconds must be positive")

    manifest_paths = expand_manifests(manifests)
    if not manifest_paths:
        raise InvalidTarget("No manifests supplied for rollout")

    checks = tuple(health_checks)
    if checks and not endpoint:
        raise InvalidTarget("Health checks require an endpoint")

    try:
        return DeploymentRequest(
            image_ref=normalize_image_ref(image_ref),
            namespace=namespace.strip(),
            manifest_paths=manifest_paths,
            deployment_name=deployment_name.strip(),
            timeout_seconds=timeout_seconds,
            container=container.strip() if container else None,
            endpoint=normalize_endpoint(endpoint) if endpoint else None,
            health_checks=checks,
            poll_interval_seconds=poll_interval_seconds,
        )
    except ValidationError as exc:
        raise InvalidTarget(str(exc)) from exc


def revalidate(request: DeploymentRequest) -> DeploymentRequest:
    """Run resolution again over an already-built request."""
    return resolve_target(
        image_ref=request.image_ref,
        namespace=request.namespace,
        manifests=request.manifest_paths,
        deployment_name=request.deployment_name,
        timeout_seconds=request.timeout_seconds,
        container=request.container,
        endpoint=request.endpoint,
        health_checks=request.health_checks,
        poll_interval_seconds=request.poll_interval_seconds,
    )
