"""Applies manifest files to a namespace in order."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from rollout_manager.application.ports import ClusterControlPlane
from rollout_manager.application.timeouts import run_blocking
from rollout_manager.errors import ApplyError, ClusterCommandError
from rollout_manager.manifests import ManifestError, ManifestLoader
from rollout_manager.models import AppliedManifest, AppliedSet

logger = logging.getLogger(__name__)


class ManifestApplier:
    """Create-or-update semantics over an ordered manifest set.

    A rejected manifest stops the sequence; manifests applied before it
    stay applied.
    """

    def __init__(
        self,
        cluster: ClusterControlPlane,
        *,
        loader: Optional[ManifestLoader] = None,
        call_timeout_seconds: float = 30,
    ):
        self._cluster = cluster
        self._loader = loader or ManifestLoader()
        self._timeout = call_timeout_seconds

    async def ensure_namespace(self, namespace: str) -> None:
        try:
            await run_blocking(self._cluster.ensure_namespace, namespace, timeout=self._timeout)
        except ClusterCommandError as exc:
            raise ApplyError(
                f"Unable to ensure namespace {namespace}: {exc}", stage="namespace"
            ) from exc

    async def apply(
        self,
        manifests: Sequence[str],
        namespace: str,
        *,
        image: str = "",
        deployment: str = "",
    ) -> AppliedSet:
        await self.ensure_namespace(namespace)
        return await self.apply_manifests(
            manifests, namespace, image=image, deployment=deployment
        )

    async def apply_manifests(
        self,
        manifests: Sequence[str],
        namespace: str,
        *,
        image: str = "",
        deployment: str = "",
    ) -> AppliedSet:
        applied: list[AppliedManifest] = []
        for index, path in enumerate(manifests):
            try:
                manifest = self._loader.load(
                    path, image=image, namespace=namespace, deployment=deployment
                )
                resources = await run_blocking(
                    self._cluster.apply_manifest,
                    manifest.document,
                    namespace,
                    timeout=self._timeout,
                )
            except (ManifestError, ClusterCommandError) as exc:
                applied_paths = [item.path for item in applied]
                pending = list(manifests[index + 1 :])
                logger.error(
                    "Manifest %s rejected after %d applied: %s", path, len(applied_paths), exc
                )
                raise ApplyError(
                    f"Manifest {path} rejected: {exc}",
                    applied=applied_paths,
                    failed=path,
                    pending=pending,
                ) from exc
            logger.info("Applied %s to %s: %s", path, namespace, ", ".join(resources) or "-")
            applied.append(
                AppliedManifest(path=path, resources=tuple(resources or manifest.resources))
            )
        return AppliedSet(namespace=namespace, applied=tuple(applied))
