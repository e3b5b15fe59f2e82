"""Assembly of the rollout service from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from rollout_manager.adapters.persistence import DatabaseAttemptRepository
from rollout_manager.adapters.time import SystemClock
from rollout_manager.application.services.applier import ManifestApplier
from rollout_manager.application.services.rollout_service import RolloutService
from rollout_manager.application.services.smoke import SmokeVerifier
from rollout_manager.application.services.watcher import RolloutWatcher
from rollout_manager.config import Settings
from rollout_manager.database import Database
from rollout_manager.kube_client import ControlPlaneClient, KubernetesControlPlane, StubbedControlPlane

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Components:
    settings: Settings
    database: Database
    cluster: ControlPlaneClient
    verifier: SmokeVerifier
    history: DatabaseAttemptRepository
    service: RolloutService

    async def aclose(self) -> None:
        await self.verifier.close()
        self.cluster.close()
        self.database.close()


def build_control_plane(settings: Settings) -> ControlPlaneClient:
    if settings.stub_mode:
        logger.info("Using stubbed control plane (%s)", settings.environment_name)
        return StubbedControlPlane()
    return KubernetesControlPlane(
        kubectl_path=settings.kubectl_path,
        context=settings.kube_context,
        kubeconfig=settings.kubeconfig_path,
        in_cluster=settings.kube_in_cluster,
        command_timeout_seconds=settings.command_timeout_seconds,
    )


def build_components(
    settings: Settings,
    *,
    cluster: Optional[ControlPlaneClient] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Components:
    database = Database(settings.database_path)
    database.initialize_schema()

    cluster = cluster or build_control_plane(settings)
    clock = SystemClock()
    history = DatabaseAttemptRepository(database)
    verifier = SmokeVerifier(
        client=http_client or httpx.AsyncClient(follow_redirects=False),
        request_timeout_seconds=settings.smoke_timeout_seconds,
    )
    service = RolloutService(
        applier=ManifestApplier(cluster, call_timeout_seconds=settings.command_timeout_seconds),
        watcher=RolloutWatcher(
            cluster, clock=clock, call_timeout_seconds=settings.command_timeout_seconds
        ),
        verifier=verifier,
        clock=clock,
        logger=logging.getLogger("rollout_manager.rollout"),
        history_repo=history,
        auto_retry_attempts=settings.auto_retry_attempts,
    )
    return Components(
        settings=settings,
        database=database,
        cluster=cluster,
        verifier=verifier,
        history=history,
        service=service,
    )
