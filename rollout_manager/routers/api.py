"""JSON API endpoints."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from ..application.ports import AttemptHistoryRepository
from ..application.services.resolver import resolve_target
from ..application.services.rollout_service import RolloutService
from ..config import Settings
from ..errors import InvalidTarget, RolloutInProgress
from ..models import ActiveRollout, AttemptResult, RolloutCommand

router = APIRouter(prefix="/api", tags=["api"])


def get_service(request: Request) -> RolloutService:
    return request.app.state.rollout_service


def get_history(request: Request) -> AttemptHistoryRepository:
    return request.app.state.history_repository


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/rollouts", response_model=AttemptResult)
async def create_rollout(
    command: RolloutCommand,
    service: RolloutService = Depends(get_service),
    settings: Settings = Depends(get_app_settings),
) -> AttemptResult:
    try:
        request = resolve_target(
            image_ref=command.image,
            namespace=command.namespace,
            manifests=command.manifests,
            deployment_name=command.deployment,
            timeout_seconds=command.timeout_seconds,
            container=command.container,
            endpoint=command.endpoint,
            health_checks=command.health_checks,
            poll_interval_seconds=command.poll_interval_seconds or settings.poll_interval_seconds,
        )
    except InvalidTarget as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    try:
        return await service.run_deployment(request, wait=command.wait)
    except RolloutInProgress as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@router.get("/rollouts")
def list_rollouts(
    namespace: Optional[str] = Query(default=None),
    deployment: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    history: AttemptHistoryRepository = Depends(get_history),
) -> dict[str, Any]:
    items, total = history.list(
        namespace=namespace, deployment_name=deployment, limit=limit, offset=offset
    )
    return {
        "rollouts": [item.model_dump(mode="json") for item in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/rollouts/active", response_model=list[ActiveRollout])
def list_active_rollouts(service: RolloutService = Depends(get_service)) -> list[ActiveRollout]:
    return service.active_rollouts()


@router.get("/rollouts/{attempt_id}", response_model=AttemptResult)
def get_rollout(
    attempt_id: int, history: AttemptHistoryRepository = Depends(get_history)
) -> AttemptResult:
    result = history.fetch(attempt_id)
    if not result:
        raise HTTPException(status_code=404, detail="Rollout not found")
    return result
