"""Rollout orchestration service."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from rollout_manager.application.ports import AttemptHistoryRepository, Clock, Logger
from rollout_manager.application.services.applier import ManifestApplier
from rollout_manager.application.services.resolver import revalidate
from rollout_manager.application.services.smoke import SmokeVerifier
from rollout_manager.application.services.watcher import RolloutWatcher
from rollout_manager.errors import (
    ApplyError,
    RolloutCancelled,
    RolloutError,
    RolloutInProgress,
    RolloutTimedOut,
)
from rollout_manager.models import (
    ActiveRollout,
    AppliedSet,
    AttemptResult,
    DeploymentRequest,
    RolloutState,
    Stage,
    StageRecord,
    StageStatusType,
)

STAGE_ORDER = (
    Stage.RESOLVE,
    Stage.NAMESPACE,
    Stage.APPLY,
    Stage.SET_IMAGE,
    Stage.ROLLOUT,
    Stage.SMOKE,
)


@dataclass(slots=True)
class _AttemptRecorder:
    """Append-only record of a single pass through the stages."""

    request: DeploymentRequest
    started_at: datetime
    state: RolloutState = RolloutState.PENDING
    current: Stage = Stage.RESOLVE
    stages: list[StageRecord] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    failed_stage: Optional[Stage] = None
    error_kind: Optional[str] = None
    error: Optional[BaseException] = None
    applied: Optional[AppliedSet] = None

    def transition(self, target: RolloutState) -> None:
        if not self.state.can_transition_to(target):
            raise RuntimeError(f"Illegal rollout transition {self.state.value} -> {target.value}")
        self.state = target

    def begin(self, stage: Stage) -> None:
        self.current = stage

    def record(self, status: StageStatusType, message: Optional[str] = None) -> None:
        self.stages.append(StageRecord(stage=self.current, status=status, message=message))

    def fail(self, exc: BaseException) -> None:
        kind = exc.kind if isinstance(exc, RolloutError) else type(exc).__name__
        message = str(exc) or kind
        if isinstance(exc, ApplyError) and (exc.applied or exc.pending):
            message += (
                f" (applied: {', '.join(exc.applied) or '-'};"
                f" not attempted: {', '.join(exc.pending) or '-'})"
            )
        self.record("failed", message)
        self.errors.append(f"{self.current.value}: {kind}: {message}")
        self.failed_stage = self.current
        self.error_kind = kind
        self.error = exc
        for stage in STAGE_ORDER[STAGE_ORDER.index(self.current) + 1 :]:
            self.stages.append(StageRecord(stage=stage, status="skipped"))
        if isinstance(exc, RolloutTimedOut):
            self.transition(RolloutState.TIMED_OUT)
        elif isinstance(exc, RolloutCancelled):
            self.transition(RolloutState.CANCELLED)
        else:
            self.transition(RolloutState.FAILED)

    @property
    def retryable(self) -> bool:
        return isinstance(self.error, RolloutError) and self.error.retryable


@dataclass(slots=True)
class _TargetSlot:
    """Lock for one target plus the number of runs holding or queued on it."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class RolloutService:
    """Sequences one rollout: namespace, manifests, image, rollout watch, smoke checks."""

    def __init__(
        self,
        *,
        applier: ManifestApplier,
        watcher: RolloutWatcher,
        verifier: SmokeVerifier,
        clock: Clock,
        logger: Optional[Logger] = None,
        history_repo: Optional[AttemptHistoryRepository] = None,
        auto_retry_attempts: int = 1,
    ):
        self._applier = applier
        self._watcher = watcher
        self._verifier = verifier
        self._clock = clock
        self._logger: Logger = logger or logging.getLogger(__name__)
        self._history_repo = history_repo
        self._auto_retry_attempts = max(0, auto_retry_attempts)
        self._slots: dict[tuple[str, str], _TargetSlot] = {}
        self._active: set[tuple[str, str]] = set()

    def is_in_flight(self, namespace: str, deployment_name: str) -> bool:
        return (namespace, deployment_name) in self._active

    def active_rollouts(self) -> list[ActiveRollout]:
        return [
            ActiveRollout(namespace=namespace, deployment_name=deployment)
            for namespace, deployment in sorted(self._active)
        ]

    async def run_deployment(
        self,
        request: DeploymentRequest,
        *,
        cancel: Optional[asyncio.Event] = None,
        wait: bool = False,
    ) -> AttemptResult:
        """Run a rollout to completion and return its terminal result.

        A second run for the same (namespace, deployment) raises
        RolloutInProgress unless ``wait`` is set, in which case it queues.
        """
        target = request.target
        slot = self._slots.get(target)
        if slot is not None and not wait:
            raise RolloutInProgress(*target)
        if slot is None:
            slot = self._slots[target] = _TargetSlot()
        slot.users += 1
        try:
            async with slot.lock:
                self._active.add(target)
                try:
                    result = await self._run_with_retry(request, cancel)
                finally:
                    self._active.discard(target)
        finally:
            slot.users -= 1
            if not slot.users:
                del self._slots[target]

        if self._history_repo is not None:
            attempt_id = self._history_repo.record(result)
            result = result.model_copy(update={"id": attempt_id})
        return result

    async def _run_with_retry(
        self, request: DeploymentRequest, cancel: Optional[asyncio.Event]
    ) -> AttemptResult:
        max_runs = 1 + self._auto_retry_attempts
        recorders: list[_AttemptRecorder] = []
        for attempt in range(1, max_runs + 1):
            recorder = await self._attempt(request, cancel)
            recorders.append(recorder)
            if recorder.state is RolloutState.SUCCEEDED or not recorder.retryable:
                break
            if cancel is not None and cancel.is_set():
                break
            if attempt < max_runs:
                self._logger.warning(
                    "Rollout of %s/%s ended %s at %s; retrying whole sequence (%d/%d)",
                    request.namespace,
                    request.deployment_name,
                    recorder.state.value,
                    recorder.current.value,
                    attempt + 1,
                    max_runs,
                )

        final = recorders[-1]
        if len(recorders) > 1:
            errors = [
                f"attempt {index}: {error}"
                for index, rec in enumerate(recorders, start=1)
                for error in rec.errors
            ]
        else:
            errors = list(final.errors)

        result = AttemptResult(
            namespace=request.namespace,
            deployment_name=request.deployment_name,
            image_ref=request.image_ref,
            state=final.state,
            started_at=recorders[0].started_at,
            finished_at=self._clock.now(),
            errors=tuple(errors),
            failed_stage=final.failed_stage,
            error_kind=final.error_kind,
            stages=tuple(final.stages),
            attempts=len(recorders),
            applied=final.applied,
        )
        log = self._logger.info if result.state is RolloutState.SUCCEEDED else self._logger.error
        log(
            "Rollout of %s to %s/%s finished %s after %d attempt(s) in %.1fs",
            request.image_ref,
            request.namespace,
            request.deployment_name,
            result.state.value,
            result.attempts,
            result.duration_seconds,
        )
        return result

    async def _attempt(
        self, request: DeploymentRequest, cancel: Optional[asyncio.Event]
    ) -> _AttemptRecorder:
        recorder = _AttemptRecorder(request=request, started_at=self._clock.now())
        try:
            recorder.begin(Stage.RESOLVE)
            request = revalidate(request)
            recorder.record("succeeded")
            recorder.transition(RolloutState.APPLYING)

            recorder.begin(Stage.NAMESPACE)
            self._raise_if_cancelled(cancel)
            await self._applier.ensure_namespace(request.namespace)
            recorder.record("succeeded")

            recorder.begin(Stage.APPLY)
            self._raise_if_cancelled(cancel)
            recorder.applied = await self._applier.apply_manifests(
                request.manifest_paths,
                request.namespace,
                image=request.image_ref,
                deployment=request.deployment_name,
            )
            recorder.record("succeeded", f"{len(recorder.applied.applied)} manifest(s) applied")

            recorder.begin(Stage.SET_IMAGE)
            self._raise_if_cancelled(cancel)
            await self._watcher.update_image(
                request.namespace,
                request.deployment_name,
                request.container_name,
                request.image_ref,
            )
            recorder.record("succeeded", request.image_ref)
            recorder.transition(RolloutState.PROGRESSING)

            recorder.begin(Stage.ROLLOUT)
            status = await self._watcher.watch(
                request.namespace,
                request.deployment_name,
                timeout_seconds=request.timeout_seconds,
                poll_interval_seconds=request.poll_interval_seconds,
                cancel=cancel,
            )
            recorder.record("succeeded", status.describe())

            recorder.begin(Stage.SMOKE)
            if request.endpoint and request.health_checks:
                report = await self._verifier.verify(
                    request.endpoint, request.health_checks, cancel=cancel
                )
                recorder.record("succeeded", f"{len(report.checks)} check(s) passed")
            else:
                recorder.record("skipped", "no health checks configured")
            recorder.transition(RolloutState.SUCCEEDED)
        except RolloutError as exc:
            recorder.fail(exc)
        except Exception as exc:
            self._logger.exception(
                "Unexpected error during %s stage of %s/%s",
                recorder.current.value,
                request.namespace,
                request.deployment_name,
            )
            recorder.fail(exc)
        return recorder

    @staticmethod
    def _raise_if_cancelled(cancel: Optional[asyncio.Event]) -> None:
        if cancel is not None and cancel.is_set():
            raise RolloutCancelled("Rollout cancelled")
