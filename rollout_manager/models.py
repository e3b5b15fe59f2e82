"""Pydantic models representing Rollout Manager domain objects."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

StageStatusType = Literal["succeeded", "failed", "skipped"]


class RolloutState(str, Enum):
    PENDING = "pending"
    APPLYING = "applying"
    PROGRESSING = "progressing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    def can_transition_to(self, target: "RolloutState") -> bool:
        """Forward-only transitions; progressing may repeat while polling."""
        if self.is_terminal:
            return False
        if self is RolloutState.PROGRESSING and target is RolloutState.PROGRESSING:
            return True
        return _STATE_ORDER[target] > _STATE_ORDER[self]


TERMINAL_STATES = frozenset(
    {
        RolloutState.SUCCEEDED,
        RolloutState.FAILED,
        RolloutState.TIMED_OUT,
        RolloutState.CANCELLED,
    }
)

_STATE_ORDER = {
    RolloutState.PENDING: 0,
    RolloutState.APPLYING: 1,
    RolloutState.PROGRESSING: 2,
    RolloutState.SUCCEEDED: 3,
    RolloutState.FAILED: 3,
    RolloutState.TIMED_OUT: 3,
    RolloutState.CANCELLED: 3,
}


class Stage(str, Enum):
    RESOLVE = "resolve"
    NAMESPACE = "namespace"
    APPLY = "apply"
    SET_IMAGE = "set_image"
    ROLLOUT = "rollout"
    SMOKE = "smoke"


class HealthCheckSpec(BaseModel):
    """A single smoke check against the rolled-out service."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(..., description="Request path, e.g. /healthz")
    expected_status: int = Field(200, ge=100, le=599)
    max_attempts: int = Field(10, ge=1)
    interval_seconds: float = Field(5, ge=0)

    @field_validator("path")
    @classmethod
    def _path_is_relative(cls, value: str) -> str:
        # Keep it a path so the verifier cannot be pointed at arbitrary hosts.
        if not value.startswith("/") or "://" in value:
            raise ValueError("path must be an absolute path starting with '/'")
        return value


class DeploymentRequest(BaseModel):
    """A normalized, immutable request to roll out one image to one deployment."""

    model_config = ConfigDict(frozen=True)

    image_ref: str
    namespace: str
    manifest_paths: tuple[str, ...]
    deployment_name: str
    timeout_seconds: int = Field(300, gt=0)
    container: Optional[str] = None
    endpoint: Optional[str] = None
    health_checks: tuple[HealthCheckSpec, ...] = ()
    poll_interval_seconds: float = Field(5, gt=0)

    @property
    def target(self) -> tuple[str, str]:
        return (self.namespace, self.deployment_name)

    @property
    def container_name(self) -> str:
        return self.container or self.deployment_name


class RolloutStatus(BaseModel):
    """Snapshot of a deployment's rollout progress as reported by the cluster."""

    generation: int = 0
    observed_generation: int = 0
    desired_replicas: int = 0
    updated_replicas: int = 0
    ready_replicas: int = 0
    available_replicas: int = 0
    total_replicas: int = 0
    failure_reason: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        if self.observed_generation < self.generation:
            return False
        return (
            self.updated_replicas >= self.desired_replicas
            and self.total_replicas <= self.updated_replicas
            and self.available_replicas >= self.desired_replicas
        )

    def describe(self) -> str:
        return (
            f"{self.updated_replicas}/{self.desired_replicas} updated, "
            f"{self.available_replicas} available, {self.total_replicas} total"
        )


class AppliedManifest(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    resources: tuple[str, ...] = ()


class AppliedSet(BaseModel):
    """Manifests applied to a namespace, in file order."""

    model_config = ConfigDict(frozen=True)

    namespace: str
    applied: tuple[AppliedManifest, ...] = ()

    @property
    def paths(self) -> list[str]:
        return [item.path for item in self.applied]


class SmokeCheckResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    status_code: int
    attempts: int
    latency_ms: Optional[float] = None


class SmokeReport(BaseModel):
    """Outcome of a passed smoke verification."""

    model_config = ConfigDict(frozen=True)

    endpoint: str
    checks: tuple[SmokeCheckResult, ...] = ()


class StageRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    stage: Stage
    status: StageStatusType
    message: Optional[str] = None


class AttemptResult(BaseModel):
    """Terminal record of one orchestration run."""

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    namespace: str
    deployment_name: str
    image_ref: str
    state: RolloutState
    started_at: datetime
    finished_at: datetime
    errors: tuple[str, ...] = ()
    failed_stage: Optional[Stage] = None
    error_kind: Optional[str] = None
    stages: tuple[StageRecord, ...] = ()
    attempts: int = 1
    applied: Optional[AppliedSet] = None

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def exit_code(self) -> int:
        return 0 if self.state is RolloutState.SUCCEEDED else 1

    def stage_status(self, stage: Stage) -> Optional[StageStatusType]:
        for record in self.stages:
            if record.stage is stage:
                return record.status
        return None


class RolloutCommand(BaseModel):
    """Raw rollout request accepted by the API before target resolution."""

    image: str
    namespace: str
    deployment: str
    manifests: list[str] = Field(..., min_length=1)
    timeout_seconds: int = Field(300, gt=0)
    container: Optional[str] = None
    endpoint: Optional[str] = None
    health_checks: list[HealthCheckSpec] = Field(default_factory=list)
    poll_interval_seconds: Optional[float] = Field(None, gt=0)
    wait: bool = Field(False, description="Queue behind an in-flight run instead of rejecting")


class ActiveRollout(BaseModel):
    namespace: str
    deployment_name: str
