"""Error taxonomy for rollout attempts."""

from __future__ import annotations

from typing import Optional, Sequence


class RolloutError(Exception):
    """Base class for failures that terminate a rollout attempt."""

    kind = "RolloutError"
    stage: Optional[str] = None
    retryable = False

    def __init__(self, message: str, *, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if stage is not None:
            self.stage = stage


class InvalidTarget(RolloutError, ValueError):
    kind = "InvalidTarget"
    stage = "resolve"


class ApplyError(RolloutError):
    """A manifest was rejected. Already applied manifests are left in place."""

    kind = "ApplyError"
    stage = "apply"

    def __init__(
        self,
        message: str,
        *,
        stage: Optional[str] = None,
        applied: Sequence[str] = (),
        failed: Optional[str] = None,
        pending: Sequence[str] = (),
    ):
        super().__init__(message, stage=stage)
        self.applied = list(applied)
        self.failed = failed
        self.pending = list(pending)


class RolloutFailed(RolloutError):
    kind = "RolloutFailed"
    stage = "rollout"


class RolloutTimedOut(RolloutError):
    kind = "RolloutTimedOut"
    stage = "rollout"
    retryable = True


class HealthCheckExhausted(RolloutError):
    kind = "HealthCheckExhausted"
    stage = "smoke"
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        path: str,
        attempts: int,
        last_error: Optional[str] = None,
    ):
        super().__init__(message)
        self.path = path
        self.attempts = attempts
        self.last_error = last_error


class RolloutCancelled(RolloutError):
    kind = "RolloutCancelled"


class RolloutInProgress(RuntimeError):
    """Raised when a run is requested for a target that already has one in flight."""

    def __init__(self, namespace: str, deployment_name: str):
        super().__init__(f"Rollout already in progress for {namespace}/{deployment_name}")
        self.namespace = namespace
        self.deployment_name = deployment_name


class ClusterCommandError(RuntimeError):
    """A control plane call failed or timed out."""

    def __init__(
        self,
        message: str,
        *,
        command: Sequence[str] = (),
        returncode: Optional[int] = None,
        status: Optional[int] = None,
    ):
        super().__init__(message)
        self.command = list(command)
        self.returncode = returncode
        self.status = status
