"""Port definitions for Hexagonal architecture."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol, Tuple

from rollout_manager.models import AttemptResult, RolloutStatus


class Clock(Protocol):
    """Provides wall-clock timestamps and a monotonic reading for deadlines."""

    def now(self) -> datetime:
        ...

    def monotonic(self) -> float:
        ...


class Logger(Protocol):
    """Light-weight logging port."""

    def info(self, msg: str, *args: object, **kwargs: object) -> None:
        ...

    def warning(self, msg: str, *args: object, **kwargs: object) -> None:
        ...

    def debug(self, msg: str, *args: object, **kwargs: object) -> None:
        ...

    def error(self, msg: str, *args: object, **kwargs: object) -> None:
        ...

    def exception(self, msg: str, *args: object, **kwargs: object) -> None:
        ...


class ClusterControlPlane(Protocol):
    """The subset of the cluster API a rollout needs. All calls are blocking."""

    def ensure_namespace(self, namespace: str) -> None:
        ...

    def apply_manifest(self, document: str, namespace: str) -> list[str]:
        ...

    def set_image(self, namespace: str, deployment: str, container: str, image: str) -> None:
        ...

    def get_rollout_status(self, namespace: str, deployment: str) -> RolloutStatus:
        ...


class AttemptHistoryRepository(Protocol):
    """Persists finished rollout attempts."""

    def record(self, result: AttemptResult) -> int:
        ...

    def fetch(self, attempt_id: int) -> Optional[AttemptResult]:
        ...

    def list(
        self,
        *,
        namespace: Optional[str],
        deployment_name: Optional[str],
        limit: int,
        offset: int,
    ) -> Tuple[list[AttemptResult], int]:
        ...
