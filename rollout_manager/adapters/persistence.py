"""Database-backed port implementations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from rollout_manager.application.ports import AttemptHistoryRepository
from rollout_manager.database import Database
from rollout_manager.models import AttemptResult


@dataclass(slots=True)
class DatabaseAttemptRepository(AttemptHistoryRepository):
    """Rollout attempt history backed by SQLite."""

    database: Database

    def record(self, result: AttemptResult) -> int:
        return self.database.insert_attempt(result)

    def fetch(self, attempt_id: int) -> Optional[AttemptResult]:
        return self.database.fetch_attempt(attempt_id)

    def list(
        self,
        *,
        namespace: Optional[str],
        deployment_name: Optional[str],
        limit: int,
        offset: int,
    ) -> Tuple[list[AttemptResult], int]:
        return self.database.list_attempts(
            namespace=namespace, deployment_name=deployment_name, limit=limit, offset=offset
        )
