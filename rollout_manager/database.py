"""SQLite database helpers for the Rollout Manager."""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

from .migrations import upgrade_database
from .models import AppliedSet, AttemptResult, StageRecord


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(dt: datetime) -> str:
    utc_dt = dt.astimezone(timezone.utc)
    return utc_dt.replace(tzinfo=timezone.utc).isoformat().replace("+00:00", "Z")


def _from_iso(value: str | None) -> Optional[datetime]:
    if value is None:
        return None
    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class Database:
    """Lightweight wrapper around sqlite3 providing convenience helpers."""

    def __init__(self, path: Path):
        self.path = path
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def initialize_schema(self) -> None:
        """Ensure database schema is created using Alembic migrations."""
        with self._lock:
            # Commit any pending work before running Alembic migrations.
            self._conn.commit()
        upgrade_database(self.path)

    def _execute(self, query: str, params: Sequence | None = None) -> sqlite3.Cursor:
        with self._lock:
            cursor = self._conn.execute(query, params or [])
            self._conn.commit()
        return cursor

    def _query(self, query: str, params: Sequence | None = None) -> list[sqlite3.Row]:
        with self._lock:
            cursor = self._conn.execute(query, params or [])
            rows = cursor.fetchall()
        return rows

    def insert_attempt(self, result: AttemptResult) -> int:
        """Insert a finished rollout attempt and return its id."""
        params = (
            result.namespace,
            result.deployment_name,
            result.image_ref,
            result.state.value,
            result.failed_stage.value if result.failed_stage else None,
            result.error_kind,
            json.dumps(list(result.errors)),
            json.dumps([stage.model_dump(mode="json") for stage in result.stages]),
            json.dumps(result.applied.model_dump(mode="json")) if result.applied else None,
            result.attempts,
            _to_iso(result.started_at),
            _to_iso(result.finished_at),
            result.duration_seconds,
        )
        query = """
            INSERT INTO rollout_attempts (
                namespace, deployment_name, image_ref, state, failed_stage, error_kind,
                errors, stages, applied, attempts, started_at, finished_at, duration_seconds
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        cursor = self._execute(query, params)
        last_row_id = cursor.lastrowid
        return int(last_row_id) if last_row_id is not None else -1

    def fetch_attempt(self, attempt_id: int) -> Optional[AttemptResult]:
        rows = self._query("SELECT * FROM rollout_attempts WHERE id = ?", (attempt_id,))
        if not rows:
            return None
        return self._row_to_attempt(rows[0])

    def list_attempts(
        self,
        *,
        namespace: Optional[str] = None,
        deployment_name: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[AttemptResult], int]:
        """Return rollout attempts, newest first, with pagination."""
        clauses = []
        params: list[str | int] = []
        if namespace:
            clauses.append("namespace = ?")
            params.append(namespace)
        if deployment_name:
            clauses.append("deployment_name = ?")
            params.append(deployment_name)

        where_clause = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        total_rows = self._query(f"SELECT COUNT(*) FROM rollout_attempts {where_clause}", params)
        total = total_rows[0][0] if total_rows else 0

        query = f"""
            SELECT * FROM rollout_attempts
            {where_clause}
            ORDER BY started_at DESC, id DESC
            LIMIT ? OFFSET ?
        """
        rows = self._query(query, (*params, limit, offset))
        return [self._row_to_attempt(row) for row in rows], total

    @staticmethod
    def _row_to_attempt(row: sqlite3.Row) -> AttemptResult:
        applied_raw = row["applied"]
        return AttemptResult(
            id=row["id"],
            namespace=row["namespace"],
            deployment_name=row["deployment_name"],
            image_ref=row["image_ref"],
            state=row["state"],
            failed_stage=row["failed_stage"],
            error_kind=row["error_kind"],
            errors=tuple(json.loads(row["errors"] or "[]")),
            stages=tuple(StageRecord(**item) for item in json.loads(row["stages"] or "[]")),
            applied=AppliedSet.model_validate(json.loads(applied_raw)) if applied_raw else None,
            attempts=row["attempts"],
            started_at=_from_iso(row["started_at"]) or _utcnow(),
            finished_at=_from_iso(row["finished_at"]) or _utcnow(),
        )
