"""Clock adapter for application services."""

from __future__ import annotations

import time
from datetime import datetime, timezone

from rollout_manager.application.ports import Clock


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()
