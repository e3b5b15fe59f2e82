"""Polls a deployment until its rollout converges, fails or runs out of time."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from rollout_manager.adapters.time import SystemClock
from rollout_manager.application.ports import Clock, ClusterControlPlane
from rollout_manager.application.timeouts import pause, run_blocking
from rollout_manager.errors import (
    ClusterCommandError,
    RolloutCancelled,
    RolloutFailed,
    RolloutTimedOut,
)
from rollout_manager.models import RolloutStatus

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_TIMEOUT_SECONDS = 300


class RolloutWatcher:
    """Drives the image update and the progressing phase of a rollout."""

    def __init__(
        self,
        cluster: ClusterControlPlane,
        *,
        clock: Optional[Clock] = None,
        call_timeout_seconds: float = 30,
    ):
        self._cluster = cluster
        self._clock = clock or SystemClock()
        self._call_timeout = call_timeout_seconds

    async def update_image(self, namespace: str, deployment: str, container: str, image: str) -> None:
        try:
            await run_blocking(
                self._cluster.set_image,
                namespace,
                deployment,
                container,
                image,
                timeout=self._call_timeout,
            )
        except ClusterCommandError as exc:
            raise RolloutFailed(
                f"Unable to set image {image} on {namespace}/{deployment}: {exc}",
                stage="set_image",
            ) from exc

    async def watch(
        self,
        namespace: str,
        deployment: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        cancel: Optional[asyncio.Event] = None,
    ) -> RolloutStatus:
        """Return the first status with every desired replica available.

        Raises RolloutFailed on a platform-reported failure, RolloutTimedOut
        once ``timeout_seconds`` elapse, RolloutCancelled when ``cancel`` is set.
        """
        deadline = self._clock.monotonic() + timeout_seconds
        last_status: Optional[RolloutStatus] = None
        polls = 0
        while True:
            if cancel is not None and cancel.is_set():
                raise RolloutCancelled(f"Rollout of {namespace}/{deployment} cancelled")
            remaining = deadline - self._clock.monotonic()
            if remaining <= 0:
                break

            polls += 1
            try:
                status = await run_blocking(
                    self._cluster.get_rollout_status,
                    namespace,
                    deployment,
                    timeout=min(self._call_timeout, remaining),
                )
            except ClusterCommandError as exc:
                logger.warning(
                    "Status poll %d for %s/%s failed: %s", polls, namespace, deployment, exc
                )
            else:
                last_status = status
                if status.failure_reason:
                    raise RolloutFailed(
                        f"Rollout of {namespace}/{deployment} failed: {status.failure_reason}"
                    )
                if status.is_complete:
                    logger.info(
                        "Rollout of %s/%s complete after %d polls (%s)",
                        namespace,
                        deployment,
                        polls,
                        status.describe(),
                    )
                    return status
                logger.debug(
                    "Rollout of %s/%s progressing: %s", namespace, deployment, status.describe()
                )

            remaining = deadline - self._clock.monotonic()
            if remaining <= 0:
                break
            await pause(min(poll_interval_seconds, remaining), cancel)

        progress = last_status.describe() if last_status else "no status observed"
        raise RolloutTimedOut(
            f"Rollout of {namespace}/{deployment} did not complete within "
            f"{timeout_seconds:g}s ({progress})"
        )
