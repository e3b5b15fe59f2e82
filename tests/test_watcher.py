import asyncio
import time

import pytest

from rollout_manager.application.services.watcher import RolloutWatcher
from rollout_manager.errors import (
    ClusterCommandError,
    RolloutCancelled,
    RolloutFailed,
    RolloutTimedOut,
)

from conftest import COMPLETE, PROGRESSING, FakeCluster, SteppingClock


@pytest.mark.asyncio
async def test_succeeds_only_once_all_replicas_available():
    cluster = FakeCluster(statuses=[PROGRESSING, PROGRESSING, COMPLETE])
    watcher = RolloutWatcher(cluster)

    status = await watcher.watch("podinfo", "podinfo", timeout_seconds=5, poll_interval_seconds=0.01)

    assert status.is_complete
    assert cluster.status_polls == 3


@pytest.mark.asyncio
async def test_times_out_within_one_poll_interval():
    cluster = FakeCluster(statuses=[PROGRESSING])
    watcher = RolloutWatcher(cluster)
    timeout, interval = 0.3, 0.05

    started = time.monotonic()
    with pytest.raises(RolloutTimedOut) as excinfo:
        await watcher.watch("podinfo", "podinfo", timeout_seconds=timeout, poll_interval_seconds=interval)
    elapsed = time.monotonic() - started

    assert elapsed < timeout + interval + 0.25
    assert "1/2 updated" in str(excinfo.value)
    assert excinfo.value.retryable


@pytest.mark.asyncio
async def test_deadline_measured_on_injected_clock():
    cluster = FakeCluster(statuses=[PROGRESSING])
    watcher = RolloutWatcher(cluster, clock=SteppingClock(step=10))

    with pytest.raises(RolloutTimedOut):
        await watcher.watch("podinfo", "podinfo", timeout_seconds=300, poll_interval_seconds=0.001)

    # Two clock reads per poll at 10s each: a 300s timeout allows fifteen polls.
    assert cluster.status_polls == 15


@pytest.mark.asyncio
async def test_platform_failure_is_terminal():
    failing = PROGRESSING.model_copy(update={"failure_reason": "ErrImagePull in pod podinfo-x"})
    cluster = FakeCluster(statuses=[PROGRESSING, failing, COMPLETE])

    with pytest.raises(RolloutFailed, match="ErrImagePull"):
        await RolloutWatcher(cluster).watch(
            "podinfo", "podinfo", timeout_seconds=5, poll_interval_seconds=0.01
        )
    assert cluster.status_polls == 2


class FlakyCluster(FakeCluster):
    def __init__(self):
        super().__init__(statuses=[COMPLETE])
        self.failures = 2

    def get_rollout_status(self, namespace, deployment):
        if self.failures:
            self.failures -= 1
            raise ClusterCommandError("connection refused")
        return super().get_rollout_status(namespace, deployment)


@pytest.mark.asyncio
async def test_transient_status_errors_are_retried():
    cluster = FlakyCluster()

    status = await RolloutWatcher(cluster).watch(
        "podinfo", "podinfo", timeout_seconds=5, poll_interval_seconds=0.01
    )

    assert status.is_complete
    assert cluster.failures == 0


@pytest.mark.asyncio
async def test_cancellation_honoured_at_poll_boundary():
    cluster = FakeCluster(statuses=[PROGRESSING])
    cancel = asyncio.Event()

    async def cancel_soon():
        await asyncio.sleep(0.05)
        cancel.set()

    canceller = asyncio.create_task(cancel_soon())
    started = time.monotonic()
    with pytest.raises(RolloutCancelled):
        await RolloutWatcher(cluster).watch(
            "podinfo", "podinfo", timeout_seconds=30, poll_interval_seconds=5, cancel=cancel
        )
    await canceller
    assert time.monotonic() - started < 2


@pytest.mark.asyncio
async def test_update_image_failure_is_set_image_stage():
    cluster = FakeCluster(set_image_error='deployments.apps "podinfo" not found')

    with pytest.raises(RolloutFailed) as excinfo:
        await RolloutWatcher(cluster).update_image("podinfo", "podinfo", "podinfo", "app:42")

    assert excinfo.value.stage == "set_image"
