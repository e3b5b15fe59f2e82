from __future__ import annotations

import itertools
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Sequence

import pytest

from rollout_manager.errors import ClusterCommandError
from rollout_manager.kube_client import parse_apply_output
from rollout_manager.manifests import describe_resources
from rollout_manager.models import RolloutStatus

DEPLOYMENT_YAML = """\
apiVersion: apps/v1
kind: Deployment
metadata:
  name: {name}
spec:
  replicas: {replicas}
  selector:
    matchLabels:
      app: {name}
  template:
    metadata:
      labels:
        app: {name}
    spec:
      containers:
        - name: {name}
          image: stefanprodan/podinfo:6.0.0
"""

SERVICE_YAML = """\
apiVersion: v1
kind: Service
metadata:
  name: {name}
spec:
  selector:
    app: {name}
  ports:
    - port: 9898
"""

COMPLETE = RolloutStatus(
    generation=2,
    observed_generation=2,
    desired_replicas=2,
    updated_replicas=2,
    ready_replicas=2,
    available_replicas=2,
    total_replicas=2,
)

PROGRESSING = RolloutStatus(
    generation=2,
    observed_generation=2,
    desired_replicas=2,
    updated_replicas=1,
    ready_replicas=2,
    available_replicas=2,
    total_replicas=3,
)


class FakeCluster:
    """In-memory control plane recording every call in order."""

    def __init__(
        self,
        *,
        statuses: Optional[Sequence[RolloutStatus]] = None,
        status_fn: Optional[Callable[[str, str], RolloutStatus]] = None,
        reject: Sequence[str] = (),
        set_image_error: Optional[str] = None,
    ):
        self._statuses = list(statuses or [COMPLETE])
        self._status_fn = status_fn
        self._reject = list(reject)
        self._set_image_error = set_image_error
        self._lock = threading.Lock()
        self.events: list[tuple[str, ...]] = []
        self.namespaces: set[str] = set()
        self.applied: list[str] = []
        self.images: dict[tuple[str, str, str], str] = {}
        self.status_polls = 0

    def _log(self, *event: str) -> None:
        with self._lock:
            self.events.append(event)

    def ensure_namespace(self, namespace: str) -> None:
        self._log("namespace", namespace)
        self.namespaces.add(namespace)

    def apply_manifest(self, document: str, namespace: str) -> list[str]:
        self._log("apply", namespace)
        for marker in self._reject:
            if marker in document:
                raise ClusterCommandError(f"admission webhook denied {marker}")
        resources = describe_resources(document)
        self.applied.extend(resources)
        return parse_apply_output("\n".join(f"{r} configured" for r in resources))

    def set_image(self, namespace: str, deployment: str, container: str, image: str) -> None:
        self._log("set_image", namespace, deployment)
        if self._set_image_error:
            raise ClusterCommandError(self._set_image_error)
        self.images[(namespace, deployment, container)] = image

    def get_rollout_status(self, namespace: str, deployment: str) -> RolloutStatus:
        self._log("status", namespace, deployment)
        with self._lock:
            self.status_polls += 1
            index = self.status_polls - 1
        if self._status_fn is not None:
            return self._status_fn(namespace, deployment)
        return self._statuses[min(index, len(self._statuses) - 1)]


class SteppingClock:
    """Monotonic clock that advances a fixed step every time it is read."""

    def __init__(self, step: float):
        self._step = step
        self._counter = itertools.count()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return next(self._counter) * self._step


@pytest.fixture
def write_manifest(tmp_path: Path) -> Callable[..., str]:
    def _write(filename: str, content: str) -> str:
        path = tmp_path / filename
        path.write_text(content, encoding="utf-8")
        return str(path)

    return _write


@pytest.fixture
def deployment_manifest(write_manifest) -> str:
    return write_manifest("deploy.yaml", DEPLOYMENT_YAML.format(name="podinfo", replicas=2))
