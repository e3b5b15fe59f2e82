"""Cluster control plane integrations."""

from __future__ import annotations

import json
import logging
import subprocess
from abc import ABC, abstractmethod
from contextlib import contextmanager
from threading import Lock
from typing import Any, Iterable, Iterator, Optional, Sequence

import yaml
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from .errors import ClusterCommandError
from .models import RolloutStatus

logger = logging.getLogger(__name__)

# Container waiting reasons that will not resolve without a new rollout.
FATAL_WAITING_REASONS = frozenset(
    {
        "CrashLoopBackOff",
        "ImagePullBackOff",
        "ErrImagePull",
        "InvalidImageName",
        "CreateContainerConfigError",
        "CreateContainerError",
    }
)


class ControlPlaneClient(ABC):
    """Common interface for cluster transports."""

    def close(self) -> None:
        """Release any resources associated with the client."""

    @abstractmethod
    def ensure_namespace(self, namespace: str) -> None:
        """Create the namespace if it does not exist."""

    @abstractmethod
    def apply_manifest(self, document: str, namespace: str) -> list[str]:
        """Create-or-update every object in the document; return the affected resources."""

    @abstractmethod
    def set_image(self, namespace: str, deployment: str, container: str, image: str) -> None:
        """Point a deployment's container at a new image."""

    @abstractmethod
    def get_rollout_status(self, namespace: str, deployment: str) -> RolloutStatus:
        """Return the current rollout progress of a deployment."""


class KubernetesControlPlane(ControlPlaneClient):
    """Real cluster implementation.

    Namespaces, image updates and status reads go through the Kubernetes API.
    Manifests are handed to ``kubectl apply`` so arbitrary kinds and
    multi-document files are applied exactly as an operator would.
    """

    def __init__(
        self,
        *,
        kubectl_path: str = "kubectl",
        context: Optional[str] = None,
        kubeconfig: Optional[str] = None,
        in_cluster: bool = False,
        command_timeout_seconds: float = 30,
        core_api: Optional[k8s_client.CoreV1Api] = None,
        apps_api: Optional[k8s_client.AppsV1Api] = None,
    ):
        self._kubectl = kubectl_path
        self._context = context
        self._kubeconfig = kubeconfig
        self._timeout = command_timeout_seconds
        self._api_client: Optional[k8s_client.ApiClient] = None
        self._core = core_api
        self._apps = apps_api
        if core_api is not None and apps_api is not None:
            return

        try:
            if in_cluster:
                k8s_config.load_incluster_config()
            else:
                k8s_config.load_kube_config(config_file=kubeconfig, context=context)
        except (ConfigException, OSError) as exc:
            logger.warning("Kubernetes configuration unavailable: %s", exc)
            return
        self._api_client = k8s_client.ApiClient()
        self._core = core_api or k8s_client.CoreV1Api(self._api_client)
        self._apps = apps_api or k8s_client.AppsV1Api(self._api_client)
        logger.debug("Kubernetes client configured (context: %s)", context or "default")

    def close(self) -> None:
        if self._api_client:
            self._api_client.close()

    def ensure_namespace(self, namespace: str) -> None:
        core = self._core_api()
        body = k8s_client.V1Namespace(metadata=k8s_client.V1ObjectMeta(name=namespace))
        with _translate_api_errors(f"create namespace {namespace}"):
            try:
                core.create_namespace(body=body, _request_timeout=self._timeout)
            except ApiException as exc:
                if exc.status != 409:
                    raise
                logger.debug("Namespace %s already exists", namespace)
                return
        logger.info("Created namespace %s", namespace)

    def apply_manifest(self, document: str, namespace: str) -> list[str]:
        output = self._run(["apply", "--namespace", namespace, "-f", "-"], stdin=document)
        return parse_apply_output(output)

    def set_image(self, namespace: str, deployment: str, container: str, image: str) -> None:
        apps = self._apps_api()
        with _translate_api_errors(f"set image on {namespace}/{deployment}"):
            current = apps.read_namespaced_deployment(
                name=deployment, namespace=namespace, _request_timeout=self._timeout
            )
            names = [spec.name for spec in current.spec.template.spec.containers or []]
            if container not in names:
                raise ClusterCommandError(
                    f'unable to find container named "{container}" in deployment {deployment}'
                )
            patch = {"spec": {"template": {"spec": {"containers": [{"name": container, "image": image}]}}}}
            apps.patch_namespaced_deployment(
                name=deployment, namespace=namespace, body=patch, _request_timeout=self._timeout
            )
        logger.info("Set image %s on %s/%s container %s", image, namespace, deployment, container)

    def get_rollout_status(self, namespace: str, deployment: str) -> RolloutStatus:
        apps = self._apps_api()
        with _translate_api_errors(f"read deployment {namespace}/{deployment}"):
            current = apps.read_namespaced_deployment(
                name=deployment, namespace=namespace, _request_timeout=self._timeout
            )
        status = parse_deployment_status(current)
        if status.failure_reason or status.is_complete:
            return status

        selector = label_selector(current)
        if selector:
            core = self._core_api()
            with _translate_api_errors(f"list pods of {namespace}/{deployment}"):
                pods = core.list_namespaced_pod(
                    namespace=namespace, label_selector=selector, _request_timeout=self._timeout
                )
            reason = detect_pod_failure(pods.items or [])
            if reason:
                return status.model_copy(update={"failure_reason": reason})
        return status

    def _core_api(self) -> k8s_client.CoreV1Api:
        if self._core is None:
            raise ClusterCommandError("Kubernetes API client unavailable")
        return self._core

    def _apps_api(self) -> k8s_client.AppsV1Api:
        if self._apps is None:
            raise ClusterCommandError("Kubernetes API client unavailable")
        return self._apps

    def _base_command(self) -> list[str]:
        command = [self._kubectl]
        if self._kubeconfig:
            command.extend(["--kubeconfig", self._kubeconfig])
        if self._context:
            command.extend(["--context", self._context])
        return command

    def _run(self, args: Sequence[str], *, stdin: Optional[str] = None) -> str:
        command = [*self._base_command(), *args]
        logger.debug("Running command: %s", " ".join(command))
        try:
            result = subprocess.run(
                command,
                input=stdin,
                check=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise ClusterCommandError(
                f"kubectl timed out after {self._timeout:g}s", command=command
            ) from exc
        except subprocess.CalledProcessError as exc:
            message = (exc.stderr or "").strip() or f"kubectl exited with {exc.returncode}"
            logger.debug("kubectl failed: %s", message)
            raise ClusterCommandError(message, command=command, returncode=exc.returncode) from exc
        except OSError as exc:
            raise ClusterCommandError(f"unable to run kubectl: {exc}", command=command) from exc
        if result.stderr:
            logger.debug("kubectl stderr: %s", result.stderr.strip())
        return result.stdout


@contextmanager
def _translate_api_errors(action: str) -> Iterator[None]:
    try:
        yield
    except ApiException as exc:
        raise ClusterCommandError(
            f"{action} failed: {describe_api_error(exc)}", status=exc.status
        ) from exc
    except HTTPError as exc:
        raise ClusterCommandError(f"{action} failed: {exc}") from exc


def describe_api_error(exc: ApiException) -> str:
    """Render an API error as `404 Not Found: <server message>`."""
    summary = f"{exc.status} {exc.reason}"
    if not exc.body:
        return summary
    try:
        message = json.loads(exc.body).get("message")
    except (ValueError, AttributeError):
        return summary
    return f"{summary}: {message}" if message else summary


def parse_apply_output(output: str) -> list[str]:
    """Extract resource names from `kubectl apply` lines such as `deployment.apps/web configured`."""
    resources: list[str] = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        resource = line.split()[0]
        if "/" in resource:
            resources.append(resource)
    return resources


def parse_deployment_status(deployment: k8s_client.V1Deployment) -> RolloutStatus:
    status = deployment.status or k8s_client.V1DeploymentStatus()
    failure_reason = None
    for condition in status.conditions or []:
        if condition.type == "Progressing" and condition.reason == "ProgressDeadlineExceeded":
            failure_reason = "ProgressDeadlineExceeded"
    desired = deployment.spec.replicas
    return RolloutStatus(
        generation=deployment.metadata.generation or 0,
        observed_generation=status.observed_generation or 0,
        desired_replicas=1 if desired is None else desired,
        updated_replicas=status.updated_replicas or 0,
        ready_replicas=status.ready_replicas or 0,
        available_replicas=status.available_replicas or 0,
        total_replicas=status.replicas or 0,
        failure_reason=failure_reason,
    )


def detect_pod_failure(pods: Iterable[k8s_client.V1Pod]) -> Optional[str]:
    """Return the first fatal container waiting reason found across pods."""
    for pod in pods:
        if pod.status is None:
            continue
        statuses = [
            *(pod.status.init_container_statuses or []),
            *(pod.status.container_statuses or []),
        ]
        for container in statuses:
            waiting = container.state.waiting if container.state else None
            if waiting is not None and waiting.reason in FATAL_WAITING_REASONS:
                detail = f"{waiting.reason} in pod {pod.metadata.name}"
                return f"{detail}: {waiting.message}" if waiting.message else detail
    return None


def label_selector(deployment: k8s_client.V1Deployment) -> Optional[str]:
    selector = deployment.spec.selector
    labels = selector.match_labels if selector else None
    if not labels:
        return None
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


class StubbedControlPlane(ControlPlaneClient):
    """In-memory cluster for development and testing.

    Deployments become available after ``converge_after_polls`` status
    queries following an image update.
    """

    def __init__(self, *, converge_after_polls: int = 1, failure_reason: Optional[str] = None):
        self._converge_after = max(0, converge_after_polls)
        self._failure_reason = failure_reason
        self._lock = Lock()
        self.namespaces: set[str] = set()
        self.objects: dict[tuple[str, str], dict[str, Any]] = {}
        self.images: dict[tuple[str, str], dict[str, str]] = {}
        self._polls: dict[tuple[str, str], int] = {}

    def ensure_namespace(self, namespace: str) -> None:
        with self._lock:
            self.namespaces.add(namespace)

    def apply_manifest(self, document: str, namespace: str) -> list[str]:
        with self._lock:
            if namespace not in self.namespaces:
                raise ClusterCommandError(f'namespaces "{namespace}" not found')
            resources: list[str] = []
            for obj in yaml.safe_load_all(document):
                if not obj:
                    continue
                kind = str(obj.get("kind", "")).lower()
                name = (obj.get("metadata") or {}).get("name")
                if not kind or not name:
                    raise ClusterCommandError("error validating data: kind or metadata.name not set")
                resource = f"{kind}/{name}"
                self.objects[(namespace, resource)] = obj
                if kind == "deployment":
                    containers = (
                        ((obj.get("spec") or {}).get("template") or {}).get("spec") or {}
                    ).get("containers") or []
                    self.images[(namespace, name)] = {
                        c.get("name", name): c.get("image", "") for c in containers
                    }
                    self._polls[(namespace, name)] = 0
                resources.append(resource)
            return resources

    def set_image(self, namespace: str, deployment: str, container: str, image: str) -> None:
        with self._lock:
            key = (namespace, deployment)
            if key not in self.images:
                raise ClusterCommandError(f'deployments.apps "{deployment}" not found')
            if container not in self.images[key]:
                raise ClusterCommandError(f'unable to find container named "{container}"')
            self.images[key][container] = image
            self._polls[key] = 0

    def get_rollout_status(self, namespace: str, deployment: str) -> RolloutStatus:
        with self._lock:
            key = (namespace, deployment)
            obj = self.objects.get((namespace, f"deployment/{deployment}"))
            if obj is None:
                raise ClusterCommandError(f'deployments.apps "{deployment}" not found')
            desired = int((obj.get("spec") or {}).get("replicas", 1))
            polls = self._polls.get(key, 0) + 1
            self._polls[key] = polls
            if self._failure_reason:
                return RolloutStatus(
                    generation=2,
                    observed_generation=2,
                    desired_replicas=desired,
                    total_replicas=desired,
                    failure_reason=self._failure_reason,
                )
            if polls < self._converge_after:
                return RolloutStatus(
                    generation=2,
                    observed_generation=2,
                    desired_replicas=desired,
                    updated_replicas=0,
                    total_replicas=desired,
                    available_replicas=desired,
                )
            return RolloutStatus(
                generation=2,
                observed_generation=2,
                desired_replicas=desired,
                updated_replicas=desired,
                ready_replicas=desired,
                available_replicas=desired,
                total_replicas=desired,
            )


__all__ = [
    "ControlPlaneClient",
    "KubernetesControlPlane",
    "StubbedControlPlane",
    "describe_api_error",
    "detect_pod_failure",
    "label_selector",
    "parse_apply_output",
    "parse_deployment_status",
]
