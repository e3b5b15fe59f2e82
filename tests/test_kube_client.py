import json
import subprocess

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from rollout_manager import kube_client
from rollout_manager.errors import ClusterCommandError
from rollout_manager.kube_client import (
    KubernetesControlPlane,
    StubbedControlPlane,
    describe_api_error,
    detect_pod_failure,
    parse_apply_output,
    parse_deployment_status,
)

from conftest import DEPLOYMENT_YAML


def make_deployment(*, desired=2, generation=3, observed=3, containers=("podinfo",), **status):
    return client.V1Deployment(
        metadata=client.V1ObjectMeta(name="podinfo", generation=generation),
        spec=client.V1DeploymentSpec(
            replicas=desired,
            selector=client.V1LabelSelector(match_labels={"app": "podinfo"}),
            template=client.V1PodTemplateSpec(
                spec=client.V1PodSpec(
                    containers=[
                        client.V1Container(name=name, image="stefanprodan/podinfo:6.0.0")
                        for name in containers
                    ]
                )
            ),
        ),
        status=client.V1DeploymentStatus(observed_generation=observed, **status),
    )


def make_pod(name, reason, message=None):
    return client.V1Pod(
        metadata=client.V1ObjectMeta(name=name),
        status=client.V1PodStatus(
            container_statuses=[
                client.V1ContainerStatus(
                    name="podinfo",
                    image="app:42",
                    image_id="",
                    ready=False,
                    restart_count=3,
                    state=client.V1ContainerState(
                        waiting=client.V1ContainerStateWaiting(reason=reason, message=message)
                    ),
                )
            ]
        ),
    )


def api_error(status, reason, message=None):
    exc = ApiException(status=status, reason=reason)
    if message:
        exc.body = json.dumps({"kind": "Status", "message": message})
    return exc


class FakeCoreApi:
    def __init__(self, *, namespace_error=None, pods=()):
        self.namespace_error = namespace_error
        self.pods = list(pods)
        self.namespaces = []
        self.pod_queries = []

    def create_namespace(self, body, **kwargs):
        self.namespaces.append(body.metadata.name)
        if self.namespace_error:
            raise self.namespace_error

    def list_namespaced_pod(self, namespace, label_selector=None, **kwargs):
        self.pod_queries.append((namespace, label_selector))
        return client.V1PodList(items=self.pods)


class FakeAppsApi:
    def __init__(self, deployment=None, *, read_error=None):
        self.deployment = deployment or make_deployment()
        self.read_error = read_error
        self.patches = []
        self.timeouts = []

    def read_namespaced_deployment(self, name, namespace, **kwargs):
        self.timeouts.append(kwargs.get("_request_timeout"))
        if self.read_error:
            raise self.read_error
        return self.deployment

    def patch_namespaced_deployment(self, name, namespace, body, **kwargs):
        self.patches.append((namespace, name, body))
        return self.deployment


def make_control_plane(core=None, apps=None, **kwargs):
    return KubernetesControlPlane(
        core_api=core or FakeCoreApi(), apps_api=apps or FakeAppsApi(), **kwargs
    )


class FakeRun:
    def __init__(self, responses):
        self.responses = list(responses)
        self.commands = []

    def __call__(self, command, **kwargs):
        self.commands.append((command, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return subprocess.CompletedProcess(command, 0, stdout=response, stderr="")


def test_parse_apply_output_ignores_action_verbs():
    output = "deployment.apps/podinfo configured\nservice/podinfo unchanged\n\n"
    assert parse_apply_output(output) == ["deployment.apps/podinfo", "service/podinfo"]


def test_parse_deployment_status_complete():
    status = parse_deployment_status(
        make_deployment(replicas=2, updated_replicas=2, ready_replicas=2, available_replicas=2)
    )
    assert status.is_complete
    assert status.failure_reason is None


def test_parse_deployment_status_waits_for_old_replicas():
    status = parse_deployment_status(
        make_deployment(replicas=3, updated_replicas=2, ready_replicas=3, available_replicas=3)
    )
    assert not status.is_complete


def test_parse_deployment_status_unobserved_generation():
    deployment = make_deployment(observed=2, replicas=2, updated_replicas=2, available_replicas=2)
    assert not parse_deployment_status(deployment).is_complete


def test_progress_deadline_is_failure():
    deployment = make_deployment(
        conditions=[
            client.V1DeploymentCondition(
                type="Progressing", status="False", reason="ProgressDeadlineExceeded"
            )
        ]
    )
    assert parse_deployment_status(deployment).failure_reason == "ProgressDeadlineExceeded"


def test_detect_pod_failure():
    pods = [
        make_pod("podinfo-abc", "ContainerCreating"),
        make_pod("podinfo-def", "ImagePullBackOff", "not found"),
    ]
    assert detect_pod_failure(pods) == "ImagePullBackOff in pod podinfo-def: not found"
    assert detect_pod_failure([]) is None


def test_describe_api_error_includes_server_message():
    exc = api_error(404, "Not Found", 'deployments.apps "podinfo" not found')
    assert describe_api_error(exc) == '404 Not Found: deployments.apps "podinfo" not found'
    assert describe_api_error(api_error(500, "Internal Server Error")) == "500 Internal Server Error"


def test_ensure_namespace_ignores_conflict():
    core = FakeCoreApi(namespace_error=api_error(409, "Conflict", "already exists"))

    make_control_plane(core=core).ensure_namespace("podinfo")

    assert core.namespaces == ["podinfo"]


def test_ensure_namespace_other_errors_raise():
    core = FakeCoreApi(namespace_error=api_error(403, "Forbidden", "cannot create namespaces"))

    with pytest.raises(ClusterCommandError, match="403 Forbidden") as excinfo:
        make_control_plane(core=core).ensure_namespace("podinfo")
    assert excinfo.value.status == 403


def test_set_image_patches_only_named_container():
    apps = FakeAppsApi(make_deployment(containers=("podinfo", "sidecar")))

    make_control_plane(apps=apps).set_image("podinfo", "podinfo", "podinfo", "app:42")

    namespace, name, body = apps.patches[0]
    assert (namespace, name) == ("podinfo", "podinfo")
    assert body["spec"]["template"]["spec"]["containers"] == [{"name": "podinfo", "image": "app:42"}]


def test_set_image_unknown_container_rejected():
    apps = FakeAppsApi()

    with pytest.raises(ClusterCommandError, match="sidecar"):
        make_control_plane(apps=apps).set_image("podinfo", "podinfo", "sidecar", "app:42")
    assert apps.patches == []


def test_set_image_missing_deployment():
    apps = FakeAppsApi(read_error=api_error(404, "Not Found", 'deployments.apps "podinfo" not found'))

    with pytest.raises(ClusterCommandError, match="not found"):
        make_control_plane(apps=apps).set_image("podinfo", "podinfo", "podinfo", "app:42")


def test_status_checks_pods_while_progressing():
    apps = FakeAppsApi(
        make_deployment(desired=2, replicas=3, updated_replicas=1, available_replicas=2)
    )
    core = FakeCoreApi(pods=[make_pod("podinfo-new", "CrashLoopBackOff")])

    status = make_control_plane(core=core, apps=apps, command_timeout_seconds=7).get_rollout_status(
        "podinfo", "podinfo"
    )

    assert status.failure_reason == "CrashLoopBackOff in pod podinfo-new"
    assert core.pod_queries == [("podinfo", "app=podinfo")]
    assert apps.timeouts == [7]


def test_status_skips_pods_when_complete():
    apps = FakeAppsApi(
        make_deployment(replicas=2, updated_replicas=2, ready_replicas=2, available_replicas=2)
    )
    core = FakeCoreApi()

    assert make_control_plane(core=core, apps=apps).get_rollout_status("podinfo", "podinfo").is_complete
    assert core.pod_queries == []


def test_unavailable_configuration_raises_on_use(monkeypatch):
    def fail(**kwargs):
        raise ConfigException("Invalid kube-config file. No configuration found.")

    monkeypatch.setattr(kube_client.k8s_config, "load_kube_config", fail)
    control_plane = KubernetesControlPlane(context="gke_prod")

    with pytest.raises(ClusterCommandError, match="unavailable"):
        control_plane.get_rollout_status("podinfo", "podinfo")
    control_plane.close()


def test_kubectl_apply_pipes_document(monkeypatch):
    fake = FakeRun(["deployment.apps/podinfo created\n"])
    monkeypatch.setattr(kube_client.subprocess, "run", fake)

    resources = make_control_plane(context="gke_prod").apply_manifest("kind: Deployment", "podinfo")

    assert resources == ["deployment.apps/podinfo"]
    command, kwargs = fake.commands[0]
    assert command == ["kubectl", "--context", "gke_prod", "apply", "--namespace", "podinfo", "-f", "-"]
    assert kwargs["input"] == "kind: Deployment"
    assert kwargs["timeout"] == 30


def test_kubectl_apply_error_raises_cluster_error(monkeypatch):
    fake = FakeRun(
        [subprocess.CalledProcessError(1, ["kubectl"], output="", stderr="error: admission denied")]
    )
    monkeypatch.setattr(kube_client.subprocess, "run", fake)

    with pytest.raises(ClusterCommandError, match="admission denied"):
        make_control_plane().apply_manifest("kind: Deployment", "podinfo")


def test_kubectl_apply_timeout_raises_cluster_error(monkeypatch):
    fake = FakeRun([subprocess.TimeoutExpired(["kubectl"], 1)])
    monkeypatch.setattr(kube_client.subprocess, "run", fake)

    with pytest.raises(ClusterCommandError, match="timed out"):
        make_control_plane(command_timeout_seconds=1).apply_manifest("kind: Deployment", "podinfo")


def test_stubbed_control_plane_converges():
    stub = StubbedControlPlane(converge_after_polls=2)
    stub.ensure_namespace("podinfo")
    stub.apply_manifest(DEPLOYMENT_YAML.format(name="podinfo", replicas=2), "podinfo")
    stub.set_image("podinfo", "podinfo", "podinfo", "app:42")

    assert not stub.get_rollout_status("podinfo", "podinfo").is_complete
    assert stub.get_rollout_status("podinfo", "podinfo").is_complete
    assert stub.images[("podinfo", "podinfo")]["podinfo"] == "app:42"


def test_stubbed_control_plane_requires_namespace():
    stub = StubbedControlPlane()
    with pytest.raises(ClusterCommandError):
        stub.apply_manifest(DEPLOYMENT_YAML.format(name="podinfo", replicas=1), "podinfo")
