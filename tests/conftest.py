"""Pytest configuration and shared fixtures."""

import copy
import threading
import uuid
from types import SimpleNamespace

import pytest
from hypothesis import HealthCheck, Verbosity, settings
from kubernetes import client
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import MaxRetryError

from node_rotator.models import Cluster

# Configure Hypothesis for property-based testing
settings.register_profile(
    "default",
    max_examples=100,
    verbosity=Verbosity.normal,
    suppress_health_check=[HealthCheck.too_slow],
)
settings.register_profile("ci", max_examples=1000, verbosity=Verbosity.verbose)
settings.register_profile("dev", max_examples=10, verbosity=Verbosity.verbose)

# Load the default profile
settings.load_profile("default")


def build_pod(
    name,
    namespace="default",
    node="node-1",
    owner_kind="ReplicaSet",
    owner_name=None,
    empty_dir=False,
    mirror=False,
    phase="Running",
    uid=None,
):
    """Build a V1Pod with the fields the drain filters look at."""
    owners = None
    if owner_kind:
        owners = [
            client.V1OwnerReference(
                api_version="apps/v1",
                kind=owner_kind,
                name=owner_name or f"{name}-owner",
                uid=str(uuid.uuid4()),
                controller=True,
            )
        ]
    volumes = None
    if empty_dir:
        volumes = [client.V1Volume(name="scratch", empty_dir=client.V1EmptyDirVolumeSource())]
    annotations = {"kubernetes.io/config.mirror": "abc"} if mirror else None
    return client.V1Pod(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            uid=uid or str(uuid.uuid4()),
            owner_references=owners,
            annotations=annotations,
        ),
        spec=client.V1PodSpec(containers=[], node_name=node, volumes=volumes),
        status=client.V1PodStatus(phase=phase),
    )


def build_node(name, unschedulable=False, ready=True):
    return client.V1Node(
        metadata=client.V1ObjectMeta(name=name),
        spec=client.V1NodeSpec(unschedulable=unschedulable),
        status=client.V1NodeStatus(
            conditions=[client.V1NodeCondition(type="Ready", status="True" if ready else "False")]
        ),
    )


class FakeCoreApi:
    """In-memory stand-in for CoreV1Api covering nodes, pods and evictions."""

    def __init__(self, pods=(), nodes=(), eviction_supported=True):
        self.lock = threading.Lock()
        self.pods = {(p.metadata.namespace, p.metadata.name): p for p in pods}
        self.nodes = {n.metadata.name: n for n in nodes}
        self.eviction_supported = eviction_supported
        # pod name -> list of exceptions raised by successive evictions
        self.eviction_errors = {}
        # pods that stay in place after eviction/deletion
        self.sticky = set()
        # pods recreated under a new UID after removal
        self.recreate = set()
        self.calls = []

    def _record(self, *call):
        with self.lock:
            self.calls.append(call)

    def calls_named(self, name):
        return [c for c in self.calls if c[0] == name]

    def read_node(self, name):
        if name not in self.nodes:
            raise ApiException(status=404, reason="Not Found")
        return self.nodes[name]

    def patch_node(self, name, body):
        self._record("patch_node", name, body)
        self.nodes[name].spec.unschedulable = body["spec"]["unschedulable"]

    def delete_node(self, name):
        self._record("delete_node", name)
        if self.nodes.pop(name, None) is None:
            raise ApiException(status=404, reason="Not Found")

    def _pods_on(self, field_selector, namespace=None):
        node = field_selector.split("=", 1)[1]
        with self.lock:
            return [
                p
                for p in self.pods.values()
                if p.spec.node_name == node and (namespace is None or p.metadata.namespace == namespace)
            ]

    def list_pod_for_all_namespaces(self, field_selector, label_selector=None):
        self._record("list_pods", field_selector, label_selector)
        return SimpleNamespace(items=self._pods_on(field_selector))

    def list_namespaced_pod(self, namespace, field_selector, label_selector=None):
        self._record("list_pods", field_selector, label_selector, namespace)
        return SimpleNamespace(items=self._pods_on(field_selector, namespace))

    def get_api_resources(self):
        resources = []
        if self.eviction_supported:
            resources.append(SimpleNamespace(name="pods/eviction", kind="Eviction"))
        resources.append(SimpleNamespace(name="pods", kind="Pod"))
        return SimpleNamespace(resources=resources)

    def _remove(self, namespace, name):
        with self.lock:
            key = (namespace, name)
            if key not in self.pods:
                raise ApiException(status=404, reason="Not Found")
            if name in self.sticky:
                return
            pod = self.pods.pop(key)
            if name in self.recreate:
                replacement = copy.deepcopy(pod)
                replacement.metadata.uid = str(uuid.uuid4())
                self.pods[key] = replacement

    def create_namespaced_pod_eviction(self, name, namespace, body):
        self._record("evict", name, body)
        with self.lock:
            errors = self.eviction_errors.get(name)
            error = errors.pop(0) if errors else None
        if error is not None:
            raise error
        self._remove(namespace, name)

    def delete_namespaced_pod(self, name, namespace, body=None):
        self._record("delete_pod", name, body)
        self._remove(namespace, name)

    def read_namespaced_pod(self, name, namespace):
        with self.lock:
            pod = self.pods.get((namespace, name))
        if pod is None:
            raise ApiException(status=404, reason="Not Found")
        # Return a copy so UID comparisons see the stored value
        return client.V1Pod(
            metadata=client.V1ObjectMeta(
                name=pod.metadata.name,
                namespace=pod.metadata.namespace,
                uid=pod.metadata.uid,
                deletion_timestamp=pod.metadata.deletion_timestamp,
            )
        )


class FakeAppsApi:
    def __init__(self, missing=()):
        self.missing = set(missing)

    def read_namespaced_daemon_set(self, name, namespace):
        if name in self.missing:
            raise ApiException(status=404, reason="Not Found")
        return SimpleNamespace(metadata=SimpleNamespace(name=name, namespace=namespace))


class FakeApisApi:
    def __init__(self, policy=True):
        self.policy = policy

    def get_api_versions(self):
        groups = [SimpleNamespace(name="apps", preferred_version=SimpleNamespace(group_version="apps/v1"))]
        if self.policy:
            groups.append(
                SimpleNamespace(name="policy", preferred_version=SimpleNamespace(group_version="policy/v1"))
            )
        return SimpleNamespace(groups=groups)


class RotationWorld:
    """Shared in-memory cloud and cluster state for the rotation fakes.

    Instance IDs double as hostnames. Detaching an instance makes the
    autoscaling group launch a replacement immediately.
    """

    def __init__(self, groups):
        self.events = []
        self.members = {name: list(nodes) for name, (_, nodes) in groups.items()}
        self.desired = {name: desired for name, (desired, _) in groups.items()}
        self.launched = 0
        self.drain_failures = set()
        self.transport_failures = set()
        self.missing_nodes = set()
        self.drain_calls = []

    def describe(self, name):
        return {
            "AutoScalingGroupName": name,
            "DesiredCapacity": self.desired[name],
            "Instances": [{"InstanceId": h} for h in self.members[name]],
        }


class FakeCloud:
    def __init__(self, world):
        self.world = world

    def get_autoscaling_groups(self, cluster_id):
        return [self.world.describe(n) for n in self.world.members if cluster_id in n]

    def group_hostnames(self, described):
        return [i["InstanceId"] for i in described["Instances"]]

    def detach_nodes(self, nodes, group_name, decrement=False):
        assert decrement is False
        self.world.events.append(("detach", group_name, tuple(nodes)))
        for node in nodes:
            if node in self.world.members[group_name]:
                self.world.members[group_name].remove(node)
                self.world.launched += 1
                self.world.members[group_name].append(f"{group_name}-new-{self.world.launched}")

    def terminate_nodes(self, nodes):
        self.world.events.append(("terminate", tuple(nodes)))

    def wait_for_group_capacity(self, group_name, desired_capacity):
        self.world.events.append(("wait_capacity", group_name))
        assert len(self.world.members[group_name]) == desired_capacity
        return self.world.describe(group_name)


class FakeNodes:
    def __init__(self, world):
        self.world = world

    def get_node(self, name):
        if name in self.world.missing_nodes:
            return None
        return SimpleNamespace(metadata=SimpleNamespace(name=name))

    def nodes_ready(self, names):
        self.world.events.append(("ready", tuple(names)))

    def delete_nodes(self, names):
        self.world.events.append(("delete_node", tuple(names)))


class FakeDrainer:
    def __init__(self, world):
        self.world = world

    def drain(self, node, options, wait_between_evictions=0):
        from node_rotator.exceptions import PodRemovalError

        name = node.metadata.name
        self.world.drain_calls.append((name, options, wait_between_evictions))
        if name in self.world.drain_failures:
            raise PodRemovalError(name, [RuntimeError("eviction refused")])
        if name in self.world.transport_failures:
            raise MaxRetryError(None, "/api/v1/namespaces/default/pods")
        self.world.events.append(("drain", name))


@pytest.fixture
def make_world():
    """Factory for a RotationWorld and its fake adapters."""

    def _make(groups):
        world = RotationWorld(groups)
        return world, FakeCloud(world), FakeNodes(world), FakeDrainer(world)

    return _make


@pytest.fixture
def make_cluster():
    """Factory for a cluster with all waits disabled."""

    def _make(**overrides):
        params = {
            "cluster_id": "abc123",
            "max_scaling": 1,
            "rotate_masters": True,
            "rotate_workers": True,
            "max_drain_retries": 3,
            "evict_grace_period": 30,
            "wait_between_rotations": 0,
            "wait_between_drains": 0,
            "wait_between_pod_evictions": 0,
        }
        params.update(overrides)
        return Cluster(**params)

    return _make


@pytest.fixture
def fake_kube():
    """Factory for a FakeCoreApi/FakeAppsApi/FakeApisApi triple."""

    def _make(pods=(), nodes=("node-1",), eviction_supported=True, missing_daemonsets=()):
        core = FakeCoreApi(
            pods=pods, nodes=[build_node(n) for n in nodes], eviction_supported=eviction_supported
        )
        return core, FakeAppsApi(missing_daemonsets), FakeApisApi(policy=eviction_supported)

    return _make


@pytest.fixture
def pod_factory():
    return build_pod


@pytest.fixture
def node_factory():
    return build_node
