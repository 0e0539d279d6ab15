"""
Pytest configuration and fixtures for Application RBAC Validator tests.
"""

import copy
import os
import sys
import threading
from typing import Any, Callable, Dict, List, Optional, Set

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from validator_config import (
    ValidatorConfig,
    CLUSTER_TOKENS_CONFIGMAP_NAME,
    INSTANCE_CONFIGMAP_NAME,
    INSTANCE_NAME_KEY,
    INSTANCE_USERS_KEY,
)
from k8s_client import ClusterSecret, K8sConflictError, K8sNotFoundError, parse_namespaces


TENANT_NAMESPACE = "team-a"
WEBHOOK_NAMESPACE = "rbac-validator"
CLUSTER_DOMAIN = "domain.example.com"
DESTINATION_URL = f"https://api.my-cluster.{CLUSTER_DOMAIN}:6443"
SECRET_NAME = f"my-cluster.{CLUSTER_DOMAIN}-cluster-secret"


class InMemoryObjectStore:
    """
    Object store double with optimistic concurrency.

    Every stored object carries a resource version; an update carrying a
    stale version raises K8sConflictError, like the API server does.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._version = 0
        self.namespaces: Dict[str, Dict[str, str]] = {}
        self.config_maps: Dict[tuple, Dict[str, str]] = {}
        self.secrets: Dict[tuple, Dict[str, Any]] = {}
        self.applications: Dict[tuple, Dict[str, Any]] = {}
        self.calls: List[str] = []
        self.secret_writes = 0
        # Called with (namespace, name) before a secret write is checked
        self.before_secret_write: Optional[Callable[[str, str], None]] = None

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    # Setup helpers

    def add_namespace(self, name: str, labels: Optional[Dict[str, str]] = None) -> None:
        self.namespaces[name] = dict(labels or {})

    def add_config_map(self, namespace: str, name: str, data: Dict[str, str]) -> None:
        self.config_maps[(namespace, name)] = dict(data)

    def add_secret(self, namespace: str, name: str, namespaces: str = "",
                   cluster_resources: Optional[str] = None,
                   labels: Optional[Dict[str, str]] = None) -> None:
        with self._lock:
            self.secrets[(namespace, name)] = {
                'namespaces': namespaces,
                'cluster_resources': cluster_resources,
                'labels': dict(labels or {}),
                'resource_version': self._next_version(),
            }

    def add_application(self, obj: Dict[str, Any]) -> None:
        with self._lock:
            stored = copy.deepcopy(obj)
            stored["metadata"]["resourceVersion"] = self._next_version()
            meta = stored["metadata"]
            self.applications[(meta["namespace"], meta["name"])] = stored

    def raw_namespaces(self, namespace: str, name: str) -> str:
        return self.secrets[(namespace, name)]['namespaces']

    def append_namespace_directly(self, namespace: str, name: str, value: str) -> None:
        """Simulate another writer updating the secret."""
        with self._lock:
            stored = self.secrets[(namespace, name)]
            current = parse_namespaces(stored['namespaces'])
            stored['namespaces'] = ",".join(current + [value])
            stored['resource_version'] = self._next_version()

    # ObjectStore protocol

    def get_namespace_labels(self, name: str) -> Dict[str, str]:
        self.calls.append(f"get_namespace:{name}")
        if name not in self.namespaces:
            raise K8sNotFoundError(f"namespace {name} not found", 404)
        return dict(self.namespaces[name])

    def get_config_map_data(self, namespace: str, name: str) -> Dict[str, str]:
        self.calls.append(f"get_config_map:{namespace}/{name}")
        if (namespace, name) not in self.config_maps:
            raise K8sNotFoundError(f"configmap {namespace}/{name} not found", 404)
        return dict(self.config_maps[(namespace, name)])

    def get_cluster_secret(self, namespace: str, name: str) -> ClusterSecret:
        self.calls.append(f"get_secret:{namespace}/{name}")
        with self._lock:
            if (namespace, name) not in self.secrets:
                raise K8sNotFoundError(f"secret {namespace}/{name} not found", 404)
            stored = copy.deepcopy(self.secrets[(namespace, name)])
        return ClusterSecret(
            name=name,
            namespace=namespace,
            namespaces=parse_namespaces(stored['namespaces']),
            cluster_resources=(stored['cluster_resources'] or "").strip() == "true",
            labels=stored['labels'],
            resource_version=stored['resource_version'],
        )

    def update_cluster_secret(self, secret: ClusterSecret, namespaces: List[str]) -> ClusterSecret:
        self.calls.append(f"update_secret:{secret.namespace}/{secret.name}")
        if self.before_secret_write:
            self.before_secret_write(secret.namespace, secret.name)

        with self._lock:
            stored = self.secrets.get((secret.namespace, secret.name))
            if stored is None:
                raise K8sNotFoundError(f"secret {secret.name} not found", 404)
            if stored['resource_version'] != secret.resource_version:
                raise K8sConflictError(f"secret {secret.name} was modified", 409)
            stored['namespaces'] = ",".join(namespaces)
            stored['resource_version'] = self._next_version()
            self.secret_writes += 1

        return self.get_cluster_secret(secret.namespace, secret.name)

    def get_application(self, namespace: str, name: str) -> Dict[str, Any]:
        with self._lock:
            if (namespace, name) not in self.applications:
                raise K8sNotFoundError(f"application {namespace}/{name} not found", 404)
            return copy.deepcopy(self.applications[(namespace, name)])

    def list_applications(self, namespace: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(obj) for (ns, _), obj in self.applications.items() if ns == namespace]

    def update_application(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        meta = obj["metadata"]
        key = (meta["namespace"], meta["name"])
        with self._lock:
            stored = self.applications.get(key)
            if stored is None:
                raise K8sNotFoundError(f"application {key} not found", 404)
            if stored["metadata"]["resourceVersion"] != meta.get("resourceVersion"):
                raise K8sConflictError(f"application {key} was modified", 409)

            updated = copy.deepcopy(obj)
            # A deleting object without finalizers is removed
            if updated["metadata"].get("deletionTimestamp") and not updated["metadata"].get("finalizers"):
                del self.applications[key]
                return updated
            updated["metadata"]["resourceVersion"] = self._next_version()
            self.applications[key] = updated
            return copy.deepcopy(updated)


class FakeAuthorizationChecker:
    """Destination cluster double answering access reviews from a grant table."""

    def __init__(self, grants: Optional[Dict[str, Set[str]]] = None,
                 error: Optional[Exception] = None):
        self.grants = grants or {}
        self.error = error
        self.reviews: List[tuple] = []
        self.closed = False

    def is_allowed(self, user: str, namespace: str, verb: str, resource: str) -> bool:
        self.reviews.append((user, namespace, verb, resource))
        if self.error is not None:
            raise self.error
        return verb in self.grants.get(user, set())

    def close(self) -> None:
        self.closed = True


FULL_ACCESS = {"get", "list", "watch", "create", "update", "patch", "delete"}


def build_application(name: str = "my-app",
                      namespace: str = TENANT_NAMESPACE,
                      server: str = DESTINATION_URL,
                      destination_namespace: str = "frontend",
                      finalizers: Optional[List[str]] = None,
                      deleting: bool = False,
                      **spec_extra) -> Dict[str, Any]:
    """Build an Application object dictionary."""
    metadata = {"name": name, "namespace": namespace}
    if finalizers:
        metadata["finalizers"] = list(finalizers)
    if deleting:
        metadata["deletionTimestamp"] = "2024-01-01T00:00:00Z"

    spec = {
        "project": "default",
        "destination": {"server": server, "namespace": destination_namespace},
        "source": {"repoURL": "https://git.example.com/apps.git", "path": name},
    }
    spec.update(spec_extra)
    return {
        "apiVersion": "argoproj.io/v1alpha1",
        "kind": "Application",
        "metadata": metadata,
        "spec": spec,
    }


@pytest.fixture
def validator_config():
    """Configuration with a cluster domain and no retry delay."""
    return ValidatorConfig(
        cluster_domain=CLUSTER_DOMAIN,
        webhook_namespace_path="/nonexistent/namespace",
        conflict_retry_delay=0.0,
    )


@pytest.fixture
def store():
    """Object store seeded with a tenant namespace and its ConfigMaps."""
    object_store = InMemoryObjectStore()
    object_store.add_namespace(TENANT_NAMESPACE)
    object_store.add_config_map(TENANT_NAMESPACE, INSTANCE_CONFIGMAP_NAME, {
        INSTANCE_NAME_KEY: "team-a",
        INSTANCE_USERS_KEY: "admin1,admin2,admin3",
    })
    object_store.add_config_map(WEBHOOK_NAMESPACE, CLUSTER_TOKENS_CONFIGMAP_NAME, {
        f"my-cluster-{CLUSTER_DOMAIN.replace('.', '-')}-6443-token": "secret-token",
    })
    return object_store


@pytest.fixture
def checker():
    """Destination cluster granting full access to admin2 only."""
    return FakeAuthorizationChecker({"admin2": set(FULL_ACCESS)})


@pytest.fixture
def application_factory():
    return build_application
