"""
Namespace Tracker module for the Application RBAC Validator.

This module keeps the ``namespaces`` field of every destination cluster secret
equal to the set of destination namespaces requested by the Applications
targeting that cluster, so the cluster credentials can be scoped to those
namespaces instead of the whole cluster.

Tracked Applications carry a finalizer, so the namespace can be released
before the Application disappears.
"""

import copy
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from validator_config import ValidatorConfig
from k8s_client import (
    ClusterSecret,
    K8sNotFoundError,
    ObjectStore,
    update_with_retry,
)
from optimization_metrics import (
    ApplicationMetrics,
    REASON_BYPASS_LABEL,
    REASON_CLUSTER_RESOURCES,
    REASON_IN_CLUSTER,
    REASON_OPTIMIZED,
)
from validation import (
    Application,
    ConfigurationError,
    DestinationResolver,
    InvalidDestinationError,
    SecretNotFoundError,
)


class NamespaceTracker:
    """
    Reconciles Application events into the cluster secrets' namespace lists.

    No locks are held; concurrent reconciliations coordinate through the
    resourceVersion of the objects they update.
    """

    def __init__(self,
                 store: ObjectStore,
                 validator_config: ValidatorConfig,
                 metrics: Optional[ApplicationMetrics] = None):
        """
        Initialize the NamespaceTracker.

        Args:
            store: Object store of the cluster the Applications live in
            validator_config: Process configuration
            metrics: Metrics holder, optional
        """
        self.store = store
        self.config = validator_config
        self.resolver = DestinationResolver(validator_config)
        self.metrics = metrics
        self.logger = logging.getLogger(__name__)

    def reconcile(self, namespace: str, name: str) -> None:
        """
        Reconcile a single Application by identity.

        Args:
            namespace: Namespace of the Application
            name: Name of the Application
        """
        if not self.config.namespace_in_scope(namespace):
            self.logger.debug(f"Namespace {namespace} is outside prefix '{self.config.namespace_prefix}', ignoring")
            return

        try:
            obj = self.store.get_application(namespace, name)
        except K8sNotFoundError:
            self.logger.debug(f"Application {namespace}/{name} no longer exists")
            return

        app = Application.from_dict(obj)
        # Deletion first: the destination may have moved in-cluster after the finalizer was added
        if app.is_deleting:
            self.logger.info(f"Application {namespace}/{name} is being deleted, cleaning up")
            self.handle_delete(app)
            return

        if self.resolver.is_in_cluster(app.destination.server):
            self.logger.info(f"Application {namespace}/{name} is targeting in-cluster, ignoring")
            self._observe(app, REASON_IN_CLUSTER, False)
            return

        self.handle_create_or_update(app)

    def handle_create_or_update(self, app: Application) -> None:
        """
        Track the Application's destination namespace in the cluster secret.

        Raises:
            SecretNotFoundError: If the cluster secret does not exist
            ConflictRetryExhausted: If the secret kept changing under the update
        """
        if self.resolver.is_in_cluster(app.destination.server) or app.is_deleting:
            return

        destination_ns = app.destination.namespace
        secret = self._fetch_cluster_secret(app)
        if secret is None:
            raise SecretNotFoundError(
                f"Cluster secret for destination {app.destination.server} not found "
                f"in namespace {app.namespace}",
                context={'application': app.name, 'namespace': app.namespace},
            )

        reason = self._bypass_reason(secret)
        if reason:
            self.logger.info(
                f"Not optimizing Application {app.namespace}/{app.name} "
                f"for cluster {app.destination.server}: {reason}"
            )
            self._observe(app, reason, False)
            return

        if destination_ns:
            self._add_namespace(app, secret.name, destination_ns)

        self._ensure_finalizer(app)
        self._observe(app, REASON_OPTIMIZED, True)

    def handle_delete(self, app: Application) -> None:
        """
        Release the Application's destination namespace and its finalizer.

        The namespace stays in the cluster secret while any other Application
        in the namespace deploys to the same destination.
        """
        if not app.has_finalizer(self.config.finalizer_name):
            self.logger.debug(f"Application {app.namespace}/{app.name} has no finalizer, nothing to clean up")
            self.forget(app)
            return

        destination_ns = app.destination.namespace
        secret = None
        if not self.resolver.is_in_cluster(app.destination.server):
            secret = self._fetch_cluster_secret(app)

        if secret is None:
            self.logger.info(f"Cluster secret not found for {app.namespace}/{app.name}, skipping namespace cleanup")
        elif self.config.label_enabled(secret.bypass_optimization_value(self.config.bypass_optimization_label)):
            self.logger.info(f"Cluster secret {secret.name} has bypass label, skipping namespace cleanup")
        elif destination_ns and not self.is_destination_namespace_in_use(app):
            self._remove_namespace(app, secret.name, destination_ns)

        self._remove_finalizer(app)
        self.forget(app)

    def forget(self, app: Application) -> None:
        """Drop the metric series of an Application which is gone or going."""
        if self.metrics:
            self.metrics.clear(app.name, app.namespace, app.destination.namespace, app.destination.server)

    def is_destination_namespace_in_use(self, app: Application) -> bool:
        """
        Check if another live Application deploys to the same cluster and namespace.

        Destinations are compared by the cluster secret they resolve to, so a
        bare cluster name and its full server URL count as the same cluster.
        """
        target = self._destination_key(app)
        for obj in self.store.list_applications(app.namespace):
            other = Application.from_dict(obj)
            if other.name == app.name or other.is_deleting:
                continue
            if (other.destination.namespace == app.destination.namespace
                    and self._destination_key(other) == target):
                self.logger.info(
                    f"Namespace {app.destination.namespace} is still used by Application {other.name}"
                )
                return True
        return False

    def _destination_key(self, app: Application) -> str:
        try:
            return self.resolver.resolve(app.destination).secret_name
        except (InvalidDestinationError, ConfigurationError):
            return app.destination.server or app.destination.name

    def _fetch_cluster_secret(self, app: Application) -> Optional[ClusterSecret]:
        resolved = self.resolver.resolve(app.destination)
        try:
            return self.store.get_cluster_secret(app.namespace, resolved.secret_name)
        except K8sNotFoundError:
            return None

    def _bypass_reason(self, secret: ClusterSecret) -> Optional[str]:
        if self.config.label_enabled(secret.bypass_optimization_value(self.config.bypass_optimization_label)):
            return REASON_BYPASS_LABEL
        if secret.cluster_resources:
            return REASON_CLUSTER_RESOURCES
        return None

    def _update_secret_namespaces(self, app: Application, secret_name: str,
                                  compute: Callable[[List[str]], Optional[List[str]]],
                                  operation: str) -> None:
        def read() -> ClusterSecret:
            try:
                return self.store.get_cluster_secret(app.namespace, secret_name)
            except K8sNotFoundError as e:
                raise SecretNotFoundError(
                    f"Cluster secret {app.namespace}/{secret_name} disappeared during {operation}"
                ) from e

        def mutate(secret: ClusterSecret) -> Optional[Tuple[ClusterSecret, List[str]]]:
            namespaces = compute(secret.namespaces)
            if namespaces is None:
                return None
            return secret, namespaces

        def write(update: Tuple[ClusterSecret, List[str]]):
            return self.store.update_cluster_secret(*update)

        update_with_retry(
            read, mutate, write,
            attempts=self.config.conflict_retry_attempts,
            base_delay=self.config.conflict_retry_delay,
            jitter=self.config.conflict_retry_jitter,
            operation=operation,
        )

    def _add_namespace(self, app: Application, secret_name: str, destination_ns: str) -> None:
        def compute(current: List[str]) -> Optional[List[str]]:
            if destination_ns in current:
                return None
            return current + [destination_ns]

        self._update_secret_namespaces(app, secret_name, compute, f"add namespace {destination_ns} to {secret_name}")
        self.logger.info(f"Cluster secret {secret_name} tracks namespace {destination_ns}")

    def _remove_namespace(self, app: Application, secret_name: str, destination_ns: str) -> None:
        def compute(current: List[str]) -> Optional[List[str]]:
            if destination_ns not in current:
                return None
            return [ns for ns in current if ns != destination_ns]

        self._update_secret_namespaces(app, secret_name, compute, f"remove namespace {destination_ns} from {secret_name}")
        self.logger.info(f"Removed namespace {destination_ns} from cluster secret {secret_name}")

    def _ensure_finalizer(self, app: Application) -> None:
        finalizer = self.config.finalizer_name

        def mutate(obj: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            finalizers = obj.get("metadata", {}).get("finalizers") or []
            if finalizer in finalizers:
                return None
            updated = copy.deepcopy(obj)
            updated["metadata"]["finalizers"] = list(finalizers) + [finalizer]
            return updated

        self._update_application(app, mutate, "add finalizer")

    def _remove_finalizer(self, app: Application) -> None:
        finalizer = self.config.finalizer_name

        def mutate(obj: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            finalizers = obj.get("metadata", {}).get("finalizers") or []
            if finalizer not in finalizers:
                return None
            updated = copy.deepcopy(obj)
            updated["metadata"]["finalizers"] = [f for f in finalizers if f != finalizer]
            return updated

        self._update_application(app, mutate, "remove finalizer")

    def _update_application(self, app: Application,
                            mutate: Callable[[Dict[str, Any]], Optional[Dict[str, Any]]],
                            operation: str) -> None:
        try:
            update_with_retry(
                lambda: self.store.get_application(app.namespace, app.name),
                mutate,
                self.store.update_application,
                attempts=self.config.conflict_retry_attempts,
                base_delay=self.config.conflict_retry_delay,
                jitter=self.config.conflict_retry_jitter,
                operation=f"{operation} on Application {app.namespace}/{app.name}",
            )
        except K8sNotFoundError:
            self.logger.info(f"Application {app.namespace}/{app.name} is gone, skipping {operation}")

    def _observe(self, app: Application, reason: str, optimized: bool) -> None:
        if self.metrics:
            self.metrics.observe(
                app.name, app.namespace, app.destination.namespace,
                app.destination.server, reason, optimized,
            )
