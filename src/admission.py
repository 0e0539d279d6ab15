"""
Admission module for Argo CD Applications.

This module decides whether an Application may deploy to its destination.
The decision runs through the following steps, any of which may end it:

1. the destination server and namespace must be set
2. a bypass label on the Application's namespace approves it
3. the instance management Application (``<instance>-mgmt``) is approved
4. deploying to the Application's own cluster through this path is rejected
5. the bearer token for the destination cluster is looked up
6. at least one instance administrator must hold admin access to the
   destination namespace on the destination cluster

Every failure denies the request.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from validator_config import (
    ValidatorConfig,
    CLUSTER_DOMAIN_ENV_VAR,
    CLUSTER_TOKENS_CONFIGMAP_NAME,
    INSTANCE_CONFIGMAP_NAME,
    INSTANCE_NAME_KEY,
    INSTANCE_USERS_KEY,
)
from k8s_client import K8sBaseException, ObjectStore, build_destination_checker
from validation import (
    Application,
    AuthorizationChecker,
    ConfigLookupError,
    DestinationResolver,
    InvalidDestinationError,
    SelfDeploymentError,
    TokenNotFoundError,
    ValidatorError,
    bypass_allowed,
    has_admin_access,
    is_not_spec_update,
    parse_admins,
    token_key,
)

logger = logging.getLogger(__name__)

CheckerFactory = Callable[[str, str], AuthorizationChecker]


@dataclass
class AdmissionResult:
    """Verdict for an admission request"""
    allowed: bool
    message: str = ""
    warnings: List[str] = field(default_factory=list)


def read_webhook_namespace(path: str) -> str:
    """
    Read the namespace the webhook runs in from the service account mount.

    Raises:
        ConfigLookupError: If the file cannot be read
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            return f.read().strip()
    except OSError as e:
        raise ConfigLookupError(f"Failed to read webhook's current namespace: {e}") from e


def is_management_application(instance_name: str, application_name: str) -> bool:
    if not instance_name or not application_name:
        return False
    return application_name == f"{instance_name}-mgmt"


def fetch_config_map_value(store: ObjectStore, namespace: str, config_map: str, key: str) -> str:
    """
    Fetch a single value from a ConfigMap.

    Raises:
        ConfigLookupError: If the ConfigMap or the key is missing
    """
    try:
        data = store.get_config_map_data(namespace, config_map)
    except K8sBaseException as e:
        raise ConfigLookupError(
            f"Failed to get ConfigMap {config_map!r} in namespace {namespace}: {e}",
            context={'namespace': namespace, 'config_map': config_map},
        ) from e

    if key not in data:
        raise ConfigLookupError(
            f"Key {key!r} not found in ConfigMap {config_map!r}",
            context={'namespace': namespace, 'config_map': config_map, 'key': key},
        )
    return data[key].strip()


class AdmissionEngine:
    """
    Runs the admission decision for a single Application.

    The engine keeps no state between decisions and performs no retries.
    """

    def __init__(self,
                 store: ObjectStore,
                 validator_config: ValidatorConfig,
                 checker_factory: Optional[CheckerFactory] = None,
                 namespace_reader: Optional[Callable[[], str]] = None):
        """
        Initialize the engine.

        Args:
            store: Object store of the cluster the Applications live in
            validator_config: Process configuration
            checker_factory: Builds an authorization checker from (server URL, token)
            namespace_reader: Returns the webhook's own namespace
        """
        self.store = store
        self.config = validator_config
        self.resolver = DestinationResolver(validator_config)
        self.checker_factory = checker_factory or (
            lambda server_url, token: build_destination_checker(server_url, token, validator_config)
        )
        self.namespace_reader = namespace_reader or (
            lambda: read_webhook_namespace(validator_config.webhook_namespace_path)
        )
        self.logger = logging.getLogger(__name__)

    def evaluate(self, app: Application) -> AdmissionResult:
        """
        Decide whether the Application may deploy to its destination.

        Returns:
            AdmissionResult: An approval, possibly with warnings

        Raises:
            ValidatorError: When the Application is rejected
        """
        destination = app.destination
        log_prefix = f"Application {app.namespace}/{app.name} -> {destination.server}"
        warnings = []

        if not destination.server or not destination.namespace:
            raise InvalidDestinationError("Destination namespace and server must be specified")

        if not self.config.domain_configured:
            warning = (f"{CLUSTER_DOMAIN_ENV_VAR} is not set, validation might fail "
                       "if the destination server is not a full URL")
            self.logger.info(warning)
            warnings.append(warning)

        self.logger.info(f"{log_prefix}: checking bypass label on the Application's namespace")
        if self._bypass_label_exists(app.namespace, self.resolver.cluster_name_of(destination)):
            self.logger.info(f"{log_prefix}: approved by bypass label")
            return AdmissionResult(True, "bypass label", warnings)

        self.logger.info(f"{log_prefix}: checking if it is a management Application")
        instance_name = fetch_config_map_value(
            self.store, app.namespace, INSTANCE_CONFIGMAP_NAME, INSTANCE_NAME_KEY
        )
        if is_management_application(instance_name, app.name):
            self.logger.info(f"{log_prefix}: approved as management Application")
            return AdmissionResult(True, "management application", warnings)

        if self.resolver.is_in_cluster(destination.server):
            raise SelfDeploymentError(
                "Destination server must not be the same as the Application's current cluster",
                context={'server': destination.server},
            )

        current_namespace = self.namespace_reader()
        server_url = self.resolver.canonical_server_url(destination.server)
        token = self._fetch_cluster_token(current_namespace, server_url)

        admins = parse_admins(fetch_config_map_value(
            self.store, app.namespace, INSTANCE_CONFIGMAP_NAME, INSTANCE_USERS_KEY
        ))
        self.logger.info(
            f"{log_prefix}: validating namespace access for {admins} "
            f"on namespace {destination.namespace} in cluster {server_url}"
        )

        checker = self.checker_factory(server_url, token)
        try:
            has_admin_access(
                checker, admins, destination.namespace, server_url,
                verbs=self.config.admin_access_verbs,
                resource=self.config.admin_access_resource,
            )
        finally:
            close = getattr(checker, "close", None)
            if callable(close):
                close()

        self.logger.info(f"{log_prefix}: approved")
        return AdmissionResult(True, "admin access verified", warnings)

    def _bypass_label_exists(self, namespace: str, cluster_name: Optional[str]) -> bool:
        try:
            labels = self.store.get_namespace_labels(namespace)
        except K8sBaseException as e:
            raise ConfigLookupError(f"Failed to get Namespace {namespace}: {e}") from e

        return bypass_allowed(
            labels,
            cluster_name,
            prefix=self.config.admin_bypass_label,
            in_cluster_values=self.config.in_cluster_values,
            label_enabled=self.config.label_enabled,
        )

    def _fetch_cluster_token(self, namespace: str, server_url: str) -> str:
        key = token_key(server_url)
        try:
            token = fetch_config_map_value(self.store, namespace, CLUSTER_TOKENS_CONFIGMAP_NAME, key)
        except ConfigLookupError as e:
            raise TokenNotFoundError(
                f"Failed to fetch cluster token for {server_url}: {e}",
                context={'server': server_url, 'key': key},
            ) from e

        if not token:
            raise TokenNotFoundError(f"Cluster token for {server_url} is empty", context={'key': key})
        return token


class ApplicationValidator:
    """
    Admission entry points for Application create, update and delete.

    Errors never approve a request.
    """

    def __init__(self, engine: AdmissionEngine):
        self.engine = engine
        self.config = engine.config
        self.logger = logging.getLogger(__name__)

    def validate_create(self, obj: Dict[str, Any]) -> AdmissionResult:
        app = Application.from_dict(obj)
        self.logger.info(f"Validation for Application {app.namespace}/{app.name} upon creation")
        return self._validate(app)

    def validate_update(self, old_obj: Dict[str, Any], new_obj: Dict[str, Any]) -> AdmissionResult:
        app = Application.from_dict(new_obj)
        self.logger.info(f"Validation for Application {app.namespace}/{app.name} upon update")

        if is_not_spec_update(old_obj, new_obj):
            self.logger.debug("Only a status update, approving automatically")
            return AdmissionResult(True, "status update")

        return self._validate(app)

    def validate_delete(self, obj: Optional[Dict[str, Any]] = None) -> AdmissionResult:
        return AdmissionResult(True, "deletion")

    def _validate(self, app: Application) -> AdmissionResult:
        if app.destination.server and app.destination.server == self.config.local_delivery_alias:
            self.logger.info(f"Application {app.namespace}/{app.name} is delivered in-cluster, approving")
            return AdmissionResult(True, "in-cluster delivery")

        try:
            return self.engine.evaluate(app)
        except ValidatorError as e:
            self.logger.info(f"Application {app.namespace}/{app.name} rejected: {e}")
            return AdmissionResult(False, str(e))
        except K8sBaseException as e:
            self.logger.error(f"Application {app.namespace}/{app.name} rejected, API error: {e}")
            return AdmissionResult(False, str(e))
        except Exception as e:
            self.logger.exception(f"Unexpected error validating Application {app.namespace}/{app.name}")
            return AdmissionResult(False, f"Validation failed: {e}")
