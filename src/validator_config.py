"""
Configuration module for the Application RBAC Validator.

The configuration is built once at startup and passed by reference into the
destination resolver, the admission engine and the namespace tracker.
"""

import os
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)


# Well-known object names and keys
CLUSTER_TOKENS_CONFIGMAP_NAME = "application-rbac-validator-cluster-tokens"
INSTANCE_CONFIGMAP_NAME = "argo-config"
INSTANCE_NAME_KEY = "instance_name"
INSTANCE_USERS_KEY = "instance_users"

# Labels
ADMIN_BYPASS_LABEL = "argocd.dana.io/bypass-rbac-validation"
BYPASS_OPTIMIZATION_LABEL = "argocd.dana.io/bypass-optimization"

# Cluster secret layout
NAMESPACES_KEY = "namespaces"
CLUSTER_RESOURCES_KEY = "clusterResources"
SECRET_NAME_SUFFIX = "cluster-secret"
FINALIZER_NAME = "argocd.dana.io/namespace-cleanup"

DEFAULT_SERVER_URL_PORT = "6443"
CLUSTER_DOMAIN_ENV_VAR = "KUBERNETES_CLUSTER_DOMAIN"
NAMESPACE_PREFIX_ENV_VAR = "NAMESPACE_PREFIX"
DEFAULT_WEBHOOK_NAMESPACE_PATH = "/var/run/secrets/kubernetes.io/serviceaccount/namespace"

# The first entry is the canonical alias used by bypass labels
IN_CLUSTER_VALUES: Tuple[str, ...] = (
    "in-cluster",
    "kubernetes.default.svc",
    "kubernetes.svc.cluster.local",
    "https://kubernetes.default.svc",
)

# Access level an instance user needs on the destination namespace
ADMIN_ACCESS_RESOURCE = "pods"
ADMIN_ACCESS_VERBS: Tuple[str, ...] = (
    "get", "list", "watch", "create", "update", "patch", "delete"
)


def _env_bool(value: Optional[str], default: bool) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ValidatorConfig:
    """Immutable process-wide configuration"""
    cluster_domain: Optional[str] = None
    server_url_port: str = DEFAULT_SERVER_URL_PORT
    webhook_namespace_path: str = DEFAULT_WEBHOOK_NAMESPACE_PATH

    # Values of a Destination server which denote the Application's own cluster
    in_cluster_values: Tuple[str, ...] = IN_CLUSTER_VALUES
    # Destination server which is delivered locally and never evaluated
    local_delivery_alias: str = IN_CLUSTER_VALUES[0]

    admin_bypass_label: str = ADMIN_BYPASS_LABEL
    bypass_optimization_label: str = BYPASS_OPTIMIZATION_LABEL
    strict_bypass_values: bool = False

    finalizer_name: str = FINALIZER_NAME

    # Applications are tracked only in namespaces starting with this prefix, when set
    namespace_prefix: str = ""

    # Optimistic concurrency retry
    conflict_retry_attempts: int = 5
    conflict_retry_delay: float = 0.01  # seconds
    conflict_retry_jitter: bool = True

    # Destination cluster calls
    destination_request_timeout: float = 10.0
    admin_access_resource: str = ADMIN_ACCESS_RESOURCE
    admin_access_verbs: Tuple[str, ...] = ADMIN_ACCESS_VERBS

    @property
    def domain_configured(self) -> bool:
        """Whether a cluster domain is available for expanding bare cluster names."""
        return bool(self.cluster_domain)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "ValidatorConfig":
        """
        Build the configuration from environment variables.

        Args:
            environ: Mapping to read from, defaults to os.environ

        Returns:
            ValidatorConfig: The frozen configuration
        """
        env = os.environ if environ is None else environ
        kwargs = {}

        domain = env.get(CLUSTER_DOMAIN_ENV_VAR, "").strip()
        if domain:
            kwargs["cluster_domain"] = domain
        else:
            logger.warning(
                f"Environment variable {CLUSTER_DOMAIN_ENV_VAR} is not set, "
                "validation will fail for destinations which are not full server URLs"
            )

        if env.get("WEBHOOK_NAMESPACE_PATH"):
            kwargs["webhook_namespace_path"] = env["WEBHOOK_NAMESPACE_PATH"]
        if env.get("CONFLICT_RETRY_ATTEMPTS"):
            kwargs["conflict_retry_attempts"] = int(env["CONFLICT_RETRY_ATTEMPTS"])
        if env.get("DESTINATION_REQUEST_TIMEOUT"):
            kwargs["destination_request_timeout"] = float(env["DESTINATION_REQUEST_TIMEOUT"])
        if env.get(NAMESPACE_PREFIX_ENV_VAR):
            kwargs["namespace_prefix"] = env[NAMESPACE_PREFIX_ENV_VAR].strip()
        kwargs["strict_bypass_values"] = _env_bool(env.get("STRICT_BYPASS_VALUES"), False)

        config = cls(**kwargs)
        logger.info("Validator configuration loaded: %s", config)
        return config

    def label_enabled(self, value: Optional[str]) -> bool:
        """
        Check whether a bypass label value switches the bypass on.

        Both the RBAC bypass label and the optimization bypass label go
        through this check so they share one case discipline.
        """
        if value is None:
            return False
        if self.strict_bypass_values:
            return value == "true"
        return value.strip().lower() == "true"

    def namespace_in_scope(self, namespace: str) -> bool:
        """
        Check whether Applications in the namespace are tracked.

        With a prefix configured, only namespaces strictly longer than the
        prefix and starting with it are in scope. Without one, every
        namespace is.
        """
        if not self.namespace_prefix:
            return True
        return len(namespace) > len(self.namespace_prefix) and namespace.startswith(self.namespace_prefix)
