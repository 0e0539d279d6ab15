"""
Kubernetes API client module for the Application RBAC Validator.

This module provides the object store adapter used by the admission engine
and the namespace tracker, the authorization checker used against destination
clusters, and the read-modify-write retry helper for optimistic concurrency.
"""

import base64
import copy
import json
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, TypeVar

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from validator_config import (
    ValidatorConfig,
    NAMESPACES_KEY,
    CLUSTER_RESOURCES_KEY,
    BYPASS_OPTIMIZATION_LABEL,
)
from validation.errors import ConflictRetryExhausted

logger = logging.getLogger(__name__)

APPLICATION_GROUP = "argoproj.io"
APPLICATION_VERSION = "v1alpha1"
APPLICATION_PLURAL = "applications"

T = TypeVar("T")


# Custom Exception Classes for different Kubernetes error types
class K8sBaseException(Exception):
    """Base exception for all Kubernetes client errors"""
    def __init__(self, message: str, status_code: Optional[int] = None,
                 operation: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.operation = operation
        self.context = context or {}
        self.timestamp = time.time()


class K8sAuthenticationError(K8sBaseException):
    """Authentication failed (401)"""
    pass


class K8sAuthorizationError(K8sBaseException):
    """Authorization failed (403)"""
    pass


class K8sNotFoundError(K8sBaseException):
    """Resource not found (404)"""
    pass


class K8sConflictError(K8sBaseException):
    """Stored object changed since it was read (409)"""
    pass


class K8sServerError(K8sBaseException):
    """Server error (500+)"""
    pass


def format_api_error(api_exception: ApiException, operation: str) -> str:
    """
    Format API exception into a readable error message.

    Args:
        api_exception: The Kubernetes API exception
        operation: Description of the operation that failed

    Returns:
        str: Formatted error message
    """
    status_code = api_exception.status

    error_messages = {
        401: f"Authentication failed while trying to {operation}.",
        403: f"Access denied while trying to {operation}.",
        404: f"Resource not found while trying to {operation}.",
        409: f"Conflict while trying to {operation}, the object has been modified.",
        500: f"Kubernetes API server error while trying to {operation}.",
        503: f"Kubernetes API server unavailable while trying to {operation}."
    }

    base_message = error_messages.get(status_code, f"API error ({status_code}) while trying to {operation}")

    body = getattr(api_exception, 'body', None)
    if body:
        try:
            error_body = json.loads(body)
            if isinstance(error_body, dict) and 'message' in error_body:
                base_message += f" Details: {error_body['message']}"
        except (TypeError, ValueError):
            pass

    return base_message


def convert_api_exception(api_exception: ApiException, operation: str) -> K8sBaseException:
    """
    Convert ApiException to appropriate custom exception.

    Args:
        api_exception: The Kubernetes API exception
        operation: Description of the operation that failed

    Returns:
        K8sBaseException: Appropriate custom exception
    """
    status_code = api_exception.status or 0
    context = {
        'operation': operation,
        'status_code': status_code,
        'reason': getattr(api_exception, 'reason', None),
    }
    error_message = format_api_error(api_exception, operation)

    if status_code == 401:
        return K8sAuthenticationError(error_message, status_code, operation, context)
    elif status_code == 403:
        return K8sAuthorizationError(error_message, status_code, operation, context)
    elif status_code == 404:
        return K8sNotFoundError(error_message, status_code, operation, context)
    elif status_code == 409:
        return K8sConflictError(error_message, status_code, operation, context)
    elif status_code >= 500:
        return K8sServerError(error_message, status_code, operation, context)
    else:
        return K8sBaseException(error_message, status_code, operation, context)


def _calculate_exponential_backoff(attempt: int, base_delay: float, max_delay: float,
                                   jitter: bool = True) -> float:
    """Calculate exponential backoff delay with optional jitter"""
    delay = min(base_delay * (2 ** attempt), max_delay)

    if jitter:
        delay += random.uniform(0, delay * 0.1)  # Add up to 10% jitter

    return delay


def update_with_retry(read: Callable[[], T],
                      mutate: Callable[[T], Optional[T]],
                      write: Callable[[T], T],
                      attempts: int = 5,
                      base_delay: float = 0.01,
                      jitter: bool = True,
                      operation: str = "update object") -> T:
    """
    Read-modify-write with bounded retry on conflict.

    Every attempt reads the latest object and computes the next value from it,
    so a retry never writes a value derived from stale state.

    Args:
        read: Returns the latest stored object
        mutate: Returns the object to write, or None when no write is needed
        write: Persists the object, raising K8sConflictError on a stale version
        attempts: Maximum number of attempts
        base_delay: Base delay between attempts in seconds
        jitter: Add random jitter to the delay
        operation: Description used in logs and errors

    Returns:
        The written object, or the read object when no write was needed

    Raises:
        ConflictRetryExhausted: If every attempt hit a conflict
    """
    last_conflict: Optional[K8sConflictError] = None

    for attempt in range(max(attempts, 1)):
        current = read()
        updated = mutate(current)
        if updated is None:
            return current

        try:
            return write(updated)
        except K8sConflictError as e:
            last_conflict = e
            logger.info(f"Conflict during {operation} (attempt {attempt + 1}/{attempts}), retrying")
            if base_delay > 0 and attempt + 1 < attempts:
                time.sleep(_calculate_exponential_backoff(attempt, base_delay, base_delay * 10, jitter))

    raise ConflictRetryExhausted(
        f"Gave up on {operation} after {attempts} conflicting attempts",
        context={'operation': operation, 'attempts': attempts, 'last_error': str(last_conflict)},
    )


def _decode(value: Optional[str]) -> str:
    if not value:
        return ""
    return base64.b64decode(value).decode("utf-8")


def _encode(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def parse_namespaces(value: str) -> List[str]:
    """Split the stored namespaces value, ignoring empty entries."""
    return [ns.strip() for ns in value.split(",") if ns.strip()]


@dataclass(frozen=True)
class ClusterSecret:
    """Destination cluster secret tracking the namespaces in use"""
    name: str
    namespace: str
    namespaces: List[str] = field(default_factory=list)
    cluster_resources: bool = False
    labels: Dict[str, str] = field(default_factory=dict)
    resource_version: Optional[str] = None
    raw: Any = field(default=None, compare=False, repr=False)

    def has_namespace(self, namespace: str) -> bool:
        return namespace in self.namespaces

    def bypass_optimization_value(self, label: str = BYPASS_OPTIMIZATION_LABEL) -> Optional[str]:
        return self.labels.get(label)


class ObjectStore(Protocol):
    """Object store operations used by the validator and the tracker."""

    def get_namespace_labels(self, name: str) -> Dict[str, str]: ...

    def get_config_map_data(self, namespace: str, name: str) -> Dict[str, str]: ...

    def get_cluster_secret(self, namespace: str, name: str) -> ClusterSecret: ...

    def update_cluster_secret(self, secret: ClusterSecret, namespaces: List[str]) -> ClusterSecret: ...

    def get_application(self, namespace: str, name: str) -> Dict[str, Any]: ...

    def list_applications(self, namespace: str) -> List[Dict[str, Any]]: ...

    def update_application(self, obj: Dict[str, Any]) -> Dict[str, Any]: ...


def load_api_client() -> client.ApiClient:
    """
    Build an API client for the cluster the validator runs in.

    In-cluster configuration is tried first, kubeconfig is the fallback for
    development.
    """
    try:
        config.load_incluster_config()
        logger.info("Successfully loaded in-cluster configuration")
    except config.ConfigException as incluster_error:
        logger.debug(f"In-cluster config not available: {incluster_error}")
        config.load_kube_config()
        logger.info("Successfully loaded kubeconfig")
    return client.ApiClient()


class KubernetesObjectStore:
    """
    Object store backed by the Kubernetes API.

    Updates are full replacements carrying the resourceVersion that was read,
    so the API server rejects them with 409 when the object changed meanwhile.
    """

    def __init__(self, api_client: Optional[client.ApiClient] = None):
        self.api_client = api_client or load_api_client()
        self.core_v1 = client.CoreV1Api(self.api_client)
        self.custom_objects = client.CustomObjectsApi(self.api_client)
        self.logger = logging.getLogger(__name__)

    def get_namespace_labels(self, name: str) -> Dict[str, str]:
        try:
            ns = self.core_v1.read_namespace(name=name)
        except ApiException as e:
            raise convert_api_exception(e, f"get namespace {name}") from e
        return dict(ns.metadata.labels or {})

    def get_config_map_data(self, namespace: str, name: str) -> Dict[str, str]:
        try:
            cm = self.core_v1.read_namespaced_config_map(name=name, namespace=namespace)
        except ApiException as e:
            raise convert_api_exception(e, f"get ConfigMap {namespace}/{name}") from e
        return dict(cm.data or {})

    def get_cluster_secret(self, namespace: str, name: str) -> ClusterSecret:
        try:
            secret = self.core_v1.read_namespaced_secret(name=name, namespace=namespace)
        except ApiException as e:
            raise convert_api_exception(e, f"get Secret {namespace}/{name}") from e
        return self._to_cluster_secret(secret)

    def update_cluster_secret(self, secret: ClusterSecret, namespaces: List[str]) -> ClusterSecret:
        body = copy.deepcopy(secret.raw)
        body.data = dict(body.data or {})
        body.data[NAMESPACES_KEY] = _encode(",".join(namespaces))

        try:
            updated = self.core_v1.replace_namespaced_secret(
                name=secret.name, namespace=secret.namespace, body=body
            )
        except ApiException as e:
            raise convert_api_exception(e, f"update Secret {secret.namespace}/{secret.name}") from e

        self.logger.debug(f"Updated Secret {secret.namespace}/{secret.name} namespaces to {namespaces}")
        return self._to_cluster_secret(updated)

    def get_application(self, namespace: str, name: str) -> Dict[str, Any]:
        try:
            return self.custom_objects.get_namespaced_custom_object(
                APPLICATION_GROUP, APPLICATION_VERSION, namespace, APPLICATION_PLURAL, name
            )
        except ApiException as e:
            raise convert_api_exception(e, f"get Application {namespace}/{name}") from e

    def list_applications(self, namespace: str) -> List[Dict[str, Any]]:
        try:
            result = self.custom_objects.list_namespaced_custom_object(
                APPLICATION_GROUP, APPLICATION_VERSION, namespace, APPLICATION_PLURAL
            )
        except ApiException as e:
            raise convert_api_exception(e, f"list Applications in {namespace}") from e
        return list(result.get("items", []))

    def update_application(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        metadata = obj.get("metadata", {})
        namespace, name = metadata.get("namespace"), metadata.get("name")
        try:
            return self.custom_objects.replace_namespaced_custom_object(
                APPLICATION_GROUP, APPLICATION_VERSION, namespace, APPLICATION_PLURAL, name, obj
            )
        except ApiException as e:
            raise convert_api_exception(e, f"update Application {namespace}/{name}") from e

    @staticmethod
    def _to_cluster_secret(secret: client.V1Secret) -> ClusterSecret:
        data = secret.data or {}
        return ClusterSecret(
            name=secret.metadata.name,
            namespace=secret.metadata.namespace,
            namespaces=parse_namespaces(_decode(data.get(NAMESPACES_KEY))),
            cluster_resources=_decode(data.get(CLUSTER_RESOURCES_KEY)).strip() == "true",
            labels=dict(secret.metadata.labels or {}),
            resource_version=secret.metadata.resource_version,
            raw=secret,
        )


class SubjectAccessReviewChecker:
    """
    Authorization checker issuing SubjectAccessReviews on a destination cluster.

    The client is built from the destination server URL and the bearer token
    stored for it. TLS peer verification is disabled: the destination cluster
    CA is not distributed to the validator, and the client only ever carries
    the token-scoped access review calls.
    """

    def __init__(self, server_url: str, token: str, timeout: Optional[float] = None):
        configuration = client.Configuration()
        configuration.host = server_url
        configuration.api_key = {"authorization": f"Bearer {token}"}
        configuration.verify_ssl = False

        self.server_url = server_url
        self.timeout = timeout
        self.api_client = client.ApiClient(configuration)
        self.auth_v1 = client.AuthorizationV1Api(self.api_client)
        self.logger = logging.getLogger(__name__)

    def is_allowed(self, user: str, namespace: str, verb: str, resource: str) -> bool:
        """
        Check whether a user can perform a verb on a resource in a namespace.

        Raises:
            K8sBaseException: If the review could not be created
        """
        review = client.V1SubjectAccessReview(
            spec=client.V1SubjectAccessReviewSpec(
                user=user,
                resource_attributes=client.V1ResourceAttributes(
                    namespace=namespace,
                    verb=verb,
                    resource=resource,
                ),
            )
        )

        try:
            result = self.auth_v1.create_subject_access_review(
                body=review, _request_timeout=self.timeout
            )
        except ApiException as e:
            raise convert_api_exception(e, f"review {verb} {resource} for {user} on {self.server_url}") from e

        allowed = bool(result.status and result.status.allowed)
        self.logger.debug(f"SubjectAccessReview {user} {verb} {resource} in {namespace}: {allowed}")
        return allowed

    def close(self) -> None:
        self.api_client.close()


def build_destination_checker(server_url: str, token: str,
                              validator_config: ValidatorConfig) -> SubjectAccessReviewChecker:
    """Build the authorization checker for a destination cluster."""
    return SubjectAccessReviewChecker(
        server_url, token, timeout=validator_config.destination_request_timeout
    )
