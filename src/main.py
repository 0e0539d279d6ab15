"""
Application RBAC Validator operator.

Serves the validating admission webhook for Argo CD Applications and tracks
the destination namespaces of Applications in the destination cluster
secrets. Run with ``kopf run --all-namespaces src/main.py``.
"""

import os
import logging
from collections.abc import Mapping
from typing import Any, Dict, Optional

import kopf
from prometheus_client import start_http_server

from validator_config import ValidatorConfig
from k8s_client import K8sBaseException, KubernetesObjectStore
from admission import AdmissionEngine, AdmissionResult, ApplicationValidator
from namespace_tracker import NamespaceTracker
from optimization_metrics import ApplicationMetrics
from validation import Application, ValidatorError

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("application-rbac-validator")

APPLICATION_RESOURCE = ("argoproj.io", "v1alpha1", "applications")
RECONCILE_RETRY_DELAY = 10

_validator: Optional[ApplicationValidator] = None
_tracker: Optional[NamespaceTracker] = None


def _to_dict(obj: Any) -> Any:
    """Turn kopf body views into plain dictionaries and lists."""
    if isinstance(obj, Mapping):
        return {key: _to_dict(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_to_dict(item) for item in obj]
    return obj


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **_):
    """Build the validator and the tracker, configure the webhook server."""
    global _validator, _tracker

    validator_config = ValidatorConfig.from_env()
    store = KubernetesObjectStore()
    metrics = ApplicationMetrics()

    _validator = ApplicationValidator(AdmissionEngine(store, validator_config))
    _tracker = NamespaceTracker(store, validator_config, metrics)

    settings.admission.server = kopf.WebhookServer(
        addr="0.0.0.0",
        port=int(os.getenv("WEBHOOK_PORT", "9443")),
        certfile=os.getenv("WEBHOOK_CERT_FILE"),
        pkeyfile=os.getenv("WEBHOOK_KEY_FILE"),
    )
    settings.posting.enabled = False

    start_http_server(int(os.getenv("METRICS_PORT", "8080")))
    logger.info("Application RBAC Validator configured")


def admission_verdict(operation: str, body: Dict[str, Any], old: Optional[Dict[str, Any]]) -> AdmissionResult:
    """Route an admission request to the validator."""
    if operation == "DELETE":
        return _validator.validate_delete(body)
    if operation == "UPDATE" and old:
        return _validator.validate_update(old, body)
    return _validator.validate_create(body)


@kopf.on.validate(*APPLICATION_RESOURCE, id="validate-destination",
                  operations=["CREATE", "UPDATE", "DELETE"])
def validate_application(body, old, operation, warnings, **_):
    result = admission_verdict(operation, _to_dict(body), _to_dict(old) if old else None)
    warnings.extend(result.warnings)
    if not result.allowed:
        raise kopf.AdmissionError(result.message, code=403)


@kopf.on.resume(*APPLICATION_RESOURCE)
@kopf.on.create(*APPLICATION_RESOURCE)
@kopf.on.update(*APPLICATION_RESOURCE)
@kopf.on.delete(*APPLICATION_RESOURCE, optional=True)
def reconcile_application(name, namespace, **_):
    """Track or release the Application's destination namespace."""
    try:
        _tracker.reconcile(namespace, name)
    except (ValidatorError, K8sBaseException) as e:
        logger.error(f"Failed to reconcile Application {namespace}/{name}: {e}")
        raise kopf.TemporaryError(str(e), delay=RECONCILE_RETRY_DELAY) from e


@kopf.on.event(*APPLICATION_RESOURCE)
def forget_application(type, body, **_):
    """Drop the metric series of Applications removed from the cluster."""
    if type == "DELETED":
        _tracker.forget(Application.from_dict(_to_dict(body)))


if __name__ == "__main__":
    kopf.run(clusterwide=True, liveness_endpoint="http://0.0.0.0:8081/healthz")
