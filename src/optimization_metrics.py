"""
Prometheus metrics for namespace tracking.

The gauge tells, per Application, whether its destination namespace is
tracked in the cluster secret (1) or was bypassed (0, with the reason).
"""

import logging
import threading
from typing import Dict, Optional, Tuple

from prometheus_client import CollectorRegistry, Gauge, REGISTRY

logger = logging.getLogger(__name__)

REASON_OPTIMIZED = "optimized"
REASON_BYPASS_LABEL = "bypass-label"
REASON_CLUSTER_RESOURCES = "cluster-resources"
REASON_IN_CLUSTER = "in-cluster"

REASONS = (REASON_OPTIMIZED, REASON_BYPASS_LABEL, REASON_CLUSTER_RESOURCES, REASON_IN_CLUSTER)

LABEL_NAMES = ["name", "application_namespace", "destination_namespace", "destination", "reason"]


class ApplicationMetrics:
    """
    Holds the application_optimization_status gauge.

    Each Application owns a single series; observing it under another reason
    or destination replaces the previous series.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.optimization_status = Gauge(
            "application_optimization_status",
            "Indicates whether the application is optimized (1) or not (0)",
            LABEL_NAMES,
            registry=registry if registry is not None else REGISTRY,
        )
        self._series: Dict[Tuple[str, str], Tuple[str, ...]] = {}
        self._lock = threading.Lock()

    def observe(self, name: str, app_namespace: str, destination_namespace: str,
                destination: str, reason: str, optimized: bool) -> None:
        """Set the status of an Application, replacing its previous series."""
        labels = (name, app_namespace, destination_namespace, destination, reason)
        with self._lock:
            previous = self._series.get((name, app_namespace))
            if previous and previous != labels:
                self._remove(*previous)
            self._series[(name, app_namespace)] = labels
            self.optimization_status.labels(*labels).set(1 if optimized else 0)

    def clear(self, name: str, app_namespace: str, destination_namespace: str, destination: str) -> None:
        """Remove every series of an Application."""
        with self._lock:
            previous = self._series.pop((name, app_namespace), None)
            if previous:
                self._remove(*previous)
            for reason in REASONS:
                self._remove(name, app_namespace, destination_namespace, destination, reason)

    def _remove(self, *label_values: str) -> None:
        try:
            self.optimization_status.remove(*label_values)
        except KeyError:
            # series was never set
            pass
