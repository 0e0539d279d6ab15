"""
RBAC validation bypass labels.

A tenant namespace may carry labels pre-approving deployments:

- ``<prefix>``: any destination
- ``<prefix>-<cluster>``: the given destination cluster
- ``<prefix>-in-cluster``: any in-cluster alias
"""

import logging
from typing import Callable, Iterable, Mapping, Optional

from validator_config import ADMIN_BYPASS_LABEL, IN_CLUSTER_VALUES

logger = logging.getLogger(__name__)


def _exact_true(value: Optional[str]) -> bool:
    return value == "true"


def bypass_allowed(labels: Optional[Mapping[str, str]],
                   cluster_name: Optional[str],
                   prefix: str = ADMIN_BYPASS_LABEL,
                   in_cluster_values: Iterable[str] = IN_CLUSTER_VALUES,
                   label_enabled: Callable[[Optional[str]], bool] = _exact_true) -> bool:
    """
    Check if the namespace labels pre-approve a deployment to the cluster.

    Args:
        labels: Labels of the Application's namespace
        cluster_name: Destination cluster name, or an in-cluster alias
        prefix: Bypass label prefix
        in_cluster_values: Known in-cluster aliases, the first one being canonical
        label_enabled: Decides whether a label value switches the bypass on

    Returns:
        bool: True if any matching bypass label is enabled
    """
    if not labels:
        return False

    in_cluster_values = tuple(in_cluster_values)
    canonical_in_cluster = in_cluster_values[0] if in_cluster_values else None

    for key, value in labels.items():
        if not key.startswith(prefix) or not label_enabled(value):
            continue

        suffix = key[len(prefix):]
        if suffix == "":
            logger.debug(f"Global bypass label '{key}' found")
            return True
        if cluster_name and suffix == f"-{cluster_name}":
            logger.debug(f"Cluster bypass label '{key}' found")
            return True
        if canonical_in_cluster and suffix == f"-{canonical_in_cluster}" and cluster_name in in_cluster_values:
            logger.debug(f"In-cluster bypass label '{key}' found")
            return True

    return False
