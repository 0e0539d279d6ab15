"""
Cross-cluster permission checking.

Verifies that at least one instance administrator holds admin access to the
destination namespace on the destination cluster.
"""

import logging
from typing import Iterable, List, Protocol, runtime_checkable

from validator_config import ADMIN_ACCESS_RESOURCE, ADMIN_ACCESS_VERBS
from .errors import AccessDeniedError, PermissionCheckError

logger = logging.getLogger(__name__)


@runtime_checkable
class AuthorizationChecker(Protocol):
    """Answers authorization questions against a destination cluster."""

    def is_allowed(self, user: str, namespace: str, verb: str, resource: str) -> bool: ...


def parse_admins(value: str) -> List[str]:
    """Split the comma-separated instance users, dropping empty entries."""
    return [admin.strip() for admin in value.split(",") if admin.strip()]


def is_namespace_admin(checker: AuthorizationChecker,
                       user: str,
                       namespace: str,
                       verbs: Iterable[str] = ADMIN_ACCESS_VERBS,
                       resource: str = ADMIN_ACCESS_RESOURCE) -> bool:
    """
    Check whether a user may perform every admin verb in the namespace.

    Stops at the first denied verb.

    Raises:
        PermissionCheckError: If an authorization check could not be performed
    """
    for verb in verbs:
        try:
            allowed = checker.is_allowed(user, namespace, verb, resource)
        except Exception as e:
            raise PermissionCheckError(
                f"Authorization check failed for user {user} ({verb} {resource} in {namespace}): {e}",
                context={'user': user, 'verb': verb, 'namespace': namespace},
            ) from e

        if not allowed:
            logger.debug(f"User {user} cannot {verb} {resource} in namespace {namespace}")
            return False

    return True


def has_admin_access(checker: AuthorizationChecker,
                     admins: Iterable[str],
                     namespace: str,
                     cluster: str = "",
                     verbs: Iterable[str] = ADMIN_ACCESS_VERBS,
                     resource: str = ADMIN_ACCESS_RESOURCE) -> bool:
    """
    Ensure any administrator has admin access to the namespace.

    Administrators are checked in order and the first authorized one ends the
    check.

    Args:
        checker: Authorization checker bound to the destination cluster
        admins: Candidate administrators
        namespace: Destination namespace
        cluster: Destination cluster, used in messages only
        verbs: Verbs making up admin access
        resource: Resource the verbs are checked against

    Returns:
        bool: True when an administrator is authorized

    Raises:
        AccessDeniedError: If no administrator is authorized
        PermissionCheckError: If any authorization check failed
    """
    verbs = tuple(verbs)
    checked = []

    for admin in admins:
        if not admin:
            continue
        checked.append(admin)
        if is_namespace_admin(checker, admin, namespace, verbs, resource):
            logger.info(f"User {admin} has admin access to namespace {namespace} in cluster {cluster}")
            return True

    raise AccessDeniedError(
        f"No users have admin access to namespace {namespace} in cluster {cluster}",
        context={'admins': checked, 'namespace': namespace, 'cluster': cluster},
    )
