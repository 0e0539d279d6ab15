"""
Destination validation module for the Application RBAC Validator.

This module resolves Application destinations, evaluates bypass labels and
checks administrator access on destination clusters.
"""

from .errors import (
    ValidatorError,
    InvalidDestinationError,
    ConfigurationError,
    ConfigLookupError,
    TokenNotFoundError,
    SecretNotFoundError,
    SelfDeploymentError,
    AccessDeniedError,
    PermissionCheckError,
    ConflictRetryExhausted
)

from .application import (
    Application,
    Destination,
    is_not_spec_update
)

from .destination import (
    DestinationResolver,
    ResolvedDestination,
    is_full_server_url,
    extract_cluster_name,
    file_safe_server_url,
    token_key
)

from .bypass import bypass_allowed

from .permissions import (
    AuthorizationChecker,
    has_admin_access,
    is_namespace_admin,
    parse_admins
)

__all__ = [
    # Errors
    'ValidatorError',
    'InvalidDestinationError',
    'ConfigurationError',
    'ConfigLookupError',
    'TokenNotFoundError',
    'SecretNotFoundError',
    'SelfDeploymentError',
    'AccessDeniedError',
    'PermissionCheckError',
    'ConflictRetryExhausted',
    # Application model
    'Application',
    'Destination',
    'is_not_spec_update',
    # Destination resolution
    'DestinationResolver',
    'ResolvedDestination',
    'is_full_server_url',
    'extract_cluster_name',
    'file_safe_server_url',
    'token_key',
    # Bypass labels
    'bypass_allowed',
    # Permission checking
    'AuthorizationChecker',
    'has_admin_access',
    'is_namespace_admin',
    'parse_admins'
]
