"""
Exception classes for destination authorization and namespace tracking.
"""

from typing import Any, Dict, Optional


class ValidatorError(Exception):
    """Base exception for all validator errors"""
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}


class InvalidDestinationError(ValidatorError):
    """Destination server or namespace is missing"""
    pass


class ConfigurationError(ValidatorError):
    """Process configuration cannot resolve the destination"""
    pass


class ConfigLookupError(ValidatorError):
    """A required ConfigMap, key, Namespace or file could not be read"""
    pass


class TokenNotFoundError(ConfigLookupError):
    """No bearer token is stored for the destination server"""
    pass


class SecretNotFoundError(ValidatorError):
    """The destination cluster secret does not exist"""
    pass


class SelfDeploymentError(ValidatorError):
    """Destination is the cluster the Application already lives on"""
    pass


class AccessDeniedError(ValidatorError):
    """No administrator holds admin access to the destination namespace"""
    pass


class PermissionCheckError(ValidatorError):
    """An authorization check against the destination cluster failed"""
    pass


class ConflictRetryExhausted(ValidatorError):
    """Optimistic concurrency retries were exhausted"""
    pass
