"""
Destination resolution.

Turns the server (or destination name) of an Application into the canonical
server URL ``https://api.<cluster>.<domain>:<port>`` and into the name of the
cluster secret tracking namespaces for that cluster.
"""

import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

from validator_config import ValidatorConfig, SECRET_NAME_SUFFIX
from .application import Destination
from .errors import ConfigurationError, InvalidDestinationError

logger = logging.getLogger(__name__)

_PROTOCOL_PREFIXES = ("https://", "http://")


def is_full_server_url(server: str) -> bool:
    """
    Check whether the server is a full URL like https://api.my-cluster.example.com:6443.

    Args:
        server: Destination server value

    Returns:
        bool: True if scheme is https, the host starts with ``api.`` and a port is given
    """
    try:
        parsed = urlparse(server)
    except ValueError:
        return False

    if parsed.scheme != "https":
        return False
    if not parsed.netloc.startswith("api."):
        return False
    return len(parsed.netloc.split(":")) == 2


def extract_cluster_name(server: str) -> str:
    """Return "my-cluster" for a full server URL, the input unchanged otherwise."""
    if is_full_server_url(server):
        host = urlparse(server).hostname or ""
        parts = host.split(".")
        if len(parts) > 1:
            return parts[1]
    return server


def file_safe_server_url(server_url: str) -> str:
    """
    Convert a server URL to a name usable as a ConfigMap key.

    Protocols and the ``api.`` prefix are removed, ``.``, ``:`` and ``/``
    become ``-``.
    """
    for prefix in _PROTOCOL_PREFIXES:
        if server_url.startswith(prefix):
            server_url = server_url[len(prefix):]
    if server_url.startswith("api."):
        server_url = server_url[len("api."):]

    return "".join("-" if ch in ".:/" else ch for ch in server_url)


def token_key(server_url: str) -> str:
    """ConfigMap key holding the bearer token for a server."""
    return f"{file_safe_server_url(server_url)}-token"


@dataclass(frozen=True)
class ResolvedDestination:
    """A destination resolved to its canonical server URL and cluster secret"""
    server_url: str
    cluster_name: str
    secret_name: str


class DestinationResolver:
    """Resolves Application destinations using the process configuration."""

    def __init__(self, config: ValidatorConfig):
        self.config = config

    def is_in_cluster(self, server: str) -> bool:
        return server in self.config.in_cluster_values

    def build_server_url(self, cluster_name: str) -> str:
        """
        Build a full server URL from a bare cluster name.

        Raises:
            ConfigurationError: If no cluster domain is configured
        """
        if not self.config.domain_configured:
            raise ConfigurationError(
                f"Cannot build a server URL for cluster '{cluster_name}': no cluster domain is configured",
                context={'cluster': cluster_name},
            )
        return f"https://api.{cluster_name}.{self.config.cluster_domain}:{self.config.server_url_port}"

    def canonical_server_url(self, server: str) -> str:
        if is_full_server_url(server):
            return server
        return self.build_server_url(server)

    def secret_name_for(self, server_url: str) -> str:
        """Name of the cluster secret for a canonical server URL."""
        host = urlparse(server_url).hostname or ""
        if host.startswith("api."):
            host = host[len("api."):]
        return f"{host}-{SECRET_NAME_SUFFIX}"

    def resolve(self, destination: Destination) -> ResolvedDestination:
        """
        Resolve a destination to its server URL and cluster secret name.

        The destination name is used as the cluster name when no server is set.

        Args:
            destination: Application destination

        Returns:
            ResolvedDestination: Canonical server URL, cluster name and secret name

        Raises:
            InvalidDestinationError: If neither server nor name is set, or the
                destination is in-cluster
            ConfigurationError: If a bare cluster name cannot be expanded
        """
        server = destination.server or destination.name
        if not server:
            raise InvalidDestinationError("Destination server or name must be specified")
        if self.is_in_cluster(server):
            raise InvalidDestinationError(
                f"Destination '{server}' is the local cluster and has no cluster secret",
                context={'server': server},
            )

        server_url = self.canonical_server_url(server)
        resolved = ResolvedDestination(
            server_url=server_url,
            cluster_name=extract_cluster_name(server_url),
            secret_name=self.secret_name_for(server_url),
        )
        logger.debug(f"Resolved destination '{server}' to {resolved}")
        return resolved

    def cluster_name_of(self, destination: Destination) -> Optional[str]:
        """Cluster name used to match destination-specific bypass labels."""
        server = destination.server or destination.name
        return extract_cluster_name(server) if server else None
