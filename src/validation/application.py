"""
Application model.

Argo CD Applications arrive as plain dictionaries, either from the admission
review body or from the CustomObjectsApi. This module parses the fields the
validator relies on and keeps the raw object for diffing.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class Destination:
    """Where an Application deploys to"""
    server: str = ""
    namespace: str = ""
    name: str = ""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Destination":
        data = data or {}
        return cls(
            server=data.get("server") or "",
            namespace=data.get("namespace") or "",
            name=data.get("name") or "",
        )


@dataclass(frozen=True)
class Application:
    """An Argo CD Application as seen by the validator"""
    name: str
    namespace: str
    destination: Destination
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[str] = None
    resource_version: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "Application":
        """
        Parse an Application from its object dictionary.

        Args:
            obj: Application object as returned by the API server

        Returns:
            Application: Parsed application
        """
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            destination=Destination.from_dict(spec.get("destination")),
            finalizers=list(metadata.get("finalizers") or []),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            resource_version=metadata.get("resourceVersion"),
            raw=obj,
        )

    @property
    def is_deleting(self) -> bool:
        return bool(self.deletion_timestamp)

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers


def is_not_spec_update(old_obj: Dict[str, Any], new_obj: Dict[str, Any]) -> bool:
    """
    Check whether an update leaves the Application spec untouched.

    Status, finalizers, labels and annotations are written by controllers,
    including this operator's own handler bookkeeping. Such updates are
    approved without evaluating the Application again.

    Args:
        old_obj: Application object before the update
        new_obj: Application object after the update

    Returns:
        bool: True if the spec is unchanged
    """
    return (old_obj.get("spec") or {}) == (new_obj.get("spec") or {})
