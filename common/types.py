"""Shared data type definitions (SecretRef, SecretData, Secret, watch events)."""

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple, Union


@dataclass(frozen=True)
class SecretRef:
    """
    Identity of a namespaced secret.

    Canonical text form is "<namespace>/<name>".
    """
    namespace: str
    name: str

    @classmethod
    def parse(cls, full_name: str) -> "SecretRef":
        """
        Parse a "<namespace>/<name>" string.

        Args:
            full_name: Canonical full name

        Returns:
            SecretRef for the given full name

        Raises:
            ValueError: If the text is not exactly two non-empty parts
        """
        parts = full_name.split("/")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise ValueError(f"Invalid secret reference: {full_name!r} (expected '<namespace>/<name>')")
        return cls(namespace=parts[0], name=parts[1])

    @property
    def full_name(self) -> str:
        return f"{self.namespace}/{self.name}"

    def __str__(self) -> str:
        return self.full_name


@dataclass(frozen=True)
class SecretData:
    """
    Payload kept identical between a source and its destinations.
    """
    data: Dict[str, bytes] = field(default_factory=dict)
    type: Optional[str] = None

    def same_payload(self, other: "SecretData") -> bool:
        """Byte-for-byte comparison of the key/value mapping."""
        return dict(self.data) == dict(other.data)


@dataclass(frozen=True)
class Secret:
    """
    Domain view of a Secret object as read from or written to the API.
    """
    ref: SecretRef
    data: SecretData
    annotations: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    resource_version: Optional[str] = None


def full_name(secret: Secret) -> str:
    """Canonical "<namespace>/<name>" of a secret."""
    return secret.ref.full_name


@dataclass(frozen=True)
class Applied:
    """A secret was added or modified."""
    secret: Secret
    source: Optional[str] = None


@dataclass(frozen=True)
class Deleted:
    """A secret was removed."""
    secret: Secret
    source: Optional[str] = None


@dataclass(frozen=True)
class Restarted:
    """
    Full relist of a subscription; replaces all previously observed state.
    """
    secrets: Tuple[Secret, ...]
    source: Optional[str] = None


WatchEvent = Union[Applied, Deleted, Restarted]
