"""
Storage contracts for handshake correlation records and credentials.

Implementations own their synchronization: every method is a single atomic
operation from the caller's point of view.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Optional

from shim_server.models.records import (
    AccessParameters,
    AuthorizationRequestParameters,
    HandshakeState,
)


class DuplicateStateKeyError(Exception):
    """Raised when a correlation record already exists for a state key."""


def to_iso(value: datetime) -> str:
    """Render a timestamp as fixed-width UTC ISO-8601 so string order is time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class CorrelationStore(ABC):
    """Keyed storage for in-flight authorization requests."""

    @abstractmethod
    def create(self, record: AuthorizationRequestParameters) -> None:
        """Insert a new record; raise ``DuplicateStateKeyError`` if the key exists."""

    @abstractmethod
    def get(self, state_key: str) -> Optional[AuthorizationRequestParameters]:
        """Return the record for ``state_key`` unless it is missing or expired."""

    @abstractmethod
    def claim(
        self,
        state_key: str,
        *,
        provider_key: str,
        lease_seconds: int,
    ) -> Optional[AuthorizationRequestParameters]:
        """Atomically take an initiated, unexpired record for callback resolution.

        Returns ``None`` when the key is unknown, expired, terminal, issued for a
        different provider, or currently held by another callback whose lease
        has not run out.
        """

    @abstractmethod
    def release(self, state_key: str) -> None:
        """Drop a claim so the handshake can be retried."""

    @abstractmethod
    def finish(self, state_key: str, state: HandshakeState) -> bool:
        """Move a claimed record to a terminal state; ``False`` if it was not live."""

    @abstractmethod
    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete records past their expiry and return how many were removed."""


class CredentialStore(ABC):
    """Keyed storage for resolved credentials, newest first per user and shim."""

    @abstractmethod
    def save(self, credential: AccessParameters) -> AccessParameters:
        """Persist a grant and return it with its ``credential_id``.

        Saving a second grant for the same ``state_key`` returns the existing one.
        """

    @abstractmethod
    def replace(
        self, previous_credential_id: str, credential: AccessParameters
    ) -> Optional[AccessParameters]:
        """Store a successor to an existing grant, atomically with its existence check.

        Returns ``None`` without writing when ``previous_credential_id`` is gone,
        so a grant removed by ``delete_all`` is never brought back.
        """

    @abstractmethod
    def latest(self, user_id: str, provider_key: str) -> Optional[AccessParameters]:
        """Return the most recently created grant, latest insertion winning ties."""

    @abstractmethod
    def find_by_state_key(
        self, user_id: str, provider_key: str, state_key: str
    ) -> Optional[AccessParameters]:
        """Return the grant produced by a given handshake, if any."""

    @abstractmethod
    def delete_all(self, user_id: str, provider_key: str) -> int:
        """Remove every grant for the pair and return how many were removed."""

    @abstractmethod
    def list_for_user(self, user_id: str) -> List[AccessParameters]:
        """Return all grants for a user, newest first."""


__all__ = [
    "CorrelationStore",
    "CredentialStore",
    "DuplicateStateKeyError",
    "from_iso",
    "to_iso",
]
