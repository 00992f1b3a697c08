"""
Durable Store Protocol

The narrow contract the coordination layer needs from shared storage:
an atomic register for idempotency keys, a versioned (compare-and-set)
read/write pair for per-user session state, and a schedule of dead
letters waiting for redelivery.

Architectural Decision: Protocol-based abstraction
- Redis in production, an in-memory implementation as the fallback and in tests
- The store is the only cross-instance point of mutual exclusion, so both
  operations must be atomic on the backend side
"""

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class RegistrationResult:
    """
    Outcome of ``register_if_absent``.

    Attributes:
        inserted: True if this call created the record (first sighting)
        count: Redeliveries seen so far; 0 on first sighting
    """

    inserted: bool
    count: int


@dataclass(frozen=True)
class VersionedState:
    """Session payload together with the version it was read at."""

    key: str
    payload: dict[str, Any] = field(default_factory=dict)
    version: int = 0


@runtime_checkable
class DurableStore(Protocol):
    """
    Protocol defining the durable store used by IdempotencyGuard and
    OptimisticUpdater.

    Implementations:
    - RedisStore: Production store shared by all instances
    - InMemoryStore: Single-instance fallback and test double
    """

    async def register_if_absent(self, key: str) -> RegistrationResult:
        """
        Atomically insert ``key``, or increment its delivery count if present.

        Raises:
            StoreUnavailableError: If the backend cannot be reached
        """
        ...

    async def read_versioned(self, key: str) -> VersionedState:
        """
        Read the payload and version for ``key``.

        An absent key reads as an empty payload at version 0.
        """
        ...

    async def write_versioned(
        self, key: str, payload: dict[str, Any], expected_version: int
    ) -> VersionedState:
        """
        Write ``payload`` if the stored version still equals ``expected_version``.

        Returns:
            The new state, at ``expected_version + 1``

        Raises:
            ConcurrencyError: If the stored version has moved on
            StoreUnavailableError: If the backend cannot be reached
        """
        ...

    async def put_dead_letter(self, entry_id: str, payload: dict[str, Any], next_retry_at: float | None) -> None:
        """
        Insert or replace a dead letter entry.

        ``next_retry_at`` is a wall-clock timestamp; None keeps the entry but
        takes it off the retry schedule.
        """
        ...

    async def due_dead_letters(self, now: float, limit: int) -> list[dict[str, Any]]:
        """Entries scheduled at or before ``now``, earliest first."""
        ...

    async def delete_dead_letter(self, entry_id: str) -> None:
        ...

    async def ping(self) -> bool:
        """Return True if the backend is reachable."""
        ...

    async def close(self) -> None:
        ...
