"""
In-Memory Durable Store

Fallback implementation of DurableStore used when no Redis is configured,
and as the store in tests. Correct only for a single instance: nothing is
shared across processes and nothing survives a restart.

Each operation yields to the event loop once (as real I/O would) and then
does its check and mutation without further awaits, so it stays atomic
with respect to other coroutines.
"""

import asyncio
import copy
import time
from typing import Any

from signbot.core.exceptions import ConcurrencyError
from signbot.core.interfaces.store import RegistrationResult, VersionedState
from signbot.core.logging.logger import get_logger

logger = get_logger(__name__)


class InMemoryStore:
    """Dict-backed DurableStore."""

    def __init__(self):
        self._registrations: dict[str, dict[str, float | int]] = {}
        self._sessions: dict[str, VersionedState] = {}
        self._dead_letters: dict[str, tuple[dict[str, Any], float | None]] = {}

    async def register_if_absent(self, key: str) -> RegistrationResult:
        await asyncio.sleep(0)
        record = self._registrations.get(key)
        if record is None:
            self._registrations[key] = {"first_seen": time.time(), "count": 0}
            return RegistrationResult(inserted=True, count=0)
        record["count"] += 1
        return RegistrationResult(inserted=False, count=int(record["count"]))

    async def read_versioned(self, key: str) -> VersionedState:
        await asyncio.sleep(0)
        state = self._sessions.get(key)
        if state is None:
            return VersionedState(key=key)
        return VersionedState(key=key, payload=copy.deepcopy(state.payload), version=state.version)

    async def write_versioned(
        self, key: str, payload: dict[str, Any], expected_version: int
    ) -> VersionedState:
        await asyncio.sleep(0)
        current = self._sessions.get(key)
        current_version = current.version if current else 0
        if current_version != expected_version:
            raise ConcurrencyError(key, expected_version, current_version)
        state = VersionedState(key=key, payload=copy.deepcopy(payload), version=current_version + 1)
        self._sessions[key] = state
        return VersionedState(key=key, payload=copy.deepcopy(payload), version=state.version)

    async def put_dead_letter(self, entry_id: str, payload: dict[str, Any], next_retry_at: float | None) -> None:
        await asyncio.sleep(0)
        self._dead_letters[entry_id] = (copy.deepcopy(payload), next_retry_at)

    async def due_dead_letters(self, now: float, limit: int) -> list[dict[str, Any]]:
        await asyncio.sleep(0)
        due = sorted(
            (at, entry_id)
            for entry_id, (_, at) in self._dead_letters.items()
            if at is not None and at <= now
        )
        return [copy.deepcopy(self._dead_letters[entry_id][0]) for _, entry_id in due[:limit]]

    async def delete_dead_letter(self, entry_id: str) -> None:
        await asyncio.sleep(0)
        self._dead_letters.pop(entry_id, None)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        logger.debug(
            "In-memory store closed",
            registrations=len(self._registrations),
            sessions=len(self._sessions),
            dead_letters=len(self._dead_letters),
        )
