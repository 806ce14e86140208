"""In-memory session store, one record per user identifier.

Records are only ever mutated by the flow machine while it holds
``store.lock(user_id)``, so messages from one user are applied strictly
in arrival order while different users proceed in parallel.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from intake.locks import KeyedLock
from intake.models.session import SessionRecord

log = logging.getLogger("intake.store")


def redact_pii(value: str) -> str:
    """Mask PII for logging — show first 3 and last 2 chars only."""
    if not value or len(value) <= 5:
        return "***"
    return value[:3] + "***" + value[-2:]


class SessionStore:
    """Keyed registry of live conversations."""

    def __init__(self) -> None:
        self._sessions: dict[str, SessionRecord] = {}
        self._locks = KeyedLock()

    @asynccontextmanager
    async def lock(self, user_id: str) -> AsyncIterator[None]:
        """Hold the per-user mutex for one message's worth of work."""
        async with self._locks(user_id):
            yield

    def get(self, user_id: str) -> Optional[SessionRecord]:
        return self._sessions.get(user_id)

    def save(self, record: SessionRecord) -> None:
        record.updated_at = time.time()
        if record.user_id not in self._sessions:
            log.info("Session created: %s state=%s",
                     redact_pii(record.user_id), record.state.value)
        self._sessions[record.user_id] = record
        log.debug("Session saved: %s %s", redact_pii(record.user_id), record.model_dump())

    def delete(self, user_id: str) -> bool:
        removed = self._sessions.pop(user_id, None) is not None
        if removed:
            log.info("Session deleted: %s", redact_pii(user_id))
        return removed

    def all(self) -> list[SessionRecord]:
        return list(self._sessions.values())

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
