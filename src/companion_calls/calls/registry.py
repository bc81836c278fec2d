"""
Registry of live calls.

The media bridge registers a handle per session while audio is flowing; the
call session service owns the registry and releases each entry exactly once
when the session reaches a terminal state.
"""

from typing import Protocol
from uuid import UUID

from companion_calls.shared.exceptions import ConflictError
from companion_calls.shared.logging import get_logger

logger = get_logger(__name__)


class LiveCallHandle(Protocol):
    """Per-call state held by the media layer."""

    async def aclose(self) -> None: ...


class LiveCallRegistry:
    """Session id -> live call handle.

    All access happens on the event loop and no method awaits between reading
    and mutating the map, so no lock is needed.
    """

    def __init__(self) -> None:
        self._entries: dict[UUID, LiveCallHandle] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._entries

    def register(self, session_id: UUID, handle: LiveCallHandle) -> None:
        if session_id in self._entries:
            raise ConflictError(
                message=f"Call session {session_id} already has a live handle",
                details={"session_id": str(session_id)},
            )
        self._entries[session_id] = handle
        logger.debug("Live call registered", extra={"session_id": str(session_id), "live_calls": len(self._entries)})

    def get(self, session_id: UUID) -> LiveCallHandle | None:
        return self._entries.get(session_id)

    async def release(self, session_id: UUID) -> bool:
        """Remove and close the handle. Returns False when nothing was registered."""
        handle = self._entries.pop(session_id, None)
        if handle is None:
            return False
        try:
            await handle.aclose()
        except Exception:
            logger.exception("Error closing live call handle", extra={"session_id": str(session_id)})
        logger.debug("Live call released", extra={"session_id": str(session_id), "live_calls": len(self._entries)})
        return True

    async def release_all(self) -> int:
        released = 0
        for session_id in list(self._entries):
            if await self.release(session_id):
                released += 1
        return released
