"""
Session registry.

Holds every GameSession in memory, persists each change under the 'sessions'
entity kind and serializes mutations per session id.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .database import Database
from .exceptions import InvalidTransitionError
from .models import GameSession, SessionError, SessionPurpose, SessionStats, SessionStatus, utcnow

logger = logging.getLogger(__name__)

SESSIONS_KIND = "sessions"


class SessionRegistry:
    def __init__(self, database: Database, clock: Callable[[], datetime] = utcnow):
        self.database = database
        self.clock = clock
        self._sessions: Dict[str, GameSession] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def load(self) -> int:
        """Rehydrate sessions from the store. Returns the number loaded"""
        records = await self.database.list_entities(SESSIONS_KIND)
        for record in records:
            session = GameSession.model_validate(record)
            self._sessions[session.id] = session
        return len(records)

    async def create(self, session: GameSession) -> GameSession:
        async with self._locks[session.id]:
            if session.id in self._sessions:
                raise InvalidTransitionError(f"Session {session.id} already exists")
            now = self.clock()
            session = session.model_copy(update={"created_at": now, "updated_at": now}, deep=True)
            if session.status == SessionStatus.RUNNING and session.performance.start_time is None:
                session.performance.start_time = now
            await self._save(session)
            logger.info(f"Session {session.id} created for game {session.game_id} ({session.status.value})")
            return session

    def get(self, session_id: str) -> Optional[GameSession]:
        return self._sessions.get(session_id)

    def find_by_container(self, container_id: str) -> Optional[GameSession]:
        for session in self._sessions.values():
            if session.container_id and (
                session.container_id == container_id
                or session.container_id.startswith(container_id)
            ):
                return session
        return None

    def list(
        self,
        status: Optional[SessionStatus] = None,
        game_id: Optional[str] = None,
        purpose: Optional[SessionPurpose] = None,
    ) -> List[GameSession]:
        sessions = sorted(self._sessions.values(), key=lambda s: s.created_at)
        if status is not None:
            sessions = [s for s in sessions if s.status == status]
        if game_id is not None:
            sessions = [s for s in sessions if s.game_id == game_id]
        if purpose is not None:
            sessions = [s for s in sessions if s.purpose == purpose]
        return sessions

    def stats(self, game_id: str) -> SessionStats:
        """Play sessions and total play time for one game"""
        sessions = self.list(game_id=game_id, purpose=SessionPurpose.PLAY)
        durations = [
            s.performance.duration_seconds for s in sessions
            if s.performance.duration_seconds is not None
        ]
        started = [s.performance.start_time for s in sessions if s.performance.start_time is not None]
        total = sum(durations)
        return SessionStats(
            game_id=game_id,
            total_sessions=len(sessions),
            total_play_time_seconds=total,
            average_session_seconds=total / len(durations) if durations else 0.0,
            last_played=max(started) if started else None,
        )

    async def update(self, session_id: str, **patch) -> GameSession:
        """Apply a field patch to one session.

        `status` changes are checked against the session state machine and a
        `container_id` can only be assigned once. Entering RUNNING stamps the
        start time.
        """
        async with self._locks[session_id]:
            session = self._require(session_id)
            return await self._apply(session, patch)

    async def stop(
        self,
        session_id: str,
        screenshots: Optional[List[str]] = None,
        exit_code: Optional[int] = None,
    ) -> GameSession:
        """Close a session and compute its duration"""
        async with self._locks[session_id]:
            session = self._require(session_id)
            if session.is_terminal:
                return session

            end_time = self.clock()
            performance = session.performance.model_copy()
            performance.end_time = end_time
            if performance.start_time is not None:
                seconds = int((end_time - performance.start_time).total_seconds())
                performance.duration_seconds = max(0, seconds)

            patch = {"performance": performance, "container_id": None}
            if exit_code is not None:
                patch["exit_code"] = exit_code
            if screenshots:
                patch["screenshots"] = list(session.screenshots) + [
                    s for s in screenshots if s not in session.screenshots
                ]

            if session.status != SessionStatus.STOPPING:
                session = await self._apply(session, {"status": SessionStatus.STOPPING})
            patch["status"] = SessionStatus.STOPPED
            session = await self._apply(session, patch, allow_clear=True)
            logger.info(
                f"Session {session_id} stopped after {performance.duration_seconds}s"
            )
            return session

    async def fail(self, session_id: str, message: str) -> GameSession:
        """Move a session to ERROR and record the message"""
        async with self._locks[session_id]:
            session = self._require(session_id)
            errors = list(session.errors) + [SessionError(timestamp=self.clock(), message=message)]
            if session.is_terminal:
                return await self._apply(session, {"errors": errors})
            performance = session.performance.model_copy()
            performance.end_time = self.clock()
            logger.error(f"Session {session_id} failed: {message}")
            return await self._apply(
                session,
                {"status": SessionStatus.ERROR, "errors": errors, "performance": performance},
            )

    def _require(self, session_id: str) -> GameSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(f"Unknown session: {session_id}")
        return session

    async def _apply(self, session: GameSession, patch: dict, allow_clear: bool = False) -> GameSession:
        patch = dict(patch)
        status = patch.get("status")
        if status is not None:
            status = SessionStatus(status)
            if not session.can_transition(status):
                raise InvalidTransitionError(
                    f"Session {session.id} cannot move from {session.status.value} to {status.value}"
                )
            patch["status"] = status

        if "container_id" in patch:
            new_id = patch["container_id"]
            if new_id is None and not allow_clear:
                raise InvalidTransitionError("container_id is only cleared when a session stops")
            if new_id is not None and session.container_id and session.container_id != new_id:
                raise InvalidTransitionError(
                    f"Session {session.id} already bound to container {session.container_id}"
                )

        if status == SessionStatus.RUNNING and session.performance.start_time is None:
            performance = patch.get("performance", session.performance).model_copy()
            performance.start_time = self.clock()
            patch["performance"] = performance

        patch["updated_at"] = self.clock()
        updated = session.model_copy(update=patch)
        await self._save(updated)
        return updated

    async def _save(self, session: GameSession):
        self._sessions[session.id] = session
        await self.database.write_entity(
            SESSIONS_KIND, session.id, session.model_dump(mode="json")
        )
