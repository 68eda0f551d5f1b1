"""Session registry: code allocation, lookup and connection routing.

The registry is the only state shared between sessions. Mutations that span
sessions (creation against the capacity limit, removal) are serialized by an
``asyncio.Lock``; everything inside a session belongs to its actor.

Ended sessions stay registered for ``ended_retention_s`` so that a late
joiner is told the session ended rather than that it never existed.
"""

import asyncio
import logging
import secrets
import time
from collections.abc import Callable
from typing import Any

from src.relay.auth import generate_reclaim_token, hash_password
from src.relay.config import SessionConfig
from src.relay.connection import ConnectionHandle
from src.relay.errors import CapacityExceeded, SessionEnded, SessionNotFound
from src.relay.models import Session
from src.relay.session import SessionActor

logger = logging.getLogger(__name__)

# Excludes look-alike characters (0/O, 1/I)
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
MAX_CODE_ATTEMPTS = 20

ActorFactory = Callable[[Session, ConnectionHandle | None], SessionActor]


def normalize_code(code: str) -> str:
    """Canonical form of a user-typed session code."""
    return code.strip().upper().replace("-", "").replace(" ", "")


class SessionRegistry:
    """Registry of live and recently ended sessions.

    Args:
        config: Session limits
        actor_factory: Builds the actor for a new session record
    """

    def __init__(self, config: SessionConfig, actor_factory: ActorFactory) -> None:
        self.config = config
        self._actor_factory = actor_factory
        self._sessions: dict[str, SessionActor] = {}
        self._connections: dict[str, str] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return isinstance(session_id, str) and normalize_code(session_id) in self._sessions

    def generate_code(self) -> str:
        """Generate an unused session code.

        Raises:
            CapacityExceeded: If no free code was found
        """
        for _ in range(MAX_CODE_ATTEMPTS):
            code = "".join(secrets.choice(CODE_ALPHABET) for _ in range(self.config.code_length))
            if code not in self._sessions:
                return code
        raise CapacityExceeded("Could not allocate a unique session code")

    async def create_session(
        self,
        broadcaster: ConnectionHandle | None,
        source_language: str,
        title: str = "Live session",
        password: str | None = None,
        broadcaster_name: str = "Broadcaster",
    ) -> SessionActor:
        """Create and start a session.

        Args:
            broadcaster: Handle of the creating connection
            source_language: Language the broadcaster speaks
            title: Session title
            password: Optional join password (stored hashed)
            broadcaster_name: Display name of the broadcaster

        Returns:
            Running SessionActor

        Raises:
            CapacityExceeded: If ``max_sessions`` live sessions exist
        """
        async with self._lock:
            live = sum(1 for actor in self._sessions.values() if not actor.is_ended)
            if live >= self.config.max_sessions:
                raise CapacityExceeded(
                    f"Maximum concurrent sessions reached ({self.config.max_sessions})"
                )

            session = Session(
                session_id=self.generate_code(),
                title=title,
                source_language=source_language,
                broadcaster_connection_id=broadcaster.connection_id if broadcaster else None,
                broadcaster_name=broadcaster_name,
                password_hash=hash_password(password) if password else None,
                reclaim_token=generate_reclaim_token(),
            )
            actor = self._actor_factory(session, broadcaster)
            self._sessions[session.session_id] = actor
            if broadcaster is not None:
                self.bind_connection(broadcaster.connection_id, session.session_id)
                broadcaster.session_id = session.session_id
                broadcaster.role = "broadcaster"
            actor.start()

        logger.info(
            "Session created",
            extra={
                "session_id": session.session_id,
                "source_language": source_language,
                "password_protected": session.requires_password,
                "live_sessions": live + 1,
            },
        )
        return actor

    def get(self, session_id: str) -> SessionActor:
        """Look up a session, live or recently ended.

        Raises:
            SessionNotFound: If the code is unknown
        """
        actor = self._sessions.get(normalize_code(session_id))
        if actor is None:
            raise SessionNotFound(f"Session {session_id} not found")
        return actor

    def get_live(self, session_id: str) -> SessionActor:
        """Look up a session that has not ended.

        Raises:
            SessionNotFound: If the code is unknown
            SessionEnded: If the session has ended
        """
        actor = self.get(session_id)
        if actor.is_ended:
            raise SessionEnded(f"Session {actor.session_id} has ended")
        return actor

    # === Connection routing ===

    def bind_connection(self, connection_id: str, session_id: str) -> None:
        self._connections[connection_id] = session_id

    def unbind_connection(self, connection_id: str) -> str | None:
        return self._connections.pop(connection_id, None)

    def session_for_connection(self, connection_id: str) -> SessionActor | None:
        session_id = self._connections.get(connection_id)
        if session_id is None:
            return None
        return self._sessions.get(session_id)

    def unbind_session(self, session_id: str) -> int:
        """Drop every connection routed to a session."""
        stale = [cid for cid, sid in self._connections.items() if sid == session_id]
        for connection_id in stale:
            del self._connections[connection_id]
        return len(stale)

    # === Sweeping ===

    def live_sessions(self) -> list[SessionActor]:
        return [actor for actor in self._sessions.values() if not actor.is_ended]

    def all_sessions(self) -> list[SessionActor]:
        return list(self._sessions.values())

    def expired_sessions(self) -> list[tuple[SessionActor, str]]:
        """Live sessions past the idle timeout or the maximum duration.

        Returns:
            (actor, reason) pairs
        """
        expired = []
        for actor in self.live_sessions():
            if actor.age_seconds >= self.config.max_session_duration_s:
                expired.append((actor, "max_duration_exceeded"))
            elif actor.idle_seconds >= self.config.idle_timeout_s:
                expired.append((actor, "idle_timeout"))
        return expired

    def purgeable_sessions(self, now: float | None = None) -> list[SessionActor]:
        """Ended sessions whose retention period has passed."""
        now = now if now is not None else time.time()
        return [
            actor
            for actor in self._sessions.values()
            if actor.is_ended
            and actor.session.ended_at is not None
            and now - actor.session.ended_at >= self.config.ended_retention_s
        ]

    async def remove(self, session_id: str) -> SessionActor | None:
        async with self._lock:
            actor = self._sessions.pop(normalize_code(session_id), None)
            if actor is not None:
                self.unbind_session(actor.session_id)
        if actor is not None:
            logger.info("Session removed", extra={"session_id": actor.session_id})
        return actor

    def statistics(self) -> dict[str, Any]:
        """Aggregate statistics for monitoring."""
        sessions = []
        total_subscribers = 0
        for actor in self._sessions.values():
            count = actor.active_subscriber_count
            total_subscribers += count
            sessions.append(
                {
                    "session_id": actor.session_id,
                    "status": actor.status.value,
                    "subscribers": count,
                    "chunks_processed": actor.diagnostics.chunks_processed,
                    "results_delivered": actor.diagnostics.results_delivered,
                    "duration_s": round(actor.age_seconds, 1),
                }
            )
        return {
            "active_sessions": len(self.live_sessions()),
            "ended_sessions": len(self._sessions) - len(self.live_sessions()),
            "total_subscribers": total_subscribers,
            "connections": len(self._connections),
            "sessions": sessions,
        }
