"""Unit tests for session passwords, codes and the session registry."""

import time

import pytest

from src.relay.auth import generate_reclaim_token, hash_password, verify_password, verify_token
from src.relay.codec import AudioChunkCodec
from src.relay.config import SessionConfig
from src.relay.connection import ConnectionHandle
from src.relay.errors import CapacityExceeded, SessionEnded, SessionNotFound
from src.relay.metrics import MetricsCollector
from src.relay.models import Session
from src.relay.pipeline import ChunkProcessor
from src.relay.registry import CODE_ALPHABET, SessionRegistry, normalize_code
from src.relay.session import SessionActor
from tests.helpers.relay_test_utils import FakeConnection


class TestPasswords:
    """Test password hashing and token checks."""

    def test_hash_and_verify(self) -> None:
        stored = hash_password("hunter2")
        assert "hunter2" not in stored
        assert verify_password("hunter2", stored)
        assert not verify_password("hunter3", stored)
        assert not verify_password(None, stored)

    def test_hashes_are_salted(self) -> None:
        assert hash_password("same") != hash_password("same")

    def test_no_password_accepts_anything(self) -> None:
        assert verify_password(None, None)
        assert verify_password("whatever", None)

    def test_reclaim_tokens(self) -> None:
        token = generate_reclaim_token()
        assert token != generate_reclaim_token()
        assert verify_token(token, token)
        assert not verify_token("wrong", token)
        assert not verify_token(None, token)
        assert not verify_token(token, "")


def test_normalize_code() -> None:
    assert normalize_code(" abc-234 ") == "ABC234"
    assert normalize_code("ab c2 34") == "ABC234"


def make_registry(
    processor: ChunkProcessor, metrics: MetricsCollector, **overrides: float
) -> SessionRegistry:
    config = SessionConfig(**overrides)

    def factory(session: Session, broadcaster: ConnectionHandle | None) -> SessionActor:
        return SessionActor(
            session,
            broadcaster,
            processor,
            AudioChunkCodec(),
            session_config=config,
            metrics=metrics,
        )

    return SessionRegistry(config, factory)


def make_handle(name: str, metrics: MetricsCollector) -> ConnectionHandle:
    return ConnectionHandle(FakeConnection(f"conn-{name}"), metrics=metrics)


class TestSessionRegistry:
    """Test code allocation, lookup and sweeping."""

    @pytest.mark.asyncio
    async def test_create_session(
        self, processor: ChunkProcessor, metrics: MetricsCollector
    ) -> None:
        registry = make_registry(processor, metrics)
        handle = make_handle("b", metrics)

        actor = await registry.create_session(
            handle, "en", title="Morning", password="pw", broadcaster_name="Pastor"
        )
        try:
            session = actor.session
            assert len(session.session_id) == 6
            assert all(c in CODE_ALPHABET for c in session.session_id)
            assert session.requires_password
            assert session.password_hash != "pw"
            assert session.reclaim_token
            assert session.broadcaster_connection_id == "conn-b"

            assert handle.session_id == session.session_id
            assert handle.role == "broadcaster"
            assert registry.session_for_connection("conn-b") is actor
            assert session.session_id in registry
            assert session.session_id.lower() in registry
        finally:
            await actor.shutdown()

    @pytest.mark.asyncio
    async def test_get_unknown_raises(
        self, processor: ChunkProcessor, metrics: MetricsCollector
    ) -> None:
        registry = make_registry(processor, metrics)
        with pytest.raises(SessionNotFound):
            registry.get("NOPE99")

    @pytest.mark.asyncio
    async def test_get_normalizes_code(
        self, processor: ChunkProcessor, metrics: MetricsCollector
    ) -> None:
        registry = make_registry(processor, metrics)
        actor = await registry.create_session(make_handle("b", metrics), "en")
        try:
            code = actor.session_id
            assert registry.get(f"{code[:3].lower()}-{code[3:].lower()}") is actor
        finally:
            await actor.shutdown()

    @pytest.mark.asyncio
    async def test_max_sessions(self, processor: ChunkProcessor, metrics: MetricsCollector) -> None:
        registry = make_registry(processor, metrics, max_sessions=1)
        first = await registry.create_session(make_handle("a", metrics), "en")
        try:
            with pytest.raises(CapacityExceeded):
                await registry.create_session(make_handle("b", metrics), "en")

            # Ended sessions no longer count against the limit
            await first.end(None, "done")
            second = await registry.create_session(make_handle("c", metrics), "en")
            await second.shutdown()
        finally:
            await first.shutdown()

    @pytest.mark.asyncio
    async def test_get_live_rejects_ended(
        self, processor: ChunkProcessor, metrics: MetricsCollector
    ) -> None:
        registry = make_registry(processor, metrics)
        actor = await registry.create_session(make_handle("a", metrics), "en")
        await actor.end(None, "done")
        await actor.shutdown()

        assert registry.get(actor.session_id) is actor
        with pytest.raises(SessionEnded):
            registry.get_live(actor.session_id)

    @pytest.mark.asyncio
    async def test_expired_sessions(
        self, processor: ChunkProcessor, metrics: MetricsCollector
    ) -> None:
        registry = make_registry(processor, metrics, idle_timeout_s=10.0)
        actor = await registry.create_session(make_handle("a", metrics), "en")
        try:
            assert registry.expired_sessions() == []
            actor.diagnostics.last_activity -= 11.0
            assert registry.expired_sessions() == [(actor, "idle_timeout")]

            actor.diagnostics.created_monotonic -= 7 * 3600.0
            assert registry.expired_sessions() == [(actor, "max_duration_exceeded")]
        finally:
            await actor.shutdown()

    @pytest.mark.asyncio
    async def test_purge_after_retention(
        self, processor: ChunkProcessor, metrics: MetricsCollector
    ) -> None:
        registry = make_registry(processor, metrics, ended_retention_s=60.0)
        actor = await registry.create_session(make_handle("a", metrics), "en")
        await actor.end(None, "done")
        await actor.shutdown()

        assert registry.purgeable_sessions() == []
        assert registry.purgeable_sessions(now=time.time() + 61.0) == [actor]

        removed = await registry.remove(actor.session_id)
        assert removed is actor
        assert len(registry) == 0
        with pytest.raises(SessionNotFound):
            registry.get(actor.session_id)

    @pytest.mark.asyncio
    async def test_connection_routing(
        self, processor: ChunkProcessor, metrics: MetricsCollector
    ) -> None:
        registry = make_registry(processor, metrics)
        actor = await registry.create_session(make_handle("a", metrics), "en")
        try:
            registry.bind_connection("conn-x", actor.session_id)
            registry.bind_connection("conn-y", actor.session_id)
            assert registry.session_for_connection("conn-x") is actor
            assert registry.unbind_connection("conn-x") == actor.session_id
            assert registry.session_for_connection("conn-x") is None
            # conn-a (broadcaster) and conn-y
            assert registry.unbind_session(actor.session_id) == 2
        finally:
            await actor.shutdown()

    @pytest.mark.asyncio
    async def test_statistics(self, processor: ChunkProcessor, metrics: MetricsCollector) -> None:
        registry = make_registry(processor, metrics)
        actor = await registry.create_session(make_handle("a", metrics), "en")
        try:
            stats = registry.statistics()
            assert stats["active_sessions"] == 1
            assert stats["ended_sessions"] == 0
            assert stats["sessions"][0]["session_id"] == actor.session_id
            assert stats["sessions"][0]["status"] == "setup"
        finally:
            await actor.shutdown()
