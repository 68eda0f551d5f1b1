"""Unit tests for the session lifecycle controller."""

import asyncio
import time
from collections.abc import AsyncIterator

import pytest
import pytest_asyncio

from src.relay.adapters.adapter_mock import (
    MockSynthesisAdapter,
    MockTranscriptionAdapter,
    MockTranslationAdapter,
)
from src.relay.config import QualityConfig, RelayConfig, SessionConfig
from src.relay.connection import ConnectionHandle
from src.relay.errors import NotBroadcaster, SessionEnded, SessionNotFound
from src.relay.lifecycle import SessionLifecycleController
from src.relay.metrics import MetricsCollector
from src.relay.models import QualityTier, SessionStatus
from tests.helpers.relay_test_utils import FakeConnection, wait_for, wav_chunk_b64


@pytest_asyncio.fixture
async def controller(metrics: MetricsCollector) -> AsyncIterator[SessionLifecycleController]:
    config = RelayConfig(
        session=SessionConfig(broadcaster_grace_s=5.0, ended_retention_s=60.0),
        quality=QualityConfig(ping_interval_s=0.02, ping_timeout_s=2.0),
    )
    ctrl = SessionLifecycleController(
        config,
        MockTranscriptionAdapter(transcript="welcome everyone"),
        MockTranslationAdapter(),
        MockSynthesisAdapter(),
        metrics=metrics,
    )
    await ctrl.start()
    yield ctrl
    await ctrl.stop()


@pytest_asyncio.fixture
async def connect(metrics: MetricsCollector):
    """Factory of started handles over fake connections."""
    handles: list[ConnectionHandle] = []

    def _connect(name: str, ping_ms: float = 5.0) -> tuple[ConnectionHandle, FakeConnection]:
        conn = FakeConnection(f"conn-{name}", ping_ms=ping_ms)
        handle = ConnectionHandle(conn, metrics=metrics)
        handle.start()
        handles.append(handle)
        return handle, conn

    yield _connect
    for handle in handles:
        await handle.close()


class TestSessionSetup:
    """Test creating and joining sessions."""

    @pytest.mark.asyncio
    async def test_create_and_join(self, controller: SessionLifecycleController, connect) -> None:
        broadcaster, _ = connect("broadcaster")
        session = await controller.create_session(broadcaster, "en", title="Sunday service")

        assert len(session.session_id) == 6
        assert session.status is SessionStatus.SETUP
        assert broadcaster.role == "broadcaster"

        listener, _ = connect("listener")
        joined, subscriber = await controller.join_session(listener, session.session_id, "ar")
        assert joined.session_id == session.session_id
        assert subscriber.target_language == "ar"

        snapshot = await controller.session_snapshot(session.session_id)
        assert snapshot["subscriber_count"] == 1

    @pytest.mark.asyncio
    async def test_codes_are_case_insensitive(
        self, controller: SessionLifecycleController, connect
    ) -> None:
        broadcaster, _ = connect("broadcaster")
        session = await controller.create_session(broadcaster, "en")
        listener, _ = connect("listener")
        joined, _ = await controller.join_session(listener, session.session_id.lower(), "fr")
        assert joined.session_id == session.session_id

    @pytest.mark.asyncio
    async def test_unknown_session(self, controller: SessionLifecycleController, connect) -> None:
        listener, _ = connect("listener")
        with pytest.raises(SessionNotFound):
            await controller.join_session(listener, "ZZZZZZ", "fr")

    @pytest.mark.asyncio
    async def test_subscriber_cannot_control(
        self, controller: SessionLifecycleController, connect
    ) -> None:
        broadcaster, _ = connect("broadcaster")
        session = await controller.create_session(broadcaster, "en")
        listener, _ = connect("listener")
        await controller.join_session(listener, session.session_id, "fr")

        with pytest.raises(NotBroadcaster):
            await controller.start_broadcast(listener, session.session_id)
        with pytest.raises(NotBroadcaster):
            await controller.audio_chunk(listener, session.session_id, wav_chunk_b64())

    @pytest.mark.asyncio
    async def test_joining_another_session_leaves_the_first(
        self, controller: SessionLifecycleController, connect
    ) -> None:
        first_b, _ = connect("b1")
        second_b, _ = connect("b2")
        first = await controller.create_session(first_b, "en")
        second = await controller.create_session(second_b, "en")

        listener, _ = connect("listener")
        await controller.join_session(listener, first.session_id, "fr")
        await controller.join_session(listener, second.session_id, "fr")

        assert (await controller.session_snapshot(first.session_id))["subscriber_count"] == 0
        assert (await controller.session_snapshot(second.session_id))["subscriber_count"] == 1

    @pytest.mark.asyncio
    async def test_joining_ended_session_keeps_current_membership(
        self, controller: SessionLifecycleController, connect
    ) -> None:
        live_b, _ = connect("b1")
        ended_b, _ = connect("b2")
        live = await controller.create_session(live_b, "en")
        ended = await controller.create_session(ended_b, "en")
        await controller.end_session(ended_b, ended.session_id)

        listener, _ = connect("listener")
        await controller.join_session(listener, live.session_id, "fr")
        with pytest.raises(SessionEnded):
            await controller.join_session(listener, ended.session_id, "fr")

        assert listener.session_id == live.session_id
        assert (await controller.session_snapshot(live.session_id))["subscriber_count"] == 1


class TestSubscriberOperations:
    """Test leave, language change and quality reports."""

    @pytest.mark.asyncio
    async def test_leave(self, controller: SessionLifecycleController, connect) -> None:
        broadcaster, _ = connect("broadcaster")
        session = await controller.create_session(broadcaster, "en")
        listener, _ = connect("listener")
        await controller.join_session(listener, session.session_id, "fr")

        assert await controller.leave_session(listener, session.session_id) is True
        assert await controller.leave_session(listener, session.session_id) is False
        assert not controller.quality.is_watching(listener.connection_id)

    @pytest.mark.asyncio
    async def test_leave_after_end_is_noop(
        self, controller: SessionLifecycleController, connect
    ) -> None:
        broadcaster, _ = connect("broadcaster")
        session = await controller.create_session(broadcaster, "en")
        listener, _ = connect("listener")
        await controller.join_session(listener, session.session_id, "fr")
        await controller.end_session(broadcaster, session.session_id)

        assert await controller.leave_session(listener, session.session_id) is False
        with pytest.raises(SessionEnded):
            await controller.join_session(listener, session.session_id, "fr")

    @pytest.mark.asyncio
    async def test_change_language_requires_membership(
        self, controller: SessionLifecycleController, connect
    ) -> None:
        broadcaster, _ = connect("broadcaster")
        session = await controller.create_session(broadcaster, "en")
        outsider, _ = connect("outsider")
        with pytest.raises(SessionNotFound):
            await controller.change_language(outsider, session.session_id, "de")

        listener, _ = connect("listener")
        await controller.join_session(listener, session.session_id, "fr")
        subscriber = await controller.change_language(listener, session.session_id, "de")
        assert subscriber.target_language == "de"

    @pytest.mark.asyncio
    async def test_client_reported_quality(
        self, controller: SessionLifecycleController, connect
    ) -> None:
        broadcaster, _ = connect("broadcaster")
        session = await controller.create_session(broadcaster, "en")
        listener, _ = connect("listener")
        await controller.join_session(listener, session.session_id, "fr")

        quality = await controller.report_quality(listener, session.session_id, 250.0)
        assert quality.tier is QualityTier.FAIR

    @pytest.mark.asyncio
    async def test_slow_connection_reported_poor(
        self, controller: SessionLifecycleController, connect
    ) -> None:
        """A subscriber whose pings take 600ms is classified poor."""
        broadcaster, _ = connect("broadcaster")
        session = await controller.create_session(broadcaster, "en")
        listener, _ = connect("listener", ping_ms=600.0)
        await controller.join_session(listener, session.session_id, "fr")

        async def tier() -> str | None:
            report = await controller.quality_report(session.session_id)
            quality = report["subscribers"][0]["quality"]
            return quality["tier"] if quality else None

        deadline = time.monotonic() + 3.0
        latest = None
        while time.monotonic() < deadline:
            latest = await tier()
            if latest is not None:
                break
            await asyncio.sleep(0.02)
        assert latest == "poor"


class TestConnectionClosed:
    """Test cleanup when a connection goes away."""

    @pytest.mark.asyncio
    async def test_subscriber_disconnect_leaves(
        self, controller: SessionLifecycleController, connect
    ) -> None:
        broadcaster, broadcaster_conn = connect("broadcaster")
        session = await controller.create_session(broadcaster, "en")
        listener, _ = connect("listener")
        await controller.join_session(listener, session.session_id, "fr")

        await controller.connection_closed(listener)
        assert (await controller.session_snapshot(session.session_id))["subscriber_count"] == 0
        await wait_for(lambda: broadcaster_conn.of_type("subscriber_left"))

    @pytest.mark.asyncio
    async def test_broadcaster_disconnect_then_reclaim(
        self, controller: SessionLifecycleController, connect
    ) -> None:
        broadcaster, _ = connect("broadcaster")
        session = await controller.create_session(broadcaster, "en")
        await controller.start_broadcast(broadcaster, session.session_id)
        listener, listener_conn = connect("listener")
        await controller.join_session(listener, session.session_id, "fr")

        await controller.connection_closed(broadcaster)
        await wait_for(lambda: listener_conn.of_type("broadcaster_disconnected"))

        replacement, _ = connect("broadcaster-2")
        reclaimed = await controller.reclaim_session(
            replacement, session.session_id, session.reclaim_token
        )
        assert reclaimed.broadcaster_connection_id == replacement.connection_id
        assert await controller.audio_chunk(replacement, session.session_id, wav_chunk_b64()) == 1
        await wait_for(lambda: listener_conn.of_type("personal_translation"))

        # The replacement's disconnect is routed to the same session
        await controller.connection_closed(replacement)
        await wait_for(lambda: len(listener_conn.of_type("broadcaster_disconnected")) == 2)


class TestSweep:
    """Test the administrative sweeper."""

    @pytest.mark.asyncio
    async def test_idle_session_ended(
        self, controller: SessionLifecycleController, connect
    ) -> None:
        broadcaster, broadcaster_conn = connect("broadcaster")
        session = await controller.create_session(broadcaster, "en")
        actor = controller.registry.get(session.session_id)
        actor.diagnostics.last_activity -= controller.config.session.idle_timeout_s + 1

        result = await controller.sweep()
        assert result == {"ended": 1, "purged": 0}
        assert session.end_reason == "idle_timeout"
        await wait_for(lambda: broadcaster_conn.of_type("session_ended"))

    @pytest.mark.asyncio
    async def test_overlong_session_ended(
        self, controller: SessionLifecycleController, connect
    ) -> None:
        broadcaster, _ = connect("broadcaster")
        session = await controller.create_session(broadcaster, "en")
        actor = controller.registry.get(session.session_id)
        actor.diagnostics.created_monotonic -= controller.config.session.max_session_duration_s

        await controller.sweep()
        assert session.end_reason == "max_duration_exceeded"

    @pytest.mark.asyncio
    async def test_ended_session_purged_after_retention(
        self, controller: SessionLifecycleController, connect
    ) -> None:
        broadcaster, _ = connect("broadcaster")
        session = await controller.create_session(broadcaster, "en")
        await controller.end_session(broadcaster, session.session_id)

        assert (await controller.sweep())["purged"] == 0
        assert session.session_id in controller.registry

        session.ended_at = time.time() - controller.config.session.ended_retention_s - 1
        assert (await controller.sweep())["purged"] == 1
        with pytest.raises(SessionNotFound):
            await controller.session_snapshot(session.session_id)


@pytest.mark.asyncio
async def test_stop_ends_live_sessions(metrics: MetricsCollector, connect) -> None:
    ctrl = SessionLifecycleController(
        RelayConfig(),
        MockTranscriptionAdapter(transcript="hello"),
        MockTranslationAdapter(),
        MockSynthesisAdapter(),
        metrics=metrics,
    )
    await ctrl.start()
    broadcaster, broadcaster_conn = connect("broadcaster")
    session = await ctrl.create_session(broadcaster, "en")

    await ctrl.stop()
    assert session.status is SessionStatus.ENDED
    assert session.end_reason == "server_shutdown"
    await wait_for(lambda: broadcaster_conn.of_type("session_ended"))
