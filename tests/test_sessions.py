"""
Unit tests for cancellation tokens and load sessions.
"""
import asyncio

import pytest

from conftest import GatedProducer, StubProducer
from instant_cache import CancellationError, CancellationToken, SessionRegistry


class TestCancellationToken:
    """Tests for CancellationToken."""

    def test_cancel_runs_callbacks_once(self):
        """Test that callbacks fire exactly once."""
        token = CancellationToken()
        calls = []
        token.add_callback(lambda: calls.append(1))

        token.cancel()
        token.cancel()

        assert token.cancelled
        assert calls == [1]

    def test_callback_on_cancelled_token_runs_immediately(self):
        """Test late registration."""
        token = CancellationToken()
        token.cancel()
        calls = []
        token.add_callback(lambda: calls.append(1))
        assert calls == [1]

    def test_remove_callback(self):
        """Test that an unregistered callback does not fire."""
        token = CancellationToken()
        calls = []
        remove = token.add_callback(lambda: calls.append(1))
        remove()
        token.cancel()
        assert calls == []

    def test_failing_callback_does_not_stop_others(self):
        """Test callback isolation."""
        token = CancellationToken()
        calls = []

        def broken():
            raise RuntimeError("boom")

        token.add_callback(broken)
        token.add_callback(lambda: calls.append(1))
        token.cancel()
        assert calls == [1]

    def test_link_to_parent(self):
        """Test that cancelling a parent cancels the child."""
        parent = CancellationToken()
        child = CancellationToken()
        child.link(parent)

        parent.cancel()

        assert child.cancelled

    def test_unlink(self):
        """Test that an unlinked child is left alone."""
        parent = CancellationToken()
        child = CancellationToken()
        unlink = child.link(parent)
        unlink()

        parent.cancel()

        assert not child.cancelled

    def test_raise_if_cancelled(self):
        """Test the explicit cancellation check."""
        token = CancellationToken()
        token.raise_if_cancelled("a")

        token.cancel()
        with pytest.raises(CancellationError) as exc_info:
            token.raise_if_cancelled("a")
        assert exc_info.value.key == "a"


class TestSessionRegistry:
    """Tests for SessionRegistry."""

    @pytest.mark.asyncio
    async def test_new_session_supersedes_old(self):
        """Test last-caller-wins for a key."""
        registry = SessionRegistry()
        first = registry.start("a")
        second = registry.start("a")

        assert first.cancelled
        assert not registry.is_current(first)
        assert registry.is_current(second)
        assert second.sequence > first.sequence

    @pytest.mark.asyncio
    async def test_keys_are_independent(self):
        """Test that sessions for different keys coexist."""
        registry = SessionRegistry()
        a = registry.start("a")
        b = registry.start("b")

        assert registry.is_current(a)
        assert registry.is_current(b)
        assert registry.active_sessions == 2

    @pytest.mark.asyncio
    async def test_run_returns_producer_value(self):
        """Test the happy path."""
        registry = SessionRegistry()
        session = registry.start("a")
        assert await registry.run(session, StubProducer("v1")) == "v1"

    @pytest.mark.asyncio
    async def test_superseding_aborts_running_producer(self):
        """Test that start() cancels the older producer task."""
        registry = SessionRegistry()
        session = registry.start("a")
        producer = GatedProducer("v1")
        run = asyncio.create_task(registry.run(session, producer))
        await producer.started.wait()

        registry.start("a")

        with pytest.raises(asyncio.CancelledError):
            await run
        assert producer.cancelled

    @pytest.mark.asyncio
    async def test_run_on_cancelled_session(self):
        """Test that a cancelled session never starts its producer."""
        registry = SessionRegistry()
        session = registry.start("a")
        registry.cancel("a")
        producer = StubProducer("v1")

        with pytest.raises(CancellationError):
            await registry.run(session, producer)
        assert producer.calls == 0

    @pytest.mark.asyncio
    async def test_finish_keeps_newer_session(self):
        """Test that finishing a stale session does not evict the current one."""
        registry = SessionRegistry()
        first = registry.start("a")
        second = registry.start("a")

        registry.finish(first)
        assert registry.is_current(second)
        assert registry.has_session("a")

        registry.finish(second)
        assert registry.active_sessions == 0
        assert not registry.has_session("a")

    @pytest.mark.asyncio
    async def test_parent_token_cancels_session(self):
        """Test that a caller token propagates into the session."""
        registry = SessionRegistry()
        parent = CancellationToken()
        session = registry.start("a", parent=parent)

        parent.cancel()

        assert session.cancelled

    @pytest.mark.asyncio
    async def test_finish_unlinks_parent(self):
        """Test that a finished session no longer listens to the caller token."""
        registry = SessionRegistry()
        parent = CancellationToken()
        session = registry.start("a", parent=parent)
        registry.finish(session)

        parent.cancel()

        assert not session.cancelled

    @pytest.mark.asyncio
    async def test_cancel_all(self):
        """Test bulk cancellation."""
        registry = SessionRegistry()
        sessions = [registry.start(key) for key in ("a", "b", "c")]

        assert registry.cancel_all() == 3
        assert all(s.cancelled for s in sessions)
        assert registry.get_stats() == {"active_sessions": 0, "active_keys": []}
