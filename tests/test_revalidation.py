"""
Unit tests for background revalidation.
"""
import asyncio
import json

import pytest

from conftest import GatedProducer, StubProducer
from instant_cache import JsonCodec, RevalidationController, RevalidationError


@pytest.fixture
def changes():
    return []


@pytest.fixture
def sink_errors():
    return []


@pytest.fixture
def controller(store, changes, sink_errors):
    return RevalidationController(
        store,
        JsonCodec(),
        on_change=lambda key, value: changes.append((key, value)),
        error_sink=sink_errors.append,
    )


class TestRevalidate:
    """Tests for a single refresh."""

    @pytest.mark.asyncio
    async def test_changed_value_is_written_and_reported(self, controller, store, changes):
        """Test that a new value reaches the store and the change listener."""
        changed = await controller.revalidate("a", StubProducer("v2"), '"v1"')

        assert changed is True
        assert changes == [("a", "v2")]
        assert json.loads(await store.get("a")) == "v2"
        assert controller.revalidations == 1

    @pytest.mark.asyncio
    async def test_unchanged_value_is_still_written(self, controller, backend, changes):
        """Test that an identical result rewrites the entry without notifying."""
        changed = await controller.revalidate("a", StubProducer("v1"), '"v1"')

        assert changed is False
        assert changes == []
        assert backend.set_calls == 1

    @pytest.mark.asyncio
    async def test_unchanged_value_refreshes_timestamp(self, controller, store, clock):
        """Test that a rewrite restamps created_at."""
        await store.set("a", '"v1"', ttl_seconds=10)
        clock.advance(60)

        await controller.revalidate("a", StubProducer("v1"), '"v1"', ttl_seconds=10)

        entry = await store.get_entry("a")
        assert entry.is_fresh(clock())

    @pytest.mark.asyncio
    async def test_producer_failure_goes_to_sink(self, controller, store, sink_errors):
        """Test that failures are reported and the old value is kept."""
        await store.set("a", '"v1"')
        boom = RuntimeError("upstream down")

        changed = await controller.revalidate("a", StubProducer(error=boom), '"v1"')

        assert changed is False
        assert controller.failures == 1
        assert len(sink_errors) == 1
        assert isinstance(sink_errors[0], RevalidationError)
        assert sink_errors[0].key == "a"
        assert sink_errors[0].cause is boom
        assert await store.get("a") == '"v1"'

    @pytest.mark.asyncio
    async def test_store_write_failure_is_not_raised(self, controller, backend, changes):
        """Test that an unavailable store does not break the refresh."""
        backend.fail_set = True
        changed = await controller.revalidate("a", StubProducer("v2"), '"v1"')
        assert changed is True
        assert changes == [("a", "v2")]

    @pytest.mark.asyncio
    async def test_failing_sink_is_contained(self, store):
        """Test that an error sink that raises does not escape."""
        def bad_sink(error):
            raise RuntimeError("sink broken")

        controller = RevalidationController(store, error_sink=bad_sink)
        assert await controller.revalidate("a", StubProducer(error=ValueError("x")), None) is False


class TestSchedule:
    """Tests for detached refresh tasks."""

    @pytest.mark.asyncio
    async def test_one_refresh_per_key(self, controller):
        """Test that a second schedule() for a busy key is dropped."""
        producer = GatedProducer("v2")
        first = controller.schedule("a", producer, '"v1"')
        await producer.started.wait()

        assert controller.schedule("a", StubProducer("v3"), '"v1"') is None
        assert controller.pending == 1

        producer.release.set()
        await controller.wait_idle()
        assert first.done()
        assert controller.pending == 0

    @pytest.mark.asyncio
    async def test_refreshes_for_different_keys_run_together(self, controller):
        """Test that keys are refreshed independently."""
        controller.schedule("a", StubProducer("1"), None)
        controller.schedule("b", StubProducer("2"), None)
        await controller.wait_idle()
        assert controller.revalidations == 2

    @pytest.mark.asyncio
    async def test_escaped_listener_error_is_reported(self, store, sink_errors):
        """Test that a change listener failure reaches the sink."""
        def bad_listener(key, value):
            raise RuntimeError("listener broken")

        controller = RevalidationController(store, on_change=bad_listener, error_sink=sink_errors.append)
        controller.schedule("a", StubProducer("v2"), '"v1"')
        await controller.wait_idle()
        await asyncio.sleep(0)

        assert controller.failures == 1
        assert sink_errors[0].key == "a"

    @pytest.mark.asyncio
    async def test_cancel_all(self, controller):
        """Test that cancel_all() stops running refreshes."""
        producer = GatedProducer("v2")
        controller.schedule("a", producer, None)
        await producer.started.wait()

        assert await controller.cancel_all() == 1
        assert producer.cancelled
        assert controller.pending == 0
