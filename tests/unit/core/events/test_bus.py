"""Tests for Eventbus registration, dispatch and listener tracking."""

from __future__ import annotations

import asyncio
import re
from unittest.mock import MagicMock

import pytest

from plugbus.core.events.bus import Eventbus
from plugbus.core.events.proxy import EventbusProxy


def _return(value):
    return lambda *args, **kwargs: value


# ============================================================================
# REGISTRATION TESTS
# ============================================================================


class TestEventbusCreation:
    """Tests for Eventbus construction."""

    def test_default_name_is_empty(self):
        """Test that the default name is an empty string."""
        assert Eventbus().name == ""

    def test_name_is_kept(self):
        """Test that the given name is exposed."""
        assert Eventbus("main").name == "main"

    def test_non_string_name_raises(self):
        """Test that a non-string name is rejected."""
        with pytest.raises(TypeError):
            Eventbus(42)

    def test_new_bus_is_empty(self, bus):
        """Test that a fresh bus has no registrations."""
        assert bus.event_count == 0
        assert bus.callback_count == 0
        assert list(bus.keys()) == []


class TestEventbusOnOff:
    """Tests for on() and off()."""

    def test_on_then_off_restores_counts(self, bus):
        """Test that on(n, f) followed by off(n, f) leaves the counts unchanged."""
        bus.on("existing", _return(1))
        before = (bus.event_count, bus.callback_count)

        callback = _return(2)
        bus.on("added", callback)
        bus.off("added", callback)

        assert (bus.event_count, bus.callback_count) == before

    def test_on_returns_bus_for_chaining(self, bus):
        """Test that on() returns the eventbus."""
        assert bus.on("a", _return(1)) is bus

    def test_multi_name_registers_each_name(self, bus):
        """Test that space separated names register every name."""
        bus.on("a b  c", _return(1))
        assert bus.event_count == 3
        assert sorted(bus.keys()) == ["a", "b", "c"]

    def test_mapping_registers_each_entry(self, bus):
        """Test that a name -> callback mapping registers each pair."""
        context = object()
        bus.on({"a": _return(1), "b": _return(2)}, context)

        assert bus.trigger_sync("a b") == [1, 2]
        assert {entry[2] for entry in bus.entries()} == {context}

    def test_off_by_context_only(self, bus):
        """Test that off(context=ctx) removes only that context's registrations."""
        context = object()
        keep = _return("keep")
        bus.on("a", _return("drop"), context)
        bus.on("a", keep)

        bus.off(context=context)

        assert bus.callback_count == 1
        assert bus.trigger_sync("a") == "keep"

    def test_off_by_name_removes_all_callbacks(self, bus):
        """Test that off(name) removes every callback for that name."""
        bus.on("a", _return(1))
        bus.on("a", _return(2))
        bus.on("b", _return(3))

        bus.off("a")

        assert list(bus.keys()) == ["b"]

    def test_off_without_arguments_clears_bus(self, bus):
        """Test that off() removes every registration."""
        bus.on("a b", _return(1))
        bus.off()
        assert bus.event_count == 0
        assert bus.callback_count == 0

    def test_off_on_empty_bus_is_noop(self, bus):
        """Test that off() on an empty bus does not fail."""
        assert bus.off("missing") is bus

    def test_non_dict_options_raise(self, bus):
        """Test that options must be a dict."""
        with pytest.raises(TypeError):
            bus.on("a", _return(1), None, ["guard"])


class TestEventbusGuard:
    """Tests for guarded registrations."""

    def test_guard_rejects_further_on(self, bus):
        """Test that a guarded name rejects new registrations."""
        bus.on("locked", _return(1), None, {"guard": True})
        bus.on("locked", _return(2))
        bus.once("locked", _return(3))

        assert bus.callback_count == 1
        assert bus.trigger_sync("locked") == 1

    def test_guard_removed_allows_registration(self, bus):
        """Test that removing the guarded callback unlocks the name."""
        guarded = _return(1)
        bus.on("locked", guarded, None, {"guard": True})
        bus.off("locked", guarded)

        bus.on("locked", _return(2))
        assert bus.trigger_sync("locked") == 2

    def test_is_guarded_reports_names(self, bus):
        """Test that is_guarded fills in the guarded names."""
        bus.on("a", _return(1), None, {"guard": True})
        bus.on("b", _return(2))

        data = {}
        assert bus.is_guarded("a b", data) is True
        assert data == {"names": ["a"], "guarded": True}
        assert bus.is_guarded("b") is False

    def test_guard_rejects_whole_multi_name_call(self, bus):
        """Test that a multi-name call touching a guarded name registers nothing."""
        bus.on("a", _return(1), None, {"guard": True})
        bus.on("a b", _return(2))
        assert list(bus.keys()) == ["a"]


class TestEventbusOptions:
    """Tests for registration options and introspection."""

    def test_entries_yield_copies_of_options(self, bus):
        """Test that entries() yields (name, callback, context, options)."""
        callback = _return(1)
        context = object()
        bus.on("a", callback, context, {"type": "sync"})

        entries = list(bus.entries())
        assert entries == [("a", callback, context, {"guard": False, "type": "sync"})]

        entries[0][3]["guard"] = True
        assert bus.get_options("a")["guard"] is False

    def test_coroutine_function_type_is_async(self, bus):
        """Test that coroutine functions are typed async."""

        async def handler():
            return 1

        bus.on("a", handler, None, {"type": "sync"})
        assert bus.get_type("a") == "async"

    def test_unknown_type_hint_is_ignored(self, bus):
        """Test that an invalid type hint becomes None."""
        bus.on("a", _return(1), None, {"type": "threaded"})
        assert bus.get_options("a") == {"guard": False, "type": None}

    def test_get_options_aggregates_strongest(self, bus):
        """Test that get_options reports the strongest type and any guard."""
        bus.on("a", _return(1), None, {"type": "sync"})
        bus.on("a", _return(2), None, {"type": "async"})
        assert bus.get_options("a") == {"guard": False, "type": "async"}

    def test_keys_with_regex(self, bus):
        """Test that keys() filters by a compiled pattern."""
        bus.on("plugins:add plugins:remove other", _return(1))
        assert sorted(bus.keys(re.compile(r"^plugins:"))) == ["plugins:add", "plugins:remove"]

    def test_keys_are_restartable(self, bus):
        """Test that each call returns a new generator."""
        bus.on("a b", _return(1))
        assert list(bus.keys()) == list(bus.keys())

    def test_non_pattern_regex_raises_immediately(self, bus):
        """Test that a string regex is rejected before iteration."""
        with pytest.raises(TypeError):
            bus.entries("^a")
        with pytest.raises(TypeError):
            bus.keys("^a")

    def test_keys_with_options(self, bus):
        """Test that keys_with_options pairs names with their options."""
        bus.on("a", _return(1), None, {"guard": True})
        assert list(bus.keys_with_options()) == [("a", {"guard": True, "type": None})]


# ============================================================================
# ONCE / BEFORE TESTS
# ============================================================================


class TestEventbusOnce:
    """Tests for once() and before()."""

    def test_once_fires_a_single_time(self, bus):
        """Test that a once callback is removed after firing."""
        callback = MagicMock(return_value="done")
        bus.once("a", callback)

        assert bus.trigger_sync("a") == "done"
        assert bus.trigger_sync("a") is None
        assert callback.call_count == 1
        assert bus.callback_count == 0

    def test_once_can_be_removed_by_original_callback(self, bus):
        """Test that off() matches the wrapped callback."""
        callback = MagicMock()
        bus.once("a", callback)
        bus.off("a", callback)

        bus.trigger("a")
        callback.assert_not_called()
        assert bus.callback_count == 0

    def test_before_fires_count_times(self, bus):
        """Test that before(n) fires n times."""
        callback = MagicMock(return_value=1)
        bus.before(2, "a", callback)

        for _ in range(4):
            bus.trigger("a")

        assert callback.call_count == 2
        assert bus.callback_count == 0

    def test_before_requires_integer_count(self, bus):
        """Test that before() validates the count."""
        with pytest.raises(TypeError):
            bus.before("2", "a", _return(1))
        with pytest.raises(TypeError):
            bus.before(True, "a", _return(1))

    def test_once_with_mapping(self, bus):
        """Test that once() accepts a name -> callback mapping."""
        first = MagicMock(return_value=1)
        second = MagicMock(return_value=2)
        bus.once({"a": first, "b": second})

        assert bus.trigger_sync("a b") == [1, 2]
        assert bus.trigger_sync("a b") is None


# ============================================================================
# DISPATCH TESTS
# ============================================================================


class TestEventbusTriggerSync:
    """Tests for trigger_sync() aggregation."""

    def test_ping_pong(self):
        """Test the basic request / response scenario."""
        bus = Eventbus()
        bus.on("ping", lambda: "pong")
        assert bus.trigger_sync("ping") == "pong"

    def test_no_results_is_none(self, bus):
        """Test that callbacks returning None aggregate to None."""
        bus.on("a", _return(None))
        bus.on("a", _return(None))
        assert bus.trigger_sync("a") is None

    def test_single_result_is_bare(self, bus):
        """Test that a single result is returned bare."""
        bus.on("a", _return(1))
        assert bus.trigger_sync("a") == 1

    def test_many_results_is_list(self, bus):
        """Test that several results are returned as a list."""
        bus.on("a", _return(1))
        bus.on("a", _return(2))
        assert bus.trigger_sync("a") == [1, 2]

    def test_unregistered_name_is_none(self, bus):
        """Test that an unknown event aggregates to None."""
        bus.on("a", _return(1))
        assert bus.trigger_sync("b") is None

    def test_arguments_are_forwarded(self, bus):
        """Test that positional and keyword arguments reach the callback."""
        bus.on("add", lambda a, b=0: a + b)
        assert bus.trigger_sync("add", 1, b=2) == 3

    def test_multi_name_concatenates_per_name_lists(self, bus):
        """Test that per-name results are collapsed before being merged."""
        bus.on("a", _return(1))
        bus.on("a", _return(2))
        bus.on("b", _return(3))
        assert bus.trigger_sync("a b") == [1, 2, 3]

    def test_all_channel_receives_event_name(self, bus):
        """Test that `all` callbacks receive the name first."""
        seen = []
        bus.on("all", lambda name, *args: seen.append((name, args)))

        bus.trigger("x", 1, 2)

        assert seen == [("x", (1, 2))]

    def test_all_channel_results_follow_name_results(self, bus):
        """Test that `all` results are combined after the name's results."""
        bus.on("x", _return("named"))
        bus.on("all", _return("all"))
        assert bus.trigger_sync("x") == ["named", "all"]

    def test_callback_registered_during_dispatch_waits(self, bus):
        """Test that a callback added during dispatch is not called in that dispatch."""
        late = MagicMock(return_value="late")
        bus.on("a", lambda: bus.on("a", late) and None)

        assert bus.trigger_sync("a") is None
        late.assert_not_called()
        assert bus.trigger_sync("a") == "late"

    def test_exception_propagates(self, bus):
        """Test that a callback error reaches the caller."""

        def fail():
            raise ValueError("boom")

        bus.on("a", fail)
        with pytest.raises(ValueError, match="boom"):
            bus.trigger_sync("a")


class TestEventbusTriggerAsync:
    """Tests for trigger_async()."""

    @pytest.mark.asyncio
    async def test_same_shape_as_sync_for_sync_callbacks(self, bus):
        """Test that synchronous callbacks aggregate like trigger_sync."""
        bus.on("none", _return(None))
        bus.on("one", _return(1))
        bus.on("many", _return(1))
        bus.on("many", _return(2))

        for name in ("none", "one", "many", "one many"):
            assert await bus.trigger_async(name) == bus.trigger_sync(name)

    @pytest.mark.asyncio
    async def test_awaits_coroutine_results(self, bus):
        """Test that coroutine callbacks are awaited and aggregated."""

        async def first():
            await asyncio.sleep(0)
            return 1

        async def second():
            return 2

        bus.on("a", first)
        bus.on("a", second)
        assert await bus.trigger_async("a") == [1, 2]

    @pytest.mark.asyncio
    async def test_drops_none_after_await(self, bus):
        """Test that awaited None values are dropped."""

        async def nothing():
            return None

        async def value():
            return "v"

        bus.on("a", nothing)
        bus.on("a", value)
        assert await bus.trigger_async("a") == "v"

    @pytest.mark.asyncio
    async def test_callbacks_called_in_order_before_await(self, bus):
        """Test that every callback starts before any is awaited."""
        order = []

        def slow():
            order.append("slow:called")

            async def finish():
                await asyncio.sleep(0.01)
                order.append("slow:done")

            return finish()

        def fast():
            order.append("fast")

        bus.on("a", slow)
        bus.on("a", fast)
        await bus.trigger_async("a")

        assert order == ["slow:called", "fast", "slow:done"]

    @pytest.mark.asyncio
    async def test_empty_bus_returns_none(self, bus):
        """Test that an empty bus resolves to None."""
        assert await bus.trigger_async("a") is None


class TestEventbusTriggerScheduling:
    """Tests for trigger() and trigger_defer()."""

    @pytest.mark.asyncio
    async def test_trigger_schedules_async_callbacks(self, bus):
        """Test that trigger() runs coroutine callbacks as tasks."""
        called = []

        async def handler(value):
            called.append(value)

        bus.on("a", handler)
        bus.trigger("a", 1)
        assert called == []

        await asyncio.sleep(0)
        assert called == [1]

    def test_trigger_without_loop_discards_coroutines(self, bus):
        """Test that trigger() outside a loop does not fail on async callbacks."""

        async def handler():
            return 1

        bus.on("a", handler)
        assert bus.trigger("a") is bus

    @pytest.mark.asyncio
    async def test_trigger_defer_runs_on_next_iteration(self, bus):
        """Test that trigger_defer() returns before callbacks run."""
        callback = MagicMock()
        bus.on("a", callback)

        bus.trigger_defer("a", "x")
        callback.assert_not_called()

        await asyncio.sleep(0)
        callback.assert_called_once_with("x")

    def test_trigger_defer_requires_running_loop(self, bus):
        """Test that trigger_defer() outside an event loop raises."""
        callback = MagicMock()
        bus.on("a", callback)

        with pytest.raises(RuntimeError):
            bus.trigger_defer("a")
        callback.assert_not_called()


# ============================================================================
# LISTEN TO TESTS
# ============================================================================


class TestEventbusListenTo:
    """Tests for listen_to() and stop_listening()."""

    def test_listen_to_registers_on_target(self, bus):
        """Test that listen_to registers on the other eventbus."""
        listener = Eventbus("listener")
        listener.listen_to(bus, "a", _return("heard"))

        assert bus.trigger_sync("a") == "heard"
        assert listener.callback_count == 0

    def test_stop_listening_removes_everything(self, bus):
        """Test that stop_listening() with no arguments removes all registrations."""
        listener = Eventbus("listener")
        other = Eventbus("other")
        listener.listen_to(bus, "a b", _return(1))
        listener.listen_to(other, "c", _return(2))

        listener.stop_listening()

        assert bus.callback_count == 0
        assert other.callback_count == 0

    def test_stop_listening_one_target(self, bus):
        """Test that stop_listening(obj) only affects that target."""
        listener = Eventbus("listener")
        other = Eventbus("other")
        listener.listen_to(bus, "a", _return(1))
        listener.listen_to(other, "a", _return(2))

        listener.stop_listening(other)

        assert bus.trigger_sync("a") == 1
        assert other.trigger_sync("a") is None

    def test_stop_listening_keeps_direct_registrations(self, bus):
        """Test that registrations made directly on the target survive."""
        listener = Eventbus("listener")
        bus.on("a", _return("direct"))
        listener.listen_to(bus, "a", _return("listened"))

        listener.stop_listening(bus)

        assert bus.trigger_sync("a") == "direct"

    def test_listen_again_after_stop(self, bus):
        """Test that bookkeeping is cleaned up so listening can restart."""
        listener = Eventbus("listener")
        listener.listen_to(bus, "a", _return(1))
        listener.stop_listening(bus)
        listener.listen_to(bus, "a", _return(2))

        assert bus.trigger_sync("a") == 2
        listener.stop_listening()
        assert bus.callback_count == 0

    def test_listen_to_guarded_target_is_noop(self, bus):
        """Test that listen_to respects the target's guards."""
        bus.on("a", _return("guarded"), None, {"guard": True})
        Eventbus("listener").listen_to(bus, "a", _return("other"))
        assert bus.callback_count == 1

    def test_listen_to_none_is_noop(self):
        """Test that a None target is ignored."""
        listener = Eventbus("listener")
        assert listener.listen_to(None, "a", _return(1)) is listener

    def test_listen_to_foreign_object(self, bus):
        """Test that objects with on/off are tracked by mirroring."""
        proxy = EventbusProxy(bus)
        listener = Eventbus("listener")
        listener.listen_to(proxy, "a", _return("via proxy"))

        assert bus.trigger_sync("a") == "via proxy"

        listener.stop_listening(proxy)
        assert bus.callback_count == 0

    def test_listen_to_once(self, bus):
        """Test that listen_to_once fires once and unsubscribes."""
        callback = MagicMock(return_value=1)
        listener = Eventbus("listener")
        listener.listen_to_once(bus, "a", callback)

        bus.trigger("a")
        bus.trigger("a")

        assert callback.call_count == 1
        assert bus.callback_count == 0

    def test_listen_to_before(self, bus):
        """Test that listen_to_before fires count times."""
        callback = MagicMock(return_value=1)
        listener = Eventbus("listener")
        listener.listen_to_before(3, bus, "a", callback)

        for _ in range(5):
            bus.trigger("a")

        assert callback.call_count == 3
        assert bus.callback_count == 0
