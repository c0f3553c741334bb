"""
Tests for the dispatch context state machine.
"""

import pytest

from levelgate.context import BoundMethod, DispatchContext, DispatchState
from levelgate.manifest.models import Sublevel, store_method


class TestDispatchContext:
    """Tests for DispatchContext."""

    def test_happy_path(self):
        ctx = DispatchContext(description="GET /db/items/a")

        for state in (
            DispatchState.MATCHED,
            DispatchState.TRANSFORMING,
            DispatchState.INVOKING,
            DispatchState.RESPONDING,
            DispatchState.DONE,
        ):
            ctx.transition(state)

        assert ctx.finished
        assert [s for s, _ in ctx.transitions][-1] is DispatchState.DONE

    def test_invalid_transition(self):
        ctx = DispatchContext()

        with pytest.raises(RuntimeError, match="received -> invoking"):
            ctx.transition(DispatchState.INVOKING)

    def test_fail_from_any_state(self):
        ctx = DispatchContext()
        ctx.transition(DispatchState.MATCHED)

        ctx.fail(ValueError("bad"))

        assert ctx.state is DispatchState.FAILED
        assert ctx.error == "ValueError: bad"

    def test_terminal_states_are_final(self):
        ctx = DispatchContext()
        ctx.fail(ValueError("bad"))

        with pytest.raises(RuntimeError, match="already failed"):
            ctx.transition(DispatchState.MATCHED)

    def test_describe(self):
        ctx = DispatchContext(protocol="rpc", description="CALL /db#get")
        ctx.sublevel_path = ("db",)
        ctx.transition(DispatchState.MATCHED)

        described = ctx.describe()

        assert described["protocol"] == "rpc"
        assert described["sublevel"] == "/db"
        assert described["state"] == "matched"
        assert described["transitions"][0][0] == "matched"


class TestBoundMethod:
    """Tests for BoundMethod."""

    def test_exposes_sublevel_store(self, store):
        sublevel = Sublevel(name="items", path=("items",), store=store.sublevel("items"))

        bound = BoundMethod(store_method("get"), sublevel)

        assert bound.name == "get"
        assert bound.path == ("items",)
        assert bound.store is sublevel.store
        assert bound.path_args == ()
