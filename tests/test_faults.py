"""Tests for the fault mode resolver."""

import pytest

from faultinjector.core.errors import UnrecognizedCommand
from faultinjector.core.faults import (
    FAULT_MODES,
    BodyChoice,
    ConnectionAction,
    DeliveryPlan,
    get_fault_mode,
    resolve,
)


class TestFaultModes:
    def test_vocabulary(self):
        assert [m.token for m in FAULT_MODES] == ["f", "p", "pc", "pa", "n", "nc", "na"]

    def test_table(self):
        table = {m.token: (m.body, m.action) for m in FAULT_MODES}
        assert table == {
            "f": (BodyChoice.FULL, ConnectionAction.COMPLETE),
            "p": (BodyChoice.PARTIAL, ConnectionAction.WAIT),
            "pc": (BodyChoice.PARTIAL, ConnectionAction.CLOSE),
            "pa": (BodyChoice.PARTIAL, ConnectionAction.ABORT),
            "n": (BodyChoice.NONE, ConnectionAction.WAIT),
            "nc": (BodyChoice.NONE, ConnectionAction.CLOSE),
            "na": (BodyChoice.NONE, ConnectionAction.ABORT),
        }

    def test_descriptions_mention_tcp_signal(self):
        assert "FIN" in get_fault_mode("pc").description
        assert "RST" in get_fault_mode("na").description
        assert "indefinitely" in get_fault_mode("p").description


class TestResolve:
    def test_full(self):
        plan = resolve("f", 100)
        assert plan == DeliveryPlan("f", BodyChoice.FULL, 100, ConnectionAction.COMPLETE)
        assert not plan.is_truncated

    @pytest.mark.parametrize("token,action", [
        ("p", ConnectionAction.WAIT),
        ("pc", ConnectionAction.CLOSE),
        ("pa", ConnectionAction.ABORT),
    ])
    def test_partial_is_half_floored(self, token, action):
        plan = resolve(token, 101)
        assert plan.body is BodyChoice.PARTIAL
        assert plan.byte_count == 50
        assert plan.action is action
        assert plan.is_truncated

    @pytest.mark.parametrize("token,action", [
        ("n", ConnectionAction.WAIT),
        ("nc", ConnectionAction.CLOSE),
        ("na", ConnectionAction.ABORT),
    ])
    def test_none(self, token, action):
        plan = resolve(token, 4096)
        assert plan.body is BodyChoice.NONE
        assert plan.byte_count == 0
        assert plan.action is action

    def test_partial_of_empty_body_is_none(self):
        plan = resolve("pc", 0)
        assert plan.body is BodyChoice.NONE
        assert plan.byte_count == 0
        assert plan.action is ConnectionAction.CLOSE

    def test_partial_of_one_byte_sends_nothing(self):
        plan = resolve("p", 1)
        assert plan.byte_count == 0

    def test_full_of_empty_body(self):
        plan = resolve("f", 0)
        assert plan.body is BodyChoice.FULL
        assert plan.byte_count == 0

    def test_end_to_end_example(self):
        # "OK" body, operator picks p
        plan = resolve("p", 2)
        assert plan.byte_count == 1
        assert plan.action is ConnectionAction.WAIT

    @pytest.mark.parametrize("token", ["", "F", "P", "x", "a", "pn", " f", "f ", "full"])
    def test_unrecognized(self, token):
        with pytest.raises(UnrecognizedCommand) as exc:
            resolve(token, 10)
        assert exc.value.token == token
        assert "Invalid selection" in str(exc.value)

    def test_describe(self):
        text = resolve("pa", 10).describe()
        assert "pa" in text
        assert "5 bytes" in text
        assert "abort" in text
