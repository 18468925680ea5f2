"""
Tests for agent_mesh/core/counters.py
"""

import logging

from agent_mesh.core.counters import ReferenceCounters
from agent_mesh.core.errors import CounterUnderflowError


class TestReferenceCounters:
    """Tests for ReferenceCounters."""

    def test_increment_and_decrement(self):
        """Counts go up and down per key."""
        counters = ReferenceCounters()
        assert counters.increment("a") == 1
        assert counters.increment("a") == 2
        assert counters.decrement("a") == 1
        assert counters.get("b") == 0

    def test_membership_means_positive(self):
        """A key is present only while its count is positive."""
        counters = ReferenceCounters()
        counters.increment(("link", "/a", "/b"))
        assert ("link", "/a", "/b") in counters

        counters.decrement(("link", "/a", "/b"))
        assert ("link", "/a", "/b") not in counters
        assert counters.keys() == []

    def test_underflow_reported_not_negative(self, caplog):
        """Decrementing zero is recorded and logged; the count stays at zero."""
        counters = ReferenceCounters()
        with caplog.at_level(logging.ERROR):
            assert counters.decrement("x") == 0

        assert counters.get("x") == 0
        assert len(counters.underflows) == 1
        assert isinstance(counters.underflows[0], CounterUnderflowError)
        assert counters.underflows[0].key == "x"
        assert "Protocol violation" in caplog.text

    def test_keys_are_isolated(self):
        """One relationship's count never moves another's."""
        counters = ReferenceCounters()
        counters.increment(("relationship", "upstream", "/influence.1"))
        counters.increment(("relationship", "consumer", "/agent.1"))
        counters.decrement(("relationship", "consumer", "/agent.1"))

        assert counters.get(("relationship", "upstream", "/influence.1")) == 1

    def test_reset_is_silent(self):
        """Resetting a missing key is not an underflow."""
        counters = ReferenceCounters()
        counters.reset("never")
        assert counters.underflows == []
