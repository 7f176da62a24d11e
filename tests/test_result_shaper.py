"""Tests for the result shaper."""

from datetime import datetime, timezone
from enum import Enum

import pytest

from brandgraph.core.identity_model import Brand, Customer, SessionState
from brandgraph.core.result_shaper import to_plain


class FakeTemporal:
    """Stands in for neo4j.time.DateTime"""

    def iso_format(self):
        return "2026-01-01T00:00:00.000000000+00:00"


class FakeNode:
    """Mapping-like wrapper with driver metadata, like neo4j.graph.Node"""

    element_id = "4:abc:1"
    labels = frozenset({"Session"})

    def __init__(self, properties):
        self._properties = properties

    def items(self):
        return self._properties.items()


class TestToPlain:

    def test_plain_values_pass_through(self):
        value = {"a": [1, "x", None, True], "b": {"c": 2.5}}

        assert to_plain(value) == value

    def test_input_is_not_mutated(self):
        value = {"brand": Brand("brand-a", "Brand A", "brand-a")}

        to_plain(value)

        assert isinstance(value["brand"], Brand)

    def test_entities(self):
        result = to_plain({"customer": Customer("1", "a@example.com"), "status": SessionState.LINKED})

        assert result["customer"]["email"] == "a@example.com"
        assert result["customer"]["internalSessionId"] is None
        assert result["status"] == "linked"

    def test_driver_wrappers_lose_metadata(self):
        node = FakeNode({"internalSessionId": "web-1", "lastSeenAt": FakeTemporal()})

        assert to_plain([node]) == [{"internalSessionId": "web-1", "lastSeenAt": "2026-01-01T00:00:00.000000000+00:00"}]

    def test_datetimes_and_tuples(self):
        moment = datetime(2026, 1, 1, tzinfo=timezone.utc)

        assert to_plain((moment,)) == ["2026-01-01T00:00:00+00:00"]

    def test_unknown_type(self):
        with pytest.raises(TypeError):
            to_plain(object())

    def test_plain_enum(self):
        class Color(Enum):
            RED = 1

        assert to_plain(Color.RED) == 1
