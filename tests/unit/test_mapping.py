"""
Unit tests for mongoguard/tracking/mapping.py and changeset.py

Tests:
- Class maps from dataclass fields and registered maps
- Document serialization (None fields omitted, arrays as lists)
- Entity rebuild from stored documents
- ChangeSet rendering to a MongoDB update document
"""

import array
import sys
from pathlib import Path

import pytest

from mongoguard.common.errors import UnmappedMemberError
from mongoguard.tracking import (
    ArrayAppend,
    ChangeSet,
    UpdateOperation,
    class_map,
    element_name,
    from_document,
    to_document,
)

sys.path.insert(0, str(Path(__file__).parent.parent))
from fixtures.entities import Address, Customer, Item  # noqa: E402


class TestClassMap:
    """Tests for class_map() and element_name()."""

    def test_dataclass_fields_mapped(self):
        """Should map every field, honouring mapped_field element names."""
        members = class_map(Customer)

        assert members["id"] == "_id"
        assert members["name"] == "name"
        assert element_name(Customer, "id") == "_id"

    def test_unknown_member(self):
        with pytest.raises(UnmappedMemberError):
            element_name(Customer, "nickname")

    def test_unmapped_class(self):
        assert class_map(int) == {}


class TestToDocument:
    """Tests for to_document()."""

    def test_entity_graph(self):
        """Should serialize nested entities and omit None fields."""
        customer = Customer(
            id="A",
            name="n",
            tags=["x"],
            address=Address(city="Paris"),
            items=[Item(sku="s", qty=1)],
            scores=(1, 2),
        )

        assert to_document(customer) == {
            "_id": "A",
            "name": "n",
            "tags": ["x"],
            "address": {"city": "Paris"},
            "items": [{"sku": "s", "qty": 1}],
            "scores": [1, 2],
            "attributes": {},
        }

    @pytest.mark.parametrize(
        "value, expected",
        [
            (bytearray(b"ab"), b"ab"),
            (array.array("i", [1, 2]), [1, 2]),
            ({"a": Address(city="x")}, {"a": {"city": "x"}}),
            ("text", "text"),
            (None, None),
        ],
    )
    def test_values(self, value, expected):
        assert to_document(value) == expected


class TestFromDocument:
    """Tests for from_document()."""

    def test_rebuilds_nested_entities(self):
        """Should rebuild nested dataclasses, lists and tuples."""
        customer = from_document(Customer, {
            "_id": "A",
            "name": "n",
            "address": {"city": "Paris", "country": "FR"},
            "items": [{"sku": "s", "qty": 3}],
            "scores": [1, 2],
            "unknown": True,
        })

        assert customer.id == "A"
        assert customer.address == Address(city="Paris")
        assert customer.items == [Item(sku="s", qty=3)]
        assert customer.scores == (1, 2)
        assert customer.tags == []

    def test_none_document(self):
        assert from_document(Customer, None) is None


class TestChangeSet:
    """Tests for ChangeSet.to_update_document()."""

    def test_all_operations(self):
        """Should render each operation under its update operator."""
        changes = ChangeSet()
        changes.set("name", "n")
        changes.unset("address")
        changes.append("tags", "a")
        changes.append("tags", "b")
        changes.pop_first("items")
        changes.pop_last("history")
        changes.full_replace("scores", [1])

        assert changes.to_update_document() == {
            "$set": {"name": "n", "scores": [1]},
            "$unset": {"address": ""},
            "$push": {"tags": {"$each": ["a", "b"]}},
            "$pop": {"items": -1, "history": 1},
        }
        assert len(changes) == 7
        assert changes.paths[0] == "name"

    def test_empty(self):
        changes = ChangeSet()

        assert changes.is_empty()
        assert changes.to_update_document() == {}

    def test_operations_are_ordered_values(self):
        changes = ChangeSet()
        changes.append("tags", "a")

        assert list(changes) == [ArrayAppend("tags", "a")]

    def test_unknown_operation(self):
        changes = ChangeSet()
        changes.add(UpdateOperation("x"))

        with pytest.raises(TypeError):
            changes.to_update_document()
