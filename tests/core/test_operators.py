"""Tests for ``anybase.core.operators``: the neutral filter/update vocabulary."""

from __future__ import annotations

import pytest

from anybase.core.errors import UnsupportedOperationError
from anybase.core.operators import (
    is_operator_doc,
    normalize_update,
    push_values,
    split_path,
    validate_filter,
)


class TestHelpers:
    def test_split_path(self):
        assert split_path("address.city") == ["address", "city"]
        assert split_path("name") == ["name"]

    def test_is_operator_doc(self):
        assert is_operator_doc({"$gt": 1, "$lt": 5})
        assert not is_operator_doc({"city": "Paris"})
        assert not is_operator_doc({})
        assert not is_operator_doc("x")

    def test_push_values(self):
        assert push_values("a") == ["a"]
        assert push_values({"$each": ["a", "b"]}) == ["a", "b"]
        assert push_values({"k": 1}) == [{"k": 1}]


class TestValidateFilter:
    def test_none_is_empty(self):
        assert validate_filter(None) == {}

    @pytest.mark.parametrize(
        "filter",
        [
            {"name": "widget"},
            {"price": {"$gt": 5, "$lte": 10}},
            {"tags": {"$in": ["a", "b"]}, "deleted": {"$exists": False}},
            {"name": {"$regex": "^wid", "$options": "i"}},
            {"price": {"$not": {"$gt": 5}}},
            {"$or": [{"a": 1}, {"b": {"$ne": 2}}]},
            {"$and": [{"a": 1}, {"$or": [{"b": 2}, {"c": 3}]}]},
            {"address": {"city": "Paris"}},
            {"address.city": "Paris"},
        ],
    )
    def test_accepts_vocabulary(self, filter):
        assert validate_filter(filter) == filter

    def test_unknown_operator(self):
        with pytest.raises(UnsupportedOperationError) as exc_info:
            validate_filter({"loc": {"$near": [0, 0]}})
        assert exc_info.value.operator == "$near"

    def test_unknown_top_level_operator(self):
        with pytest.raises(UnsupportedOperationError, match=r"\$where"):
            validate_filter({"$where": "this.a > 1"})

    def test_top_level_not_rejected(self):
        with pytest.raises(UnsupportedOperationError, match="field level"):
            validate_filter({"$not": {"a": 1}})

    def test_logical_requires_non_empty_list(self):
        with pytest.raises(UnsupportedOperationError):
            validate_filter({"$or": []})
        with pytest.raises(UnsupportedOperationError):
            validate_filter({"$and": {"a": 1}})

    def test_nested_clause_is_validated(self):
        with pytest.raises(UnsupportedOperationError):
            validate_filter({"$or": [{"a": {"$elemMatch": {"b": 1}}}]})

    def test_mixing_operators_and_fields(self):
        with pytest.raises(UnsupportedOperationError, match="mix"):
            validate_filter({"a": {"$gt": 1, "b": 2}})

    def test_in_requires_list(self):
        with pytest.raises(UnsupportedOperationError):
            validate_filter({"a": {"$in": "x"}})

    def test_regex_options_only_case_insensitive(self):
        with pytest.raises(UnsupportedOperationError, match="options"):
            validate_filter({"a": {"$regex": "x", "$options": "m"}})

    def test_options_requires_regex(self):
        with pytest.raises(UnsupportedOperationError):
            validate_filter({"a": {"$options": "i"}})

    def test_not_requires_operator_document(self):
        with pytest.raises(UnsupportedOperationError):
            validate_filter({"a": {"$not": 5}})

    def test_invalid_field_path(self):
        with pytest.raises(UnsupportedOperationError):
            validate_filter({"a..b": 1})


class TestNormalizeUpdate:
    def test_plain_document_is_set(self):
        assert normalize_update({"price": 10}) == {"$set": {"price": 10}}

    def test_operator_form_passes_through(self):
        update = {"$set": {"a": 1}, "$inc": {"n": 2}, "$unset": {"old": ""}}
        assert normalize_update(update) == update

    def test_push_each(self):
        assert normalize_update({"$push": {"tags": {"$each": ["a", "b"]}}}) == {
            "$push": {"tags": {"$each": ["a", "b"]}}
        }

    def test_empty_update_rejected(self):
        with pytest.raises(UnsupportedOperationError):
            normalize_update({})

    def test_unknown_update_operator(self):
        with pytest.raises(UnsupportedOperationError) as exc_info:
            normalize_update({"$rename": {"a": "b"}})
        assert exc_info.value.operator == "$rename"

    def test_mixing_operators_and_fields(self):
        with pytest.raises(UnsupportedOperationError):
            normalize_update({"$set": {"a": 1}, "b": 2})

    @pytest.mark.parametrize("field", ["_id", "_version", "_created_at", "_updated_by", "_deleted_at"])
    def test_system_fields_are_read_only(self, field):
        with pytest.raises(UnsupportedOperationError, match="system field"):
            normalize_update({"$set": {field: 1}})

    def test_plain_document_with_system_field(self):
        with pytest.raises(UnsupportedOperationError):
            normalize_update({"name": "x", "_version": 7})

    def test_inc_requires_number(self):
        with pytest.raises(UnsupportedOperationError):
            normalize_update({"$inc": {"n": "1"}})
        with pytest.raises(UnsupportedOperationError):
            normalize_update({"$inc": {"n": True}})

    def test_push_modifiers_other_than_each(self):
        with pytest.raises(UnsupportedOperationError, match=r"\$each"):
            normalize_update({"$push": {"tags": {"$each": ["a"], "$slice": 3}}})

    def test_pull_condition_rejected(self):
        with pytest.raises(UnsupportedOperationError):
            normalize_update({"$pull": {"scores": {"$gt": 5}}})

    def test_conflicting_paths(self):
        with pytest.raises(UnsupportedOperationError, match="conflict"):
            normalize_update({"$set": {"a": 1}, "$inc": {"a": 1}})
        with pytest.raises(UnsupportedOperationError, match="conflict"):
            normalize_update({"$set": {"a": {"b": 1}, "a.b": 2}})

    def test_sibling_paths_do_not_conflict(self):
        assert normalize_update({"$set": {"a.b": 1, "a.c": 2}})

    def test_array_positions_rejected(self):
        with pytest.raises(UnsupportedOperationError, match="array positions"):
            normalize_update({"$set": {"items.0.qty": 2}})
        with pytest.raises(UnsupportedOperationError, match="array positions"):
            normalize_update({"$unset": {"tags.1": ""}})

    def test_numeric_filter_paths_still_allowed(self):
        assert validate_filter({"items.0.sku": "A"}) == {"items.0.sku": "A"}
