"""Tests for FilterSpec matching and caller scope merging."""

import pytest
from openmemory_mcp.errors import ScopeViolation
from openmemory_mcp.models.scope import FilterSpec, matches, merge_caller_scope
from pydantic import ValidationError


class TestFilterSpecConstruction:
    def test_from_mapping_and_keywords(self):
        spec = FilterSpec.of({"user_id": "alice"}, agent_id="planner")
        assert spec.as_dict() == {"agent_id": "planner", "user_id": "alice"}
        assert len(spec) == 2
        assert "user_id" in spec
        assert spec["agent_id"] == "planner"

    def test_dimensions_are_sorted_so_equal_specs_compare_equal(self):
        a = FilterSpec.of({"user_id": "alice", "app_id": "cursor"})
        b = FilterSpec.of({"app_id": "cursor", "user_id": "alice"})
        assert a == b
        assert hash(a) == hash(b)

    def test_empty(self):
        assert FilterSpec.of().is_empty()
        assert FilterSpec.model_validate(None).is_empty()

    def test_numbers_are_stringified(self):
        assert FilterSpec.of(run_id=7)["run_id"] == "7"

    @pytest.mark.parametrize("name", ["User", "1abc", "has-dash", "", "x" * 33])
    def test_rejects_bad_dimension_names(self, name):
        with pytest.raises(ValidationError):
            FilterSpec.of({name: "v"})

    @pytest.mark.parametrize("value", ["", "   ", None, True])
    def test_rejects_bad_values(self, value):
        with pytest.raises(ValidationError):
            FilterSpec.of(user_id=value)

    def test_is_immutable(self):
        spec = FilterSpec.of(user_id="alice")
        with pytest.raises(ValidationError):
            spec.dimensions = ()

    def test_missing_key_raises_keyerror(self):
        with pytest.raises(KeyError):
            FilterSpec.of(user_id="alice")["agent_id"]


class TestMatches:
    def test_query_dimensions_must_all_be_equal(self):
        stored = FilterSpec.of(user_id="alice", agent_id="planner")
        assert matches(stored, FilterSpec.of(user_id="alice"))
        assert matches(stored, FilterSpec.of(user_id="alice", agent_id="planner"))
        assert not matches(stored, FilterSpec.of(user_id="bob"))
        assert not matches(stored, FilterSpec.of(user_id="alice", agent_id="writer"))

    def test_missing_dimension_in_candidate_does_not_match(self):
        assert not FilterSpec.of(user_id="alice").matches(FilterSpec.of(user_id="alice", run_id="r1"))

    def test_empty_query_matches_everything(self):
        assert FilterSpec.of(user_id="alice").matches(FilterSpec.of())

    def test_no_dimension_is_special(self):
        stored = FilterSpec.of(tenant="acme", project="x")
        assert stored.matches(FilterSpec.of(project="x"))
        assert not stored.matches(FilterSpec.of(user_id="acme"))


class TestMergeCallerScope:
    def test_no_client_scope_returns_injected(self):
        injected = FilterSpec.of(user_id="alice")
        assert merge_caller_scope(injected, None) is injected

    def test_client_can_narrow(self):
        merged = merge_caller_scope(FilterSpec.of(user_id="alice"), {"agent_id": "planner"})
        assert merged.as_dict() == {"agent_id": "planner", "user_id": "alice"}

    def test_restating_same_value_is_fine(self):
        merged = merge_caller_scope(FilterSpec.of(user_id="alice"), {"user_id": "alice"})
        assert merged == FilterSpec.of(user_id="alice")

    def test_impersonation_is_rejected(self):
        with pytest.raises(ScopeViolation) as exc_info:
            merge_caller_scope(FilterSpec.of(user_id="alice"), {"user_id": "bob"})
        assert exc_info.value.details["dimension"] == "user_id"

    def test_injected_app_id_cannot_be_overridden(self):
        injected = FilterSpec.of(user_id="alice", app_id="cursor")
        with pytest.raises(ScopeViolation):
            merge_caller_scope(injected, FilterSpec.of(app_id="claude"))

    def test_malformed_client_scope_raises_value_error(self):
        with pytest.raises(ValueError):
            merge_caller_scope(FilterSpec.of(user_id="alice"), {"Bad Name": "x"})
