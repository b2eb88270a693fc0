"""
Tests for merge-map building from heterogeneous request bodies.
"""

import pytest
from services.record_reconciler.merge_map import (
    DirectPlaceholders,
    FlatFields,
    Nested,
    build_merge_map,
    build_placeholders,
    build_replace_requests,
    describe_merge,
    detect_sources,
    merge_sources,
)


class TestDetectSources:
    """Tests for request shape detection."""

    def test_all_shapes_in_priority_order(self):
        body = {
            "record": {"id": "recX", "fields": {"A": "3"}},
            "fields": {"A": "2"},
            "placeholders": {"{{A}}": "1"},
        }
        sources = detect_sources(body)

        assert [type(s) for s in sources] == [DirectPlaceholders, FlatFields, Nested]
        assert sources[2].record_id == "recX"

    def test_first_truthy_alias_wins(self):
        """Test only one flat-field alias is used."""
        body = {"mergeFields": {"A": "merge"}, "fields": {"A": "fields", "B": "ignored"}}
        sources = detect_sources(body)

        assert sources == [FlatFields(values={"A": "merge"}, alias="mergeFields")]

    def test_empty_alias_skipped(self):
        body = {"mergeFields": {}, "replacements": {"A": "1"}}
        assert detect_sources(body) == [FlatFields(values={"A": "1"}, alias="replacements")]

    @pytest.mark.parametrize(
        "body",
        [
            None,
            "text",
            [],
            {},
            {"unrelated": {"A": "1"}},
            {"record": {"fields": {}}},
            {"record": "recX"},
            {"placeholders": ["not", "a", "map"]},
        ]
    )
    def test_no_sources(self, body):
        assert detect_sources(body) == []


class TestBuildMergeMap:
    """Tests for priority merging."""

    def test_placeholders_win_over_fields(self):
        body = {
            "placeholders": {"{{PROJECT}}": "A"},
            "fields": {"PROJECT": "B", "CLIENT": "C"},
        }
        assert build_merge_map(body) == {"PROJECT": "A", "CLIENT": "C"}

    def test_fields_win_over_nested_record(self):
        body = {
            "fields": {"project": "flat"},
            "record": {"fields": {"Project": "nested", "Owner": "Ana"}},
        }
        assert build_merge_map(body) == {"PROJECT": "flat", "OWNER": "Ana"}

    def test_nested_record_alone(self):
        body = {"record": {"id": "rec1", "fields": {"Status": [{"name": "Open"}]}}}
        assert build_merge_map(body) == {"STATUS": "Open"}

    def test_empty_values_do_not_block_lower_tiers(self):
        """Test a blank higher-tier value leaves the key open for lower tiers."""
        body = {
            "placeholders": {"{{OWNER}}": "   "},
            "fields": {"OWNER": "Ana"},
        }
        assert build_merge_map(body) == {"OWNER": "Ana"}

    def test_values_are_coerced(self):
        body = {"fields": {"count": 3, "tags": ["a", "b"], "done": True, "empty": ""}}
        assert build_merge_map(body) == {"COUNT": "3", "TAGS": "a"}

    def test_keys_are_normalized(self):
        body = {"placeholders": {"{{content}}": "x", " Inline_Table ": "y"}}
        assert build_merge_map(body) == {"CONTENT": "x", "INLINE_TABLE": "y"}

    def test_non_object_body(self):
        assert build_merge_map(["not", "an", "object"]) == {}

    def test_later_duplicate_key_in_authoritative_source_wins(self):
        """Test two spellings of one key inside placeholders: last write wins."""
        body = {"placeholders": {"{{A}}": "first", "a": "second"}}
        assert build_merge_map(body) == {"A": "second"}

    def test_first_source_only_authoritative_when_placeholders(self):
        """Test duplicate keys in a flat source keep their first value."""
        merge = merge_sources([FlatFields(values={"A": "first", "a": "second"}, alias="fields")])
        assert merge == {"A": "first"}


class TestPlaceholdersAndRequests:
    """Tests for placeholder and replace request building."""

    def test_build_placeholders(self):
        assert build_placeholders({"project": "Launch", "CLIENT": "Acme"}) == {
            "{{PROJECT}}": "Launch",
            "{{CLIENT}}": "Acme",
        }

    def test_build_replace_requests(self):
        requests = build_replace_requests({"{{PROJECT}}": "Launch", "{{EMPTY}}": None})

        assert requests == [
            {
                "replaceAllText": {
                    "containsText": {"text": "{{PROJECT}}", "matchCase": True},
                    "replaceText": "Launch",
                }
            },
            {
                "replaceAllText": {
                    "containsText": {"text": "{{EMPTY}}", "matchCase": True},
                    "replaceText": "",
                }
            },
        ]

    def test_describe_merge_hides_values(self):
        summary = describe_merge({"CONTENT": "secret text", "PROJECT": "p"})

        assert summary == {
            "placeholder_keys": ["CONTENT", "PROJECT"],
            "content_length": 11,
            "inline_table_length": 0,
            "has_content": True,
        }
