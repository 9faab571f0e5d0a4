"""Field mapping engine tests."""

import pytest

from conduit.contracts import FieldMapping
from conduit.errors import InvalidTargetError, MappingError
from conduit.mapping import apply_field_mappings


def test_mapping_projects_only_mapped_fields_over_static():
    result = apply_field_mappings(
        [{"source": "$.a", "target": "$.b"}], {"a": 5, "other": "x"}, {"keep": "y"}
    )
    assert result == {"keep": "y", "b": 5}


def test_mapping_accepts_models_and_applies_in_order():
    mappings = [
        FieldMapping(source="$.first", target="$.name"),
        FieldMapping(source="$.second", target="$.name"),
        FieldMapping(source="$.contact.email", target="$.person.email"),
    ]
    source = {"first": "Ann", "second": "Bob", "contact": {"email": "b@x.io"}}
    assert apply_field_mappings(mappings, source) == {
        "name": "Bob",
        "person": {"email": "b@x.io"},
    }


def test_mapping_overrides_static_values():
    result = apply_field_mappings(
        [{"source": "$.channel", "target": "$.channel"}],
        {"channel": "#ops"},
        {"channel": "#general", "text": "hi"},
    )
    assert result == {"channel": "#ops", "text": "hi"}


def test_unresolved_source_without_transform_writes_nothing():
    result = apply_field_mappings(
        [{"source": "$.missing", "target": "$.out"}], {"a": 1}, {"keep": True}
    )
    assert result == {"keep": True}


def test_unresolved_source_with_static_transform_still_writes():
    result = apply_field_mappings(
        [
            {
                "source": "$.missing",
                "target": "$.status",
                "transform": {"type": "static", "config": {"value": "open"}},
            }
        ],
        {},
    )
    assert result == {"status": "open"}


def test_whole_document_source():
    source = {"a": [1, 2]}
    result = apply_field_mappings([{"source": "$", "target": "$.payload"}], source)
    assert result == {"payload": {"a": [1, 2]}}
    result["payload"]["a"].append(3)
    assert source == {"a": [1, 2]}


def test_static_values_are_not_mutated():
    static = {"nested": {"x": 1}}
    result = apply_field_mappings(
        [{"source": "$.y", "target": "$.nested.y"}], {"y": 2}, static
    )
    assert result == {"nested": {"x": 1, "y": 2}}
    assert static == {"nested": {"x": 1}}


def test_mapping_with_transform_chain_per_field():
    result = apply_field_mappings(
        [
            {
                "source": "$.name",
                "target": "$.title",
                "transform": {"type": "to-uppercase"},
            },
            {
                "source": "$.tags",
                "target": "$.labels",
                "transform": {"type": "join", "config": {"delimiter": "|"}},
            },
        ],
        {"name": "report", "tags": ["a", "b"]},
    )
    assert result == {"title": "REPORT", "labels": "a|b"}


def test_root_target_is_rejected():
    with pytest.raises(InvalidTargetError):
        apply_field_mappings([{"source": "$.a", "target": "$"}], {"a": 1})


def test_bad_transform_surfaces_mapping_error():
    with pytest.raises(MappingError):
        apply_field_mappings(
            [
                {
                    "source": "$.raw",
                    "target": "$.parsed",
                    "transform": {"type": "parse-json"},
                }
            ],
            {"raw": "{not json"},
        )
