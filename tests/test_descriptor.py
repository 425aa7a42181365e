from __future__ import annotations

import json

import pytest

from geoquery.engine.descriptor import OperatorDescriptor, parse, parse_workflow, workflow_id
from geoquery.engine.types import OutputType
from geoquery.errors import ParseError
from tests.utils import mock_raster, workflow


def _add_workflow() -> dict:
    return workflow(
        "Raster",
        {
            "type": "Expression",
            "params": {"operation": "add"},
            "children": [mock_raster([[1, 2]]), mock_raster([[3, 4]])],
        },
    )


def test_parse_builds_tree() -> None:
    descriptor = parse(_add_workflow()["operator"])
    assert descriptor.tag == "Expression"
    assert descriptor.params["operation"] == "add"
    assert [child.tag for child in descriptor.children] == ["MockRasterSource"] * 2
    assert len(descriptor.walk()) == 3


def test_parse_defaults_params_and_children() -> None:
    descriptor = parse({"type": "MockPointSource"})
    assert dict(descriptor.params) == {}
    assert descriptor.children == ()


def test_descriptor_params_are_copied() -> None:
    raw = {"type": "GdalSource", "params": {"dataset": "dem"}}
    descriptor = parse(raw)
    raw["params"]["dataset"] = "other"
    assert descriptor.params["dataset"] == "dem"
    with pytest.raises(TypeError):
        descriptor.params["dataset"] = "x"  # type: ignore[index]


def test_parse_rejects_missing_type() -> None:
    with pytest.raises(ParseError):
        parse({"params": {}})


def test_parse_rejects_unknown_keys_with_path() -> None:
    raw = {"type": "Expression", "children": [{"type": "GdalSource", "sources": []}]}
    with pytest.raises(ParseError) as excinfo:
        parse(raw)
    assert excinfo.value.operator_path == "Expression/0:GdalSource"


def test_parse_rejects_non_list_children() -> None:
    with pytest.raises(ParseError):
        parse({"type": "Expression", "children": {"type": "GdalSource"}})


def test_parse_rejects_shared_subtree() -> None:
    shared = {"type": "GdalSource", "params": {"dataset": "dem"}}
    with pytest.raises(ParseError) as excinfo:
        parse({"type": "Expression", "params": {"operation": "add"}, "children": [shared, shared]})
    assert "shared" in str(excinfo.value)


def test_equal_subtrees_that_are_distinct_objects_are_allowed() -> None:
    raw = {
        "type": "Expression",
        "params": {"operation": "add"},
        "children": [{"type": "GdalSource", "params": {"dataset": "dem"}} for _ in range(2)],
    }
    descriptor = parse(raw)
    assert descriptor.children[0] == descriptor.children[1]


def test_parse_workflow_from_json_text() -> None:
    parsed = parse_workflow(json.dumps(_add_workflow()))
    assert parsed.output_type is OutputType.RASTER
    assert parsed.operator.tag == "Expression"


def test_parse_workflow_rejects_bad_json() -> None:
    with pytest.raises(ParseError):
        parse_workflow("{not json")


def test_parse_workflow_rejects_unknown_output_type() -> None:
    with pytest.raises(ParseError):
        parse_workflow({"type": "Plot", "operator": {"type": "MockPointSource"}})


def test_workflow_id_is_stable_across_key_order() -> None:
    first = _add_workflow()
    second = json.loads(json.dumps(first, sort_keys=True))
    second["operator"] = dict(reversed(list(second["operator"].items())))
    assert workflow_id(first) == workflow_id(second)


def test_workflow_id_differs_for_different_params() -> None:
    first = _add_workflow()
    second = _add_workflow()
    second["operator"]["params"]["operation"] = "subtract"
    assert workflow_id(first) != workflow_id(second)


def test_descriptor_round_trips_through_dict() -> None:
    descriptor = parse(_add_workflow()["operator"])
    assert OperatorDescriptor(
        tag=descriptor.tag, params=descriptor.params, children=descriptor.children
    ) == parse(descriptor.to_dict())
