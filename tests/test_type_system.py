from __future__ import annotations

from dataclasses import replace

import pytest

from geoquery.engine.descriptor import parse, parse_workflow
from geoquery.engine.operator import RasterOperator, VectorOperator, build_workflow, validate_and_build
from geoquery.engine.registry import OperatorFactory, RegistryBuilder
from geoquery.engine.types import OutputType
from geoquery.errors import (
    ArityError,
    ParameterError,
    TypeMismatchError,
    UnknownOperatorError,
    WorkflowError,
    WorkflowTypeError,
)
from geoquery.operators import BUILTIN_OPERATORS
from geoquery.operators.expression import Expression, ExpressionParams
from tests.utils import mock_points, mock_raster


def _expression(*children: dict, operation: str = "add") -> dict:
    return {"type": "Expression", "params": {"operation": operation}, "children": list(children)}


VALID_TREES = [
    (mock_raster([[1.0]]), OutputType.RASTER),
    (mock_points([(0, 0)]), OutputType.VECTOR),
    (_expression(mock_raster([[1]]), mock_raster([[2]])), OutputType.RASTER),
    (
        {
            "type": "FocalAggregate",
            "params": {"statistic": "max", "radius": 2},
            "children": [_expression(mock_raster([[1]]), mock_raster([[2]]))],
        },
        OutputType.RASTER,
    ),
    (
        {
            "type": "RasterVectorJoin",
            "children": [mock_points([(0, 0)]), mock_raster([[1]])],
        },
        OutputType.VECTOR,
    ),
    (
        {
            "type": "VectorReprojection",
            "params": {"target_spatial_reference": "EPSG:3857"},
            "children": [mock_points([(0, 0)])],
        },
        OutputType.VECTOR,
    ),
]


@pytest.mark.parametrize(("raw", "output_type"), VALID_TREES)
def test_valid_trees_build_with_declared_type(registry, raw, output_type) -> None:
    operator = validate_and_build(parse(raw), output_type, registry)
    assert operator.output_type is output_type
    expected_cls = RasterOperator if output_type is OutputType.RASTER else VectorOperator
    assert isinstance(operator, expected_cls)


def test_built_tree_carries_paths_and_parsed_params(registry) -> None:
    raw = _expression(mock_raster([[1]]), mock_raster([[2]]), operation="divide")
    operator = validate_and_build(parse(raw), "Raster", registry)
    assert isinstance(operator, Expression)
    assert isinstance(operator.params, ExpressionParams)
    assert operator.params.operation == "divide"
    assert [source.path for source in operator.sources] == [
        "Expression/0:MockRasterSource",
        "Expression/1:MockRasterSource",
    ]


def test_unknown_tag_names_tag_and_path(registry) -> None:
    raw = _expression(mock_raster([[1]]), {"type": "Teleport"})
    with pytest.raises(UnknownOperatorError) as excinfo:
        validate_and_build(parse(raw), "Raster", registry)
    assert excinfo.value.tag == "Teleport"
    assert excinfo.value.operator_path == "Expression/1:Teleport"
    assert "Teleport" in str(excinfo.value)


@pytest.mark.parametrize("tag", ["Nope", "gdalsource", "Expression2"])
def test_unregistered_root_tags_fail(registry, tag) -> None:
    with pytest.raises(UnknownOperatorError) as excinfo:
        validate_and_build(parse({"type": tag}), "Raster", registry)
    assert excinfo.value.tag == tag


def test_wrong_child_count(registry) -> None:
    with pytest.raises(ArityError) as excinfo:
        validate_and_build(parse(_expression(mock_raster([[1]]))), "Raster", registry)
    assert excinfo.value.expected == 2
    assert excinfo.value.actual == 1


def test_parameter_error_names_field(registry) -> None:
    raw = _expression(mock_raster([[1]]), mock_raster([[2]]), operation="power")
    with pytest.raises(ParameterError) as excinfo:
        validate_and_build(parse(raw), "Raster", registry)
    assert excinfo.value.field == "operation"
    assert excinfo.value.operator_path == "Expression"


def test_parameter_error_from_params_parser(registry) -> None:
    raw = mock_raster([[1, None]])
    with pytest.raises(ParameterError) as excinfo:
        validate_and_build(parse(raw), "Raster", registry)
    assert excinfo.value.field == "nodata"


def test_type_mismatch_reports_child(registry) -> None:
    raw = {
        "type": "RasterVectorJoin",
        "children": [mock_raster([[1]]), mock_raster([[1]])],
    }
    with pytest.raises(TypeMismatchError) as excinfo:
        validate_and_build(parse(raw), "Vector", registry)
    error = excinfo.value
    assert error.tag == "RasterVectorJoin"
    assert error.child_index == 0
    assert error.expected is OutputType.VECTOR
    assert error.actual is OutputType.RASTER


def test_root_type_must_match_workflow(registry) -> None:
    with pytest.raises(WorkflowTypeError):
        validate_and_build(parse(mock_points([(0, 0)])), "Raster", registry)


def test_no_operator_is_constructed_when_validation_fails() -> None:
    built: list[str] = []
    builder = RegistryBuilder()
    for operator_cls in BUILTIN_OPERATORS:
        factory = OperatorFactory.for_operator(operator_cls)

        def _tracking(params, sources, path, _build=factory.build):
            built.append(path)
            return _build(params, sources, path)

        builder.register(operator_cls.tag, replace(factory, build=_tracking))
    registry = builder.freeze()

    raw = _expression(mock_raster([[1]]), _expression(mock_raster([[1]]), {"type": "Missing"}))
    with pytest.raises(UnknownOperatorError):
        validate_and_build(parse(raw), "Raster", registry)
    assert built == []

    validate_and_build(parse(_expression(mock_raster([[1]]), mock_raster([[2]]))), "Raster", registry)
    assert built == [
        "Expression/0:MockRasterSource",
        "Expression/1:MockRasterSource",
        "Expression",
    ]


def test_build_workflow_uses_declared_type(registry) -> None:
    parsed = parse_workflow({"type": "Vector", "operator": mock_points([(1, 2)])})
    operator = build_workflow(parsed, registry)
    assert operator.output_type is OutputType.VECTOR


def test_workflow_errors_share_base(registry) -> None:
    with pytest.raises(WorkflowError):
        validate_and_build(parse({"type": "Nope"}), "Raster", registry)
