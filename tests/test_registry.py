from __future__ import annotations

import pytest

from geoquery.engine.registry import OperatorFactory, RegistryBuilder
from geoquery.engine.types import OutputType
from geoquery.errors import ParameterError, UnknownOperatorError
from geoquery.operators import BUILTIN_OPERATORS, MockPointSource
from geoquery.registry import default_registry, list_operators, refresh_default_registry


def _factory(tag: str = "Custom") -> OperatorFactory:
    return OperatorFactory(
        tag=tag,
        output_type=OutputType.VECTOR,
        build=lambda params, sources, path: None,
        params_schema={
            "type": "object",
            "required": ["limit"],
            "properties": {"limit": {"type": "integer", "minimum": 1}},
        },
    )


def test_builtin_registry_holds_every_operator(registry) -> None:
    assert len(registry) == len(BUILTIN_OPERATORS)
    for operator_cls in BUILTIN_OPERATORS:
        factory = registry.lookup(operator_cls.tag)
        assert factory.output_type is operator_cls.output_type
        assert factory.sources == operator_cls.source_types


def test_lookup_unknown_tag(registry) -> None:
    with pytest.raises(UnknownOperatorError) as excinfo:
        registry.lookup("Nope")
    assert excinfo.value.tag == "Nope"


def test_builder_rejects_duplicate_tags() -> None:
    builder = RegistryBuilder().register("Custom", _factory())
    with pytest.raises(ValueError):
        builder.register("Custom", _factory())


def test_builder_is_sealed_after_freeze() -> None:
    builder = RegistryBuilder()
    registry = builder.register("Custom", _factory()).freeze()
    with pytest.raises(RuntimeError):
        builder.register("Other", _factory("Other"))
    assert registry.tags() == ["Custom"]


def test_register_under_alias_renames_factory() -> None:
    registry = RegistryBuilder().register("Alias", _factory("Custom")).freeze()
    assert registry.lookup("Alias").tag == "Alias"
    assert "Custom" not in registry


def test_registry_has_no_mutation_api(registry) -> None:
    with pytest.raises(TypeError):
        registry.factories()["Custom"] = _factory()  # type: ignore[index]


def test_validate_params_names_missing_field() -> None:
    with pytest.raises(ParameterError) as excinfo:
        _factory().validate_params({}, operator_path="Custom")
    assert excinfo.value.field == "limit"
    assert excinfo.value.operator_path == "Custom"


def test_validate_params_names_invalid_field() -> None:
    with pytest.raises(ParameterError) as excinfo:
        _factory().validate_params({"limit": 0})
    assert excinfo.value.field == "limit"


def test_factory_from_operator_class() -> None:
    factory = OperatorFactory.for_operator(MockPointSource)
    assert factory.tag == "MockPointSource"
    assert factory.description == "Serves static points filtered to the query box."
    params = factory.validate_params({"points": [[0, 0]]})
    operator = factory.build(params, (), "MockPointSource")
    assert isinstance(operator, MockPointSource)
    assert operator.params.points.shape == (1, 2)


def test_operator_entrypoints(monkeypatch) -> None:
    class CustomPoints(MockPointSource):
        """Points under a plugin tag."""

        tag = "CustomPoints"

    class DummyEntryPoint:
        name = "CustomPoints"

        def load(self):
            return CustomPoints

    refresh_default_registry()
    monkeypatch.setattr(
        "geoquery.registry.metadata.entry_points",
        lambda group: [DummyEntryPoint()],
    )

    registry = default_registry()
    assert "CustomPoints" in registry
    assert registry.lookup("CustomPoints").output_type is OutputType.VECTOR
    refresh_default_registry()


def test_operator_entrypoint_duplicate_skipped(monkeypatch) -> None:
    class DuplicateEntryPoint:
        name = "GdalSource"

        def load(self):
            return _factory("GdalSource")

    refresh_default_registry()
    monkeypatch.setattr(
        "geoquery.registry.metadata.entry_points",
        lambda group: [DuplicateEntryPoint()],
    )

    registry = default_registry()
    assert registry.lookup("GdalSource").output_type is OutputType.RASTER
    refresh_default_registry()


def test_operator_entrypoint_failures_are_skipped(monkeypatch, caplog) -> None:
    class BrokenEntryPoint:
        name = "Broken"

        def load(self):
            raise ImportError("missing plugin dependency")

    class NotAnOperator:
        name = "Junk"

        def load(self):
            return object()

    refresh_default_registry()
    monkeypatch.setattr(
        "geoquery.registry.metadata.entry_points",
        lambda group: [BrokenEntryPoint(), NotAnOperator()],
    )

    registry = default_registry()
    assert "Broken" not in registry
    assert "Junk" not in registry
    assert "Failed to load operator entrypoint 'Broken'" in caplog.text
    refresh_default_registry()


def test_list_operators_describes_sources(registry) -> None:
    entries = {entry["tag"]: entry for entry in list_operators(registry)}
    assert entries["Expression"]["sources"] == ["Raster", "Raster"]
    assert entries["RasterVectorJoin"]["sources"] == ["Vector", "Raster"]
    assert entries["GdalSource"]["output_type"] == "Raster"
