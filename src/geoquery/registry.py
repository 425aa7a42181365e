"""Default operator registry built from built-ins and package entrypoints."""

from __future__ import annotations

import inspect
import logging
from functools import lru_cache
from importlib import metadata
from typing import Any

from geoquery.engine.operator import Operator
from geoquery.engine.registry import OperatorFactory, OperatorRegistry, RegistryBuilder
from geoquery.operators import BUILTIN_OPERATORS

OPERATOR_ENTRYPOINT_GROUP = "geoquery.operators"

LOGGER = logging.getLogger(__name__)


def _as_factory(name: str, candidate: Any) -> OperatorFactory | None:
    if isinstance(candidate, OperatorFactory):
        return candidate
    if inspect.isclass(candidate) and issubclass(candidate, Operator) and not inspect.isabstract(candidate):
        return OperatorFactory.for_operator(candidate)
    LOGGER.warning("Operator entrypoint '%s' is not an operator class or factory.", name)
    return None


def _load_operator_entrypoints() -> dict[str, OperatorFactory]:
    """Load operator factories from package entrypoints."""
    factories: dict[str, OperatorFactory] = {}
    try:
        entry_points = metadata.entry_points(group=OPERATOR_ENTRYPOINT_GROUP)
    except Exception as exc:  # pragma: no cover - entrypoint discovery failures are rare
        LOGGER.warning("Failed to read operator entrypoints: %s", exc)
        return factories
    for entry_point in entry_points:
        try:
            candidate = entry_point.load()
        except Exception as exc:
            LOGGER.warning("Failed to load operator entrypoint '%s': %s", entry_point.name, exc)
            continue
        factory = _as_factory(entry_point.name, candidate)
        if factory is not None:
            factories[entry_point.name] = factory
    return factories


def _builtin_builder() -> RegistryBuilder:
    builder = RegistryBuilder()
    for operator_cls in BUILTIN_OPERATORS:
        builder.register_operator(operator_cls)
    return builder


def builtin_registry() -> OperatorRegistry:
    """Return a registry holding only the built-in operators."""
    return _builtin_builder().freeze()


@lru_cache(maxsize=1)
def default_registry() -> OperatorRegistry:
    """Return the process-wide registry of built-in and plugin operators."""
    builder = _builtin_builder()
    for tag, factory in _load_operator_entrypoints().items():
        if tag in builder:
            LOGGER.warning("Operator '%s' already registered; skipping entrypoint.", tag)
            continue
        builder.register(tag, factory)
    return builder.freeze()


def refresh_default_registry() -> None:
    """Clear the cached default registry and reload on demand."""
    default_registry.cache_clear()


def list_operators(registry: OperatorRegistry | None = None) -> list[dict[str, Any]]:
    """Describe each registered operator: tag, output type, and source types."""
    registry = registry if registry is not None else default_registry()
    return [
        {
            "tag": tag,
            "output_type": str(factory.output_type),
            "sources": [str(source) for source in factory.sources],
            "description": factory.description,
        }
        for tag, factory in sorted(registry.factories().items())
    ]
