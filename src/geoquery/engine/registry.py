"""Operator factories and the immutable tag-to-factory registry."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Iterator, Mapping, Sequence

from jsonschema import ValidationError

from geoquery import contracts
from geoquery.engine.types import OutputType
from geoquery.errors import ParameterError, UnknownOperatorError

if TYPE_CHECKING:
    from geoquery.engine.operator import Operator

LOGGER = logging.getLogger(__name__)


class ParamValueError(ValueError):
    """Raised by params parsers for values the schema cannot express."""

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(reason)
        self.field = field
        self.reason = reason


def _identity(raw: Mapping[str, Any]) -> Mapping[str, Any]:
    return raw


@dataclass(frozen=True)
class OperatorFactory:
    """How to validate and build one operator tag."""

    tag: str
    output_type: OutputType
    build: Callable[[Any, tuple["Operator", ...], str], "Operator"]
    sources: tuple[OutputType, ...] = ()
    params_schema: Mapping[str, Any] = field(default_factory=lambda: {"type": "object"})
    parse_params: Callable[[Mapping[str, Any]], Any] = _identity
    description: str = ""

    @classmethod
    def for_operator(cls, operator_cls: type["Operator"]) -> "OperatorFactory":
        """Derive a factory from an operator class's declarations."""

        def _build(params: Any, sources: tuple["Operator", ...], path: str) -> "Operator":
            return operator_cls(params, sources, path=path)

        doc = (operator_cls.__doc__ or "").strip().splitlines()
        return cls(
            tag=operator_cls.tag,
            output_type=operator_cls.output_type,
            build=_build,
            sources=tuple(operator_cls.source_types),
            params_schema=operator_cls.params_schema,
            parse_params=operator_cls.parse_params,
            description=doc[0] if doc else "",
        )

    def validate_params(self, raw: Mapping[str, Any], *, operator_path: str | None = None) -> Any:
        """Check ``raw`` against the params schema and return parsed params."""
        try:
            contracts.validate_params(dict(raw), self.params_schema)
        except ValidationError as exc:
            raise ParameterError(
                self.tag, contracts.error_field(exc), exc.message, operator_path=operator_path
            ) from exc
        try:
            return self.parse_params(raw)
        except ParamValueError as exc:
            raise ParameterError(self.tag, exc.field, exc.reason, operator_path=operator_path) from exc
        except (TypeError, ValueError, KeyError) as exc:
            raise ParameterError(self.tag, "<params>", str(exc), operator_path=operator_path) from exc


class OperatorRegistry:
    """Read-only mapping from tag to factory."""

    def __init__(self, factories: Mapping[str, OperatorFactory]) -> None:
        self._factories = MappingProxyType(dict(factories))

    def lookup(self, tag: str, *, operator_path: str | None = None) -> OperatorFactory:
        try:
            return self._factories[tag]
        except KeyError as exc:
            raise UnknownOperatorError(tag, operator_path=operator_path) from exc

    def __contains__(self, tag: object) -> bool:
        return tag in self._factories

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._factories))

    def __len__(self) -> int:
        return len(self._factories)

    def tags(self) -> list[str]:
        return sorted(self._factories)

    def factories(self) -> Mapping[str, OperatorFactory]:
        return self._factories


class RegistryBuilder:
    """Collects factories during start-up; ``freeze`` seals the result."""

    def __init__(self) -> None:
        self._factories: dict[str, OperatorFactory] = {}
        self._frozen = False

    def register(self, tag: str, factory: OperatorFactory) -> "RegistryBuilder":
        """Add ``factory`` under ``tag``; a different tag registers an alias."""
        if self._frozen:
            raise RuntimeError("Registry is frozen; create a new builder to add operators.")
        if tag in self._factories:
            raise ValueError(f"Operator '{tag}' is already registered.")
        if factory.tag != tag:
            factory = replace(factory, tag=tag)
        self._factories[tag] = factory
        return self

    def __contains__(self, tag: object) -> bool:
        return tag in self._factories

    def register_operator(self, operator_cls: type["Operator"]) -> "RegistryBuilder":
        return self.register(operator_cls.tag, OperatorFactory.for_operator(operator_cls))

    def extend(self, factories: Sequence[OperatorFactory]) -> "RegistryBuilder":
        for factory in factories:
            self.register(factory.tag, factory)
        return self

    def freeze(self) -> OperatorRegistry:
        self._frozen = True
        LOGGER.debug("Froze operator registry with %d operator(s)", len(self._factories))
        return OperatorRegistry(self._factories)
