"""Operator base classes and two-phase workflow validation."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar, Mapping

from geoquery.engine.descriptor import OperatorDescriptor, Workflow
from geoquery.engine.processor import (
    QueryProcessor,
    RasterQueryProcessor,
    VectorQueryProcessor,
)
from geoquery.engine.registry import OperatorFactory, OperatorRegistry
from geoquery.engine.types import OutputType
from geoquery.errors import (
    ArityError,
    DeviceError,
    GeoQueryError,
    InstantiationError,
    TypeMismatchError,
    WorkflowTypeError,
)

if TYPE_CHECKING:
    from geoquery.engine.context import ExecutionContext

LOGGER = logging.getLogger(__name__)


class Operator(ABC):
    """A validated, immutable node of an operator graph.

    Subclasses declare ``tag``, ``output_type``, ``source_types``, and a
    JSON schema for their params; ``parse_params`` turns validated raw
    params into the value stored on the instance.
    """

    tag: ClassVar[str]
    output_type: ClassVar[OutputType]
    source_types: ClassVar[tuple[OutputType, ...]] = ()
    params_schema: ClassVar[Mapping[str, Any]] = {"type": "object"}

    def __init__(self, params: Any, sources: tuple["Operator", ...] = (), *, path: str | None = None) -> None:
        self.params = params
        self.sources = tuple(sources)
        self.path = path or self.tag

    @classmethod
    def parse_params(cls, raw: Mapping[str, Any]) -> Any:
        return raw

    def instantiate(self, context: "ExecutionContext") -> QueryProcessor:
        """Bind this subtree to execution resources, children first."""
        try:
            children = tuple(source.instantiate(context) for source in self.sources)
            processor = self.create_processor(context, children)
        except (InstantiationError, DeviceError):
            raise
        except GeoQueryError as exc:
            raise InstantiationError(
                exc.message,
                operator_path=exc.operator_path or self.path,
                dataset_id=exc.dataset_id,
            ) from exc
        except Exception as exc:
            raise InstantiationError(
                f"Failed to instantiate {self.tag}: {exc}", operator_path=self.path
            ) from exc
        LOGGER.debug("Instantiated %s", self.path)
        return processor

    @abstractmethod
    def create_processor(
        self, context: "ExecutionContext", sources: tuple[QueryProcessor, ...]
    ) -> QueryProcessor:
        """Build this node's processor from its already-built children."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(path={self.path!r})"


class RasterOperator(Operator):
    output_type = OutputType.RASTER

    def instantiate(self, context: "ExecutionContext") -> RasterQueryProcessor:
        return super().instantiate(context).as_raster()


class VectorOperator(Operator):
    output_type = OutputType.VECTOR

    def instantiate(self, context: "ExecutionContext") -> VectorQueryProcessor:
        return super().instantiate(context).as_vector()


@dataclass(frozen=True)
class _Plan:
    factory: OperatorFactory
    params: Any
    children: tuple["_Plan", ...]
    path: str


def _child_path(path: str, index: int, tag: str) -> str:
    return f"{path}/{index}:{tag}"


def _plan(descriptor: OperatorDescriptor, registry: OperatorRegistry, path: str) -> _Plan:
    factory = registry.lookup(descriptor.tag, operator_path=path)
    if len(descriptor.children) != len(factory.sources):
        raise ArityError(
            descriptor.tag, len(factory.sources), len(descriptor.children), operator_path=path
        )
    params = factory.validate_params(descriptor.params, operator_path=path)
    children: list[_Plan] = []
    for index, (child, expected) in enumerate(zip(descriptor.children, factory.sources)):
        child_plan = _plan(child, registry, _child_path(path, index, child.tag))
        actual = child_plan.factory.output_type
        if actual is not expected:
            raise TypeMismatchError(descriptor.tag, index, expected, actual, operator_path=path)
        children.append(child_plan)
    return _Plan(factory=factory, params=params, children=tuple(children), path=path)


def _construct(plan: _Plan) -> Operator:
    sources = tuple(_construct(child) for child in plan.children)
    return plan.factory.build(plan.params, sources, plan.path)


def validate_and_build(
    descriptor: OperatorDescriptor,
    expected_output_type: OutputType | str,
    registry: OperatorRegistry,
) -> Operator:
    """Resolve, check, and construct an operator tree.

    Every node is resolved and type-checked before any operator is
    constructed, so a failing tree leaves nothing half-built.
    """
    expected = OutputType.parse(expected_output_type)
    plan = _plan(descriptor, registry, descriptor.tag)
    if plan.factory.output_type is not expected:
        raise WorkflowTypeError(expected, plan.factory.output_type, operator_path=plan.path)
    operator = _construct(plan)
    LOGGER.debug("Built %s operator tree rooted at %s", expected, operator.path)
    return operator


def build_workflow(workflow: Workflow, registry: OperatorRegistry) -> Operator:
    return validate_and_build(workflow.operator, workflow.output_type, registry)
