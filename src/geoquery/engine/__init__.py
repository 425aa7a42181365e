"""Operator graph, type system, execution context, and result streams."""

from geoquery.engine.catalog import DatasetCatalog, DatasetInfo, load_dataset_catalog
from geoquery.engine.context import (
    DatasetHandle,
    DatasetHandleCache,
    ExecutionContext,
    shared_dataset_cache,
)
from geoquery.engine.descriptor import OperatorDescriptor, Workflow, parse, parse_workflow
from geoquery.engine.device import DeviceQueue
from geoquery.engine.kernels import (
    CompiledKernel,
    IterationType,
    KernelProgram,
    RasterArgument,
    VectorArgument,
)
from geoquery.engine.operator import (
    Operator,
    RasterOperator,
    VectorOperator,
    build_workflow,
    validate_and_build,
)
from geoquery.engine.processor import (
    QueryOptions,
    QueryProcessor,
    RasterQueryProcessor,
    VectorQueryProcessor,
)
from geoquery.engine.registry import (
    OperatorFactory,
    OperatorRegistry,
    ParamValueError,
    RegistryBuilder,
)
from geoquery.engine.stream import ChunkFailure, ResultStream
from geoquery.engine.tiling import TileInfo, TilingSpecification
from geoquery.engine.types import OutputType, RasterResultDescriptor, VectorResultDescriptor
from geoquery.engine.workflows import WorkflowStore

__all__ = [
    "ChunkFailure",
    "CompiledKernel",
    "DatasetCatalog",
    "DatasetHandle",
    "DatasetHandleCache",
    "DatasetInfo",
    "DeviceQueue",
    "ExecutionContext",
    "IterationType",
    "KernelProgram",
    "Operator",
    "OperatorDescriptor",
    "OperatorFactory",
    "OperatorRegistry",
    "OutputType",
    "ParamValueError",
    "QueryOptions",
    "QueryProcessor",
    "RasterArgument",
    "RasterOperator",
    "RasterQueryProcessor",
    "RasterResultDescriptor",
    "RegistryBuilder",
    "ResultStream",
    "TileInfo",
    "TilingSpecification",
    "VectorArgument",
    "VectorOperator",
    "VectorQueryProcessor",
    "VectorResultDescriptor",
    "Workflow",
    "WorkflowStore",
    "build_workflow",
    "load_dataset_catalog",
    "parse",
    "parse_workflow",
    "shared_dataset_cache",
    "validate_and_build",
]
