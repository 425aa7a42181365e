"""Pixel-wise raster algebra over two raster sources."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable, Mapping

import numpy as np

from geoquery.datatypes.crs import same_crs
from geoquery.datatypes.primitives import QueryRectangle
from geoquery.datatypes.raster import Raster2D, RasterDataType
from geoquery.engine.context import ExecutionContext
from geoquery.engine.kernels import CompiledKernel, IterationType, KernelProgram, RasterArgument
from geoquery.engine.operator import RasterOperator
from geoquery.engine.processor import QueryProcessor, RasterQueryProcessor
from geoquery.engine.registry import ParamValueError
from geoquery.engine.tiling import TileInfo
from geoquery.engine.types import OutputType, RasterResultDescriptor
from geoquery.errors import InstantiationError

OPERATIONS: dict[str, Callable[[np.ndarray, np.ndarray], np.ndarray]] = {
    "add": np.add,
    "subtract": np.subtract,
    "multiply": np.multiply,
    "divide": np.divide,
    "min": np.minimum,
    "max": np.maximum,
}


@dataclass(frozen=True)
class ExpressionParams:
    operation: str
    output_type: RasterDataType = RasterDataType.F64
    output_nodata: float | None = None


class Expression(RasterOperator):
    """Combines two rasters pixel by pixel; no-data in either input stays no-data."""

    tag = "Expression"
    source_types = (OutputType.RASTER, OutputType.RASTER)
    params_schema = {
        "type": "object",
        "required": ["operation"],
        "additionalProperties": False,
        "properties": {
            "operation": {"enum": sorted(OPERATIONS)},
            "output_type": {"enum": [member.value for member in RasterDataType]},
            "output_nodata": {"type": ["number", "null"]},
        },
    }

    @classmethod
    def parse_params(cls, raw: Mapping[str, Any]) -> ExpressionParams:
        output_type = RasterDataType(raw.get("output_type", "F64"))
        output_nodata = raw.get("output_nodata")
        if output_nodata is None and output_type.is_float:
            output_nodata = math.nan
        elif output_nodata is not None and not output_type.can_hold(output_nodata):
            raise ParamValueError(
                "output_nodata", f"{output_nodata} is not a valid {output_type.value} value"
            )
        return ExpressionParams(
            operation=raw["operation"],
            output_type=output_type,
            output_nodata=output_nodata,
        )

    def create_processor(
        self, context: ExecutionContext, sources: tuple[QueryProcessor, ...]
    ) -> "ExpressionProcessor":
        left, right = (source.as_raster() for source in sources)
        left_crs = left.result_descriptor.spatial_reference
        right_crs = right.result_descriptor.spatial_reference
        if not same_crs(left_crs, right_crs):
            raise InstantiationError(
                f"Sources are in different spatial references: {left_crs} and {right_crs}",
                operator_path=self.path,
            )
        return ExpressionProcessor(context, left, right, self.params, path=self.path)


def compile_expression(params: ExpressionParams, left: RasterDataType, right: RasterDataType) -> CompiledKernel:
    program = KernelProgram(IterationType.RASTER)
    program.add_input_raster(RasterArgument(left))
    program.add_input_raster(RasterArgument(right))
    program.add_output_raster(RasterArgument(params.output_type))
    return program.compile(OPERATIONS[params.operation], params.operation)


class ExpressionProcessor(RasterQueryProcessor):
    def __init__(
        self,
        context: ExecutionContext,
        left: RasterQueryProcessor,
        right: RasterQueryProcessor,
        params: ExpressionParams,
        *,
        path: str,
    ) -> None:
        super().__init__(
            context,
            RasterResultDescriptor(
                data_type=params.output_type,
                spatial_reference=left.result_descriptor.spatial_reference,
                nodata=params.output_nodata,
            ),
            path=path,
        )
        self.left = left
        self.right = right
        self.params = params
        self.kernel = compile_expression(
            params, left.result_descriptor.data_type, right.result_descriptor.data_type
        )
        self.queue = context.acquire_device_queue()

    def compute_tile(self, tile: TileInfo, rect: QueryRectangle) -> Raster2D:
        left = self.left.compute_tile(tile, rect)
        right = self.right.compute_tile(tile, rect)
        return self.kernel.run(self.queue, [left, right], nodata=self.params.output_nodata)

    def read_region(self, rect: QueryRectangle) -> Raster2D:
        left = self.left.read_region(rect)
        right = self.right.read_region(rect)
        return self.kernel.run(self.queue, [left, right], nodata=self.params.output_nodata)
