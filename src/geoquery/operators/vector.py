"""Vector combinators: attribute filtering and raster-to-point joins."""

from __future__ import annotations

import logging
import operator
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Mapping

import numpy as np

from geoquery.datatypes.crs import same_crs
from geoquery.datatypes.features import FeatureCollection, FeatureDataType
from geoquery.datatypes.primitives import QueryRectangle
from geoquery.datatypes.raster import Raster2D
from geoquery.engine.context import ExecutionContext
from geoquery.engine.kernels import IterationType, KernelProgram, VectorArgument
from geoquery.engine.operator import VectorOperator
from geoquery.engine.processor import (
    BatchItem,
    QueryProcessor,
    RasterQueryProcessor,
    VectorQueryProcessor,
)
from geoquery.engine.types import OutputType, VectorResultDescriptor
from geoquery.errors import InstantiationError, PartialReadError
from geoquery.logging_utils import log_context

COMPARISONS: dict[str, Callable[[Any, Any], Any]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureAttributeFilterParams:
    column: str
    comparison: str
    value: float | str


class FeatureAttributeFilter(VectorOperator):
    """Keeps features whose column value satisfies a comparison."""

    tag = "FeatureAttributeFilter"
    source_types = (OutputType.VECTOR,)
    params_schema = {
        "type": "object",
        "required": ["column", "comparison", "value"],
        "additionalProperties": False,
        "properties": {
            "column": {"type": "string", "minLength": 1},
            "comparison": {"enum": list(COMPARISONS)},
            "value": {"type": ["number", "string"]},
        },
    }

    @classmethod
    def parse_params(cls, raw: Mapping[str, Any]) -> FeatureAttributeFilterParams:
        return FeatureAttributeFilterParams(
            column=raw["column"],
            comparison=raw["comparison"],
            value=raw["value"],
        )

    def create_processor(
        self, context: ExecutionContext, sources: tuple[QueryProcessor, ...]
    ) -> "FeatureAttributeFilterProcessor":
        source = sources[0].as_vector()
        params: FeatureAttributeFilterParams = self.params
        columns = source.result_descriptor.columns
        if params.column not in columns:
            raise InstantiationError(
                f"Column '{params.column}' not found; available: {', '.join(sorted(columns)) or 'none'}",
                operator_path=self.path,
            )
        is_text = columns[params.column] is FeatureDataType.TEXT
        if is_text != isinstance(params.value, str):
            raise InstantiationError(
                f"Value {params.value!r} cannot be compared with {columns[params.column].value} "
                f"column '{params.column}'",
                operator_path=self.path,
            )
        return FeatureAttributeFilterProcessor(context, source, params, path=self.path)


class FeatureAttributeFilterProcessor(VectorQueryProcessor):
    def __init__(
        self,
        context: ExecutionContext,
        source: VectorQueryProcessor,
        params: FeatureAttributeFilterParams,
        *,
        path: str,
    ) -> None:
        super().__init__(context, source.result_descriptor, path=path)
        self.source = source
        self.params = params
        argument = VectorArgument(source.result_descriptor.data_type, source.result_descriptor.columns)
        program = KernelProgram(IterationType.VECTOR_FEATURES)
        program.add_input_features(argument)
        program.add_output_features(argument)
        compare = COMPARISONS[params.comparison]

        def keep(columns: Mapping[str, np.ndarray]) -> np.ndarray:
            return np.asarray(compare(columns[params.column], params.value), dtype=bool)

        self.kernel = program.compile(keep, f"filter_{params.column}")
        self.queue = context.acquire_device_queue()

    def batches(self, rect: QueryRectangle) -> Iterator[BatchItem]:
        for batch in self.source.batches(rect):
            if isinstance(batch, PartialReadError) or batch.is_empty():
                yield batch
                continue
            yield batch.filter(self.kernel.run_features(self.queue, batch))


@dataclass(frozen=True)
class RasterVectorJoinParams:
    column: str = "raster_value"


class RasterVectorJoin(VectorOperator):
    """Attaches the raster value under each point as a new float column."""

    tag = "RasterVectorJoin"
    source_types = (OutputType.VECTOR, OutputType.RASTER)
    params_schema = {
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "column": {"type": "string", "minLength": 1},
        },
    }

    @classmethod
    def parse_params(cls, raw: Mapping[str, Any]) -> RasterVectorJoinParams:
        return RasterVectorJoinParams(column=raw.get("column", "raster_value"))

    def create_processor(
        self, context: ExecutionContext, sources: tuple[QueryProcessor, ...]
    ) -> "RasterVectorJoinProcessor":
        points = sources[0].as_vector()
        raster = sources[1].as_raster()
        points_crs = points.result_descriptor.spatial_reference
        raster_crs = raster.result_descriptor.spatial_reference
        if not same_crs(points_crs, raster_crs):
            raise InstantiationError(
                f"Points in {points_crs} cannot be joined with a raster in {raster_crs}",
                operator_path=self.path,
            )
        if self.params.column in points.result_descriptor.columns:
            raise InstantiationError(
                f"Column '{self.params.column}' already exists", operator_path=self.path
            )
        return RasterVectorJoinProcessor(context, points, raster, self.params, path=self.path)


def sample_points(raster: Raster2D, batch: FeatureCollection) -> np.ndarray:
    """Return the raster value under each point, NaN for no-data or outside."""
    values = np.full(len(batch), np.nan, dtype=np.float64)
    for position, (x, y) in enumerate(batch):
        value = raster.value_at(x, y)
        if value is not None:
            values[position] = value
    return values


class RasterVectorJoinProcessor(VectorQueryProcessor):
    def __init__(
        self,
        context: ExecutionContext,
        points: VectorQueryProcessor,
        raster: RasterQueryProcessor,
        params: RasterVectorJoinParams,
        *,
        path: str,
    ) -> None:
        descriptor = points.result_descriptor
        columns = dict(descriptor.columns)
        columns[params.column] = FeatureDataType.FLOAT
        super().__init__(
            context,
            VectorResultDescriptor(
                data_type=descriptor.data_type,
                spatial_reference=descriptor.spatial_reference,
                columns=columns,
            ),
            path=path,
        )
        self.points = points
        self.raster = raster
        self.params = params

    def batches(self, rect: QueryRectangle) -> Iterator[BatchItem]:
        """Join each batch against the raster under its own points.

        The raster is read over the batch's bounding box, snapped to the
        global grid and padded by one pixel. A failed read yields the
        error in place of the batch.
        """
        tiling = self.context.tiling
        for batch in self.points.batches(rect):
            if isinstance(batch, PartialReadError):
                yield batch
                continue
            bounds = batch.bbox()
            if bounds is None:
                yield batch.with_column(self.params.column, np.empty(0, dtype=np.float64))
                continue
            region_rect = rect.with_bbox(tiling.snap(bounds, rect.resolution, pad=1))
            try:
                region = self.raster.read_region(region_rect)
            except PartialReadError as exc:
                LOGGER.debug("Join raster read failed: %s", exc.message, extra=log_context(self.path))
                yield exc
                continue
            LOGGER.debug("Read %s join raster", region.shape, extra=log_context(self.path))
            yield batch.with_column(self.params.column, sample_points(region, batch))
