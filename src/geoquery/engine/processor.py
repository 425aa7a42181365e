"""Query processors: instantiated operators that answer query rectangles."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import partial
from typing import TYPE_CHECKING, ClassVar, Iterator, Union

import numpy as np

from geoquery.datatypes.crs import same_crs
from geoquery.datatypes.features import FeatureCollection
from geoquery.datatypes.primitives import QueryRectangle
from geoquery.datatypes.raster import Raster2D, RasterTile
from geoquery.engine.stream import ResultStream
from geoquery.engine.tiling import TileInfo, region_geo_transform, region_shape
from geoquery.engine.types import OutputType, RasterResultDescriptor, VectorResultDescriptor
from geoquery.errors import InvalidQueryError, PartialReadError, WorkflowTypeError
from geoquery.logging_utils import log_context

if TYPE_CHECKING:
    from geoquery.engine.context import ExecutionContext

LOGGER = logging.getLogger(__name__)

# A failed batch is yielded in place as its error so later batches still flow.
BatchItem = Union[FeatureCollection, PartialReadError]


@dataclass(frozen=True)
class QueryOptions:
    """Per-query overrides; ``None`` falls back to the context defaults."""

    strict: bool | None = None
    timeout: float | None = None
    high_water_mark: int | None = None

    def __post_init__(self) -> None:
        if self.timeout is not None and not self.timeout > 0:
            raise InvalidQueryError(f"Query timeout must be > 0, got {self.timeout}")
        if self.high_water_mark is not None and self.high_water_mark < 1:
            raise InvalidQueryError("high_water_mark must be >= 1")


class QueryProcessor(ABC):
    """Base for raster and vector processors."""

    output_type: ClassVar[OutputType]

    def __init__(self, context: "ExecutionContext", *, path: str) -> None:
        self.context = context
        self.path = path

    @property
    @abstractmethod
    def result_descriptor(self) -> RasterResultDescriptor | VectorResultDescriptor:
        """Describe what the processor emits."""

    @abstractmethod
    def query(self, rect: QueryRectangle, options: QueryOptions | None = None) -> ResultStream:
        """Start answering ``rect`` and return the chunk stream."""

    def check_query(self, rect: QueryRectangle) -> None:
        """Reject rectangles this processor cannot answer."""
        spatial_reference = self.result_descriptor.spatial_reference
        if not same_crs(rect.spatial_reference, spatial_reference):
            raise InvalidQueryError(
                f"Query is in {rect.spatial_reference} but {self.path} produces {spatial_reference}",
                operator_path=self.path,
            )

    def as_raster(self) -> "RasterQueryProcessor":
        raise WorkflowTypeError(OutputType.RASTER, self.output_type, operator_path=self.path)

    def as_vector(self) -> "VectorQueryProcessor":
        raise WorkflowTypeError(OutputType.VECTOR, self.output_type, operator_path=self.path)

    def _stream_options(self, options: QueryOptions | None) -> dict[str, object]:
        options = options or QueryOptions()
        return {
            "strict": options.strict,
            "timeout": options.timeout,
            "high_water_mark": options.high_water_mark,
        }


class RasterQueryProcessor(QueryProcessor):
    """Produces raster tiles on the context's tile grid."""

    output_type = OutputType.RASTER

    def __init__(
        self,
        context: "ExecutionContext",
        descriptor: RasterResultDescriptor,
        *,
        path: str,
    ) -> None:
        super().__init__(context, path=path)
        self._descriptor = descriptor

    @property
    def result_descriptor(self) -> RasterResultDescriptor:
        return self._descriptor

    def as_raster(self) -> "RasterQueryProcessor":
        return self

    def query(
        self, rect: QueryRectangle, options: QueryOptions | None = None
    ) -> ResultStream[RasterTile]:
        """Stream every grid tile intersecting ``rect`` in row-major order."""
        self.check_query(rect)
        tiles = self.context.tiling.tiles_for(rect)
        LOGGER.debug("Query covers %d tile(s)", len(tiles), extra=log_context(self.path))
        tasks = [partial(self._produce_tile, tile, rect) for tile in tiles]
        return self.context.stream_from_tasks(tasks, label=self.path, **self._stream_options(options))

    def _produce_tile(self, tile: TileInfo, rect: QueryRectangle) -> RasterTile:
        try:
            raster = self.compute_tile(tile, rect)
        except PartialReadError as exc:
            if exc.tile_index is None:
                exc.tile_index = tile.index
            raise
        LOGGER.debug("Computed tile %s", tile.grid_index, extra=log_context(self.path, tile.index))
        return RasterTile.from_raster(raster, index=tile.index, grid_index=tile.grid_index)

    @abstractmethod
    def compute_tile(self, tile: TileInfo, rect: QueryRectangle) -> Raster2D:
        """Compute one grid tile for ``rect``; called from pool workers."""

    def read_region(self, rect: QueryRectangle) -> Raster2D:
        """Assemble an arbitrary rectangle from grid tiles.

        Tiles are blitted onto ``rect`` snapped outward to the global pixel
        grid. A rectangle off that grid is then sampled from it by nearest
        neighbour, so the result always lies on ``rect``'s own grid.
        """
        tiling = self.context.tiling
        snapped = tiling.snap_rect(rect)
        output = self.empty_raster(snapped)
        for tile in tiling.tiles_for(snapped):
            output.blit(self.compute_tile(tile, snapped))
        if tiling.is_aligned(rect):
            return output
        return output.sample_nearest(region_geo_transform(rect), region_shape(rect), time=rect.time)

    def empty_raster(self, rect: QueryRectangle) -> Raster2D:
        return Raster2D.empty(
            region_geo_transform(rect),
            region_shape(rect),
            dtype=self._descriptor.data_type.dtype,
            nodata=self._descriptor.nodata,
            time=rect.time,
        )

    def empty_tile(self, tile: TileInfo, rect: QueryRectangle) -> Raster2D:
        return Raster2D.empty(
            tile.geo_transform,
            tile.shape,
            dtype=self._descriptor.data_type.dtype,
            nodata=self._descriptor.nodata,
            time=rect.time,
        )


class VectorQueryProcessor(QueryProcessor):
    """Produces ordered feature-collection batches."""

    output_type = OutputType.VECTOR

    def __init__(
        self,
        context: "ExecutionContext",
        descriptor: VectorResultDescriptor,
        *,
        path: str,
    ) -> None:
        super().__init__(context, path=path)
        self._descriptor = descriptor

    @property
    def result_descriptor(self) -> VectorResultDescriptor:
        return self._descriptor

    def as_vector(self) -> "VectorQueryProcessor":
        return self

    def query(
        self, rect: QueryRectangle, options: QueryOptions | None = None
    ) -> ResultStream[FeatureCollection]:
        """Stream batches for ``rect``, renumbered in emission order."""
        self.check_query(rect)
        return self.context.stream_from_iterable(
            partial(self._indexed_batches, rect), label=self.path, **self._stream_options(options)
        )

    def _indexed_batches(self, rect: QueryRectangle) -> Iterator[BatchItem]:
        batches = self.batches(rect)
        try:
            for index, batch in enumerate(batches):
                if isinstance(batch, PartialReadError):
                    yield batch
                else:
                    yield batch.with_index(index)
        finally:
            close = getattr(batches, "close", None)
            if close is not None:
                close()

    @abstractmethod
    def batches(self, rect: QueryRectangle) -> Iterator[BatchItem]:
        """Yield batches for ``rect``; runs on a single pool worker.

        A batch whose inputs could not be read is yielded as its
        :class:`PartialReadError`.
        """

    def collect(self, rect: QueryRectangle) -> FeatureCollection:
        """Concatenate every batch for ``rect`` synchronously; a failed batch raises."""
        parts = []
        for batch in self.batches(rect):
            if isinstance(batch, PartialReadError):
                raise batch
            parts.append(batch)
        if not parts:
            return FeatureCollection.empty(self._descriptor.columns)
        coordinates = np.concatenate([part.coordinates for part in parts])
        columns = {
            name: np.concatenate([part.columns[name] for part in parts])
            for name in parts[0].columns
        }
        return FeatureCollection(coordinates, columns, data_type=parts[0].data_type)
