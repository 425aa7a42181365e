"""Typed kernel programs executed on a device queue.

A :class:`KernelProgram` declares its raster or feature arguments, then
``compile`` checks them against the iteration type and binds a vectorized
numpy function. Raster kernels only see valid pixels; no-data propagates
to the output.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Mapping, Sequence

import numpy as np

from geoquery.datatypes.features import FeatureCollection, FeatureDataType, VectorDataType
from geoquery.datatypes.raster import Raster2D, RasterDataType
from geoquery.engine.device import DeviceQueue
from geoquery.errors import DeviceError


class IterationType(Enum):
    """What one kernel invocation iterates over."""

    RASTER = "raster"
    VECTOR_FEATURES = "vector_features"
    VECTOR_COORDINATES = "vector_coordinates"


@dataclass(frozen=True)
class RasterArgument:
    data_type: RasterDataType


@dataclass(frozen=True)
class VectorArgument:
    vector_type: VectorDataType
    columns: Mapping[str, FeatureDataType] = field(default_factory=dict)


class KernelProgram:
    """Builder for a kernel's argument layout."""

    def __init__(self, iteration_type: IterationType) -> None:
        self.iteration_type = iteration_type
        self.input_rasters: list[RasterArgument] = []
        self.output_rasters: list[RasterArgument] = []
        self.input_features: list[VectorArgument] = []
        self.output_features: list[VectorArgument] = []

    def add_input_raster(self, argument: RasterArgument) -> None:
        self.input_rasters.append(argument)

    def add_output_raster(self, argument: RasterArgument) -> None:
        self.output_rasters.append(argument)

    def add_input_features(self, argument: VectorArgument) -> None:
        self.input_features.append(argument)

    def add_output_features(self, argument: VectorArgument) -> None:
        self.output_features.append(argument)

    def compile(self, function: Callable[..., object], name: str | None = None) -> "CompiledKernel":
        """Validate the argument layout and bind ``function``."""
        if self.iteration_type is IterationType.RASTER:
            valid = bool(self.input_rasters) and bool(self.output_rasters)
        else:
            valid = bool(self.input_features) and bool(self.output_features)
        if not valid:
            raise DeviceError(
                f"Invalid inputs for iteration type {self.iteration_type.value}"
            )
        return CompiledKernel(
            name=name or getattr(function, "__name__", "kernel"),
            iteration_type=self.iteration_type,
            function=function,
            input_rasters=tuple(self.input_rasters),
            output_rasters=tuple(self.output_rasters),
            input_features=tuple(self.input_features),
            output_features=tuple(self.output_features),
        )


@dataclass(frozen=True)
class CompiledKernel:
    """A validated kernel, reusable across tiles and queries."""

    name: str
    iteration_type: IterationType
    function: Callable[..., object]
    input_rasters: tuple[RasterArgument, ...] = ()
    output_rasters: tuple[RasterArgument, ...] = ()
    input_features: tuple[VectorArgument, ...] = ()
    output_features: tuple[VectorArgument, ...] = ()

    def _require(self, iteration_type: IterationType) -> None:
        if self.iteration_type is not iteration_type:
            raise DeviceError(
                f"Kernel '{self.name}' iterates over {self.iteration_type.value}, "
                f"not {iteration_type.value}"
            )

    def run(
        self,
        queue: DeviceQueue,
        inputs: Sequence[Raster2D],
        *,
        nodata: float | None = None,
    ) -> Raster2D:
        """Evaluate over the pixels valid in every input.

        Pixels masked in any input become no-data, as do results that are
        non-finite or outside the output type's range.
        """
        self._require(IterationType.RASTER)
        if len(inputs) != len(self.input_rasters):
            raise DeviceError(
                f"Kernel '{self.name}' expects {len(self.input_rasters)} raster(s), got {len(inputs)}"
            )
        shape = inputs[0].shape
        if any(raster.shape != shape for raster in inputs):
            raise DeviceError(f"Kernel '{self.name}' inputs differ in shape")

        mask = np.zeros(shape, dtype=bool)
        for raster in inputs:
            mask |= raster.mask
        valid = ~mask
        out_type = self.output_rasters[0].data_type
        if nodata is not None and not out_type.can_hold(nodata):
            raise DeviceError(f"No-data value {nodata} does not fit {out_type.value} output")

        def _execute() -> np.ndarray:
            values = [np.asarray(raster.data[valid], dtype=np.float64) for raster in inputs]
            with np.errstate(all="ignore"):
                return np.asarray(self.function(*values), dtype=np.float64)

        result = queue.submit(_execute)
        kept = out_type.representable(result)
        out_mask = mask.copy()
        out_mask[valid] = ~kept
        data = np.full(shape, nodata if nodata is not None else 0, dtype=out_type.dtype)
        data[valid & ~out_mask] = result[kept].astype(out_type.dtype)
        return Raster2D(
            geo_transform=inputs[0].geo_transform,
            data=data,
            nodata=nodata,
            time=inputs[0].time,
            mask=out_mask,
        )

    def run_features(self, queue: DeviceQueue, collection: FeatureCollection) -> np.ndarray:
        """Evaluate once per feature over the attribute columns."""
        self._require(IterationType.VECTOR_FEATURES)
        result = queue.submit(self.function, dict(collection.columns))
        values = np.asarray(result)
        if values.shape != (len(collection),):
            raise DeviceError(
                f"Kernel '{self.name}' returned {values.shape} for {len(collection)} features"
            )
        return values

    def run_coordinates(self, queue: DeviceQueue, collection: FeatureCollection) -> FeatureCollection:
        """Map every coordinate through the kernel, keeping attributes."""
        self._require(IterationType.VECTOR_COORDINATES)
        if collection.is_empty():
            return collection
        xs, ys = queue.submit(
            self.function, collection.coordinates[:, 0].copy(), collection.coordinates[:, 1].copy()
        )
        coordinates = np.column_stack([np.asarray(xs, dtype=np.float64), np.asarray(ys, dtype=np.float64)])
        return collection.with_coordinates(coordinates)
