"""Output types and result descriptors shared by operators and processors."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping

from geoquery.datatypes.features import FeatureDataType, VectorDataType
from geoquery.datatypes.raster import RasterDataType


class OutputType(Enum):
    """Kind of result an operator produces."""

    RASTER = "Raster"
    VECTOR = "Vector"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: "str | OutputType") -> "OutputType":
        if isinstance(value, OutputType):
            return value
        for member in cls:
            if member.value.lower() == str(value).lower():
                return member
        raise ValueError(f"Unknown output type: {value}")


@dataclass(frozen=True)
class RasterResultDescriptor:
    """What a raster processor emits."""

    data_type: RasterDataType
    spatial_reference: str
    nodata: float | None = None


@dataclass(frozen=True)
class VectorResultDescriptor:
    """What a vector processor emits."""

    data_type: VectorDataType
    spatial_reference: str
    columns: Mapping[str, FeatureDataType] = field(default_factory=dict)
