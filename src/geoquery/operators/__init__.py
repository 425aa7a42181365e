"""Built-in source adapters and combinators."""

from geoquery.operators.expression import Expression
from geoquery.operators.focal import FocalAggregate
from geoquery.operators.gdal_source import GdalSource
from geoquery.operators.mock import MockPointSource, MockRasterSource
from geoquery.operators.reprojection import RasterReprojection, VectorReprojection
from geoquery.operators.vector import FeatureAttributeFilter, RasterVectorJoin

BUILTIN_OPERATORS = (
    GdalSource,
    MockRasterSource,
    MockPointSource,
    Expression,
    FocalAggregate,
    RasterReprojection,
    VectorReprojection,
    FeatureAttributeFilter,
    RasterVectorJoin,
)

__all__ = [
    "BUILTIN_OPERATORS",
    "Expression",
    "FeatureAttributeFilter",
    "FocalAggregate",
    "GdalSource",
    "MockPointSource",
    "MockRasterSource",
    "RasterReprojection",
    "RasterVectorJoin",
    "VectorReprojection",
]
