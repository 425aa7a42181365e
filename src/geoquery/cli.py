"""Command-line interface for geoquery."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from geoquery import __version__
from geoquery.config import load_engine_config
from geoquery.datatypes.primitives import QueryRectangle, TimeInterval
from geoquery.datatypes.raster import Raster2D, RasterTile
from geoquery.engine.catalog import load_dataset_catalog
from geoquery.engine.descriptor import parse_workflow
from geoquery.engine.stream import ChunkFailure, ResultStream
from geoquery.engine.tiling import region_geo_transform, region_shape
from geoquery.engine.types import OutputType
from geoquery.errors import GeoQueryError
from geoquery.export import write_geojson, write_geotiff
from geoquery.logging_utils import LogOptions, configure_logging
from geoquery.perf import PerfTracker, resolve_metrics_path, write_metrics
from geoquery.registry import default_registry, list_operators
from geoquery.service import QueryEngine

LOGGER = logging.getLogger("geoquery.cli")


def _read_workflow(value: str) -> Any:
    """Load a workflow document from a file path or ``-`` for stdin."""
    if value == "-":
        text = sys.stdin.read()
    else:
        text = Path(value).read_text(encoding="utf-8")
    return parse_workflow(text)


def _add_register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the workflow validation subcommand."""
    register = subparsers.add_parser(
        "register", help="Validate a workflow and print its content-derived id."
    )
    register.add_argument("workflow", help="Workflow JSON file, or - for stdin.")


def _add_query_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the query subcommand."""
    query = subparsers.add_parser("query", help="Run a workflow over a query rectangle.")
    query.add_argument("workflow", help="Workflow JSON file, or - for stdin.")
    query.add_argument(
        "--bbox",
        nargs=4,
        type=float,
        required=True,
        metavar=("XMIN", "YMIN", "XMAX", "YMAX"),
        help="Query bounds in the query spatial reference.",
    )
    query.add_argument(
        "--resolution",
        nargs="+",
        type=float,
        default=[1.0],
        metavar="SIZE",
        help="Pixel size; one value for square pixels or X and Y sizes.",
    )
    query.add_argument(
        "--time",
        help="Time interval as start/end (ISO 8601 or epoch millis) or a single instant.",
    )
    query.add_argument("--crs", default="EPSG:4326", help="Query spatial reference.")
    query.add_argument("--catalog", help="Dataset catalog JSON file.")
    query.add_argument("--config", help="Engine config JSON file (defaults to $GEOQUERY_CONFIG).")
    query.add_argument(
        "--strict",
        action="store_true",
        help="Abort the query on the first failed chunk.",
    )
    query.add_argument("--timeout", type=float, help="Query deadline in seconds.")
    query.add_argument(
        "--output",
        help="Write raster output as GeoTIFF or vector output as GeoJSON.",
    )
    query.add_argument(
        "--metrics-json",
        help="Write timing metrics JSON to this path.",
    )


def _add_operators_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the operator listing subcommand."""
    operators = subparsers.add_parser("operators", help="List registered operators.")
    operators.add_argument(
        "--format",
        choices=("text", "json"),
        default="text",
        help="Output format.",
    )


def _add_catalog_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the dataset catalog lookup subcommand."""
    catalog = subparsers.add_parser("catalog", help="Show dataset catalog metadata.")
    catalog.add_argument("dataset", help="Dataset id to resolve.")
    catalog.add_argument("--catalog", required=True, help="Dataset catalog JSON file.")


def _add_version_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the version subcommand."""
    subparsers.add_parser("version", help="Print the current version.")


def _query_rectangle(args: argparse.Namespace) -> QueryRectangle:
    if len(args.resolution) == 1:
        resolution: float | tuple[float, float] = args.resolution[0]
    elif len(args.resolution) == 2:
        resolution = (args.resolution[0], args.resolution[1])
    else:
        raise ValueError("--resolution takes one or two values")
    time = TimeInterval.parse(args.time) if args.time else None
    return QueryRectangle.create(
        args.bbox,
        resolution=resolution,
        time=time,
        spatial_reference=args.crs,
    )


def _failure_summary(failure: ChunkFailure) -> dict[str, Any]:
    return {"index": failure.index, "error": str(failure.error)}


def _tile_summary(tile: RasterTile) -> dict[str, Any]:
    valid = tile.data[~tile.mask]
    summary: dict[str, Any] = {
        "index": tile.index,
        "grid_index": list(tile.grid_index),
        "shape": list(tile.shape),
        "valid_pixels": int(valid.size),
    }
    if valid.size:
        summary["min"] = float(valid.min())
        summary["max"] = float(valid.max())
    return summary


def _consume_raster(
    stream: ResultStream, rect: QueryRectangle, output: Path | None, perf: PerfTracker
) -> int:
    """Print tile summaries, or blit tiles onto ``rect`` and write a GeoTIFF.

    ``rect`` must lie on the tile grid; the caller snaps it.
    """
    failures = 0
    canvas: Raster2D | None = None
    for item in stream:
        if isinstance(item, ChunkFailure):
            failures += 1
            perf.count("failed_chunks")
            if output is None:
                print(json.dumps(_failure_summary(item)))
            continue
        perf.count("chunks")
        if output is None:
            print(json.dumps(_tile_summary(item)))
            continue
        if canvas is None:
            canvas = Raster2D.empty(
                region_geo_transform(rect),
                region_shape(rect),
                dtype=item.data.dtype,
                nodata=item.nodata,
                time=rect.time,
            )
        canvas.blit(item)
    if output is not None and canvas is not None:
        write_geotiff(canvas, output, rect.spatial_reference)
        LOGGER.info("Wrote raster output to %s", output)
    return failures


def _consume_vector(stream: ResultStream, output: Path | None, perf: PerfTracker) -> int:
    failures = 0
    batches = []
    for item in stream:
        if isinstance(item, ChunkFailure):
            failures += 1
            perf.count("failed_chunks")
            if output is None:
                print(json.dumps(_failure_summary(item)))
            continue
        perf.count("chunks")
        perf.count("features", len(item))
        if output is None:
            print(json.dumps({"index": item.index, "features": len(item)}))
        else:
            batches.append(item)
    if output is not None:
        write_geojson(batches, output)
        LOGGER.info("Wrote %d batch(es) to %s", len(batches), output)
    return failures


def _run_query(args: argparse.Namespace) -> int:
    config = load_engine_config(Path(args.config) if args.config else None)
    catalog = load_dataset_catalog(Path(args.catalog)) if args.catalog else None
    rect = _query_rectangle(args)
    output = Path(args.output) if args.output else None
    metrics_path = resolve_metrics_path(args.metrics_json)
    perf = PerfTracker(enabled=metrics_path is not None)
    perf.start()
    with QueryEngine(catalog=catalog, config=config) as engine:
        workflow_id = engine.register(_read_workflow(args.workflow))
        output_type = engine.workflow(workflow_id).output_type
        stream = engine.query(
            workflow_id,
            rect,
            strict=True if args.strict else None,
            timeout=args.timeout,
            perf=perf,
        )
        with stream, perf.span("stream"):
            if output_type is OutputType.RASTER:
                failures = _consume_raster(stream, engine.tiling.snap_rect(rect), output, perf)
            else:
                failures = _consume_vector(stream, output, perf)
    perf.stop()
    if metrics_path is not None:
        write_metrics(metrics_path, perf.summary())
        LOGGER.info("Wrote metrics to %s", metrics_path)
    if failures:
        LOGGER.error("Query completed with %d failed chunk(s).", failures)
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    """Run the CLI entrypoint and return an exit code."""
    parser = argparse.ArgumentParser(
        prog="geoquery",
        description="Geospatial workflow query engine",
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (repeatable).",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Reduce log output to warnings and errors.",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Emit logs as JSON on stderr.",
    )
    parser.add_argument(
        "--log-file",
        help="Optional path for JSON log output.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    _add_register_parser(subparsers)
    _add_query_parser(subparsers)
    _add_operators_parser(subparsers)
    _add_catalog_parser(subparsers)
    _add_version_parser(subparsers)

    args = parser.parse_args(argv)
    log_file_value = getattr(args, "log_file", None)
    log_options = LogOptions(
        verbose=getattr(args, "verbose", 0) or 0,
        quiet=bool(getattr(args, "quiet", False)),
        log_file=Path(log_file_value) if log_file_value else None,
        json_console=bool(getattr(args, "log_json", False)),
    )
    configure_logging(log_options)

    if args.command == "version":
        print(__version__)
        return 0
    if args.command == "operators":
        operators = list_operators(default_registry())
        if args.format == "json":
            print(json.dumps(operators, indent=2))
        else:
            for entry in operators:
                sources = ", ".join(entry["sources"]) or "-"
                print(f"{entry['tag']}: {entry['output_type']} <- [{sources}]")
        return 0
    try:
        if args.command == "register":
            workflow = _read_workflow(args.workflow)
            with QueryEngine() as engine:
                print(engine.register(workflow))
            return 0
        if args.command == "catalog":
            catalog = load_dataset_catalog(Path(args.catalog))
            print(json.dumps(catalog.resolve(args.dataset).to_dict(), indent=2))
            return 0
        if args.command == "query":
            return _run_query(args)
    except GeoQueryError as exc:
        LOGGER.error("%s", exc)
        return 1
    except (OSError, ValueError, TypeError) as exc:
        LOGGER.error("%s", exc)
        return 1

    parser.error("Unknown command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
