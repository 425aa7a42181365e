"""Query engine facade: workflow registration and query execution."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

from geoquery.config import EngineConfig
from geoquery.datatypes.primitives import QueryRectangle
from geoquery.engine.catalog import DatasetCatalog, DatasetInfo, load_dataset_catalog
from geoquery.engine.context import DatasetHandleCache, ExecutionContext, shared_dataset_cache
from geoquery.engine.descriptor import Workflow, parse_workflow
from geoquery.engine.operator import Operator, build_workflow
from geoquery.engine.processor import QueryOptions, QueryProcessor
from geoquery.engine.registry import OperatorRegistry
from geoquery.engine.stream import ResultStream
from geoquery.engine.workflows import WorkflowStore
from geoquery.perf import PerfTracker
from geoquery.registry import default_registry

LOGGER = logging.getLogger(__name__)


class QueryEngine:
    """Registers workflows and answers queries against them.

    The engine owns the task pool shared by all of its queries. Each query
    gets its own :class:`ExecutionContext`, released when the returned
    stream is exhausted or closed.
    """

    def __init__(
        self,
        *,
        registry: OperatorRegistry | None = None,
        catalog: DatasetCatalog | None = None,
        config: EngineConfig | None = None,
        dataset_cache: DatasetHandleCache | None = None,
        store: WorkflowStore | None = None,
    ) -> None:
        self.config = config if config is not None else EngineConfig()
        self.registry = registry if registry is not None else default_registry()
        if catalog is None and self.config.catalog_path:
            catalog = load_dataset_catalog(Path(self.config.catalog_path))
        self.catalog = catalog if catalog is not None else DatasetCatalog()
        self.dataset_cache = dataset_cache if dataset_cache is not None else shared_dataset_cache()
        self.store = store if store is not None else WorkflowStore()
        self.tiling = self.config.tiling()
        self.executor = ThreadPoolExecutor(
            max_workers=self.config.worker_count(), thread_name_prefix="geoquery"
        )
        self._operators: dict[str, Operator] = {}
        self._lock = threading.Lock()
        self._queries = 0

    def register(self, raw: Any) -> str:
        """Validate a workflow document and return its content-derived id."""
        workflow = raw if isinstance(raw, Workflow) else parse_workflow(raw)
        operator = build_workflow(workflow, self.registry)
        workflow_id = self.store.register(workflow)
        with self._lock:
            self._operators.setdefault(workflow_id, operator)
        return workflow_id

    def workflow(self, workflow_id: str) -> Workflow:
        return self.store.load(workflow_id)

    def operator(self, workflow_id: str) -> Operator:
        """Return the built operator tree of a registered workflow."""
        with self._lock:
            operator = self._operators.get(workflow_id)
        if operator is not None:
            return operator
        operator = build_workflow(self.store.load(workflow_id), self.registry)
        with self._lock:
            return self._operators.setdefault(workflow_id, operator)

    def resolve_dataset_catalog(self, dataset_id: str) -> DatasetInfo:
        return self.catalog.resolve(dataset_id)

    def create_context(self, *, strict: bool | None = None, name: str = "query") -> ExecutionContext:
        config = self.config
        return ExecutionContext(
            self.catalog,
            executor=self.executor,
            dataset_cache=self.dataset_cache,
            tiling=self.tiling,
            feature_batch_size=config.feature_batch_size,
            high_water_mark=config.high_water_mark,
            strict=config.strict if strict is None else strict,
            timeout=config.timeout,
            device=config.device,
            name=name,
        )

    def instantiate(self, workflow_id: str, context: ExecutionContext) -> QueryProcessor:
        return self.operator(workflow_id).instantiate(context)

    def query(
        self,
        workflow_id: str,
        rect: QueryRectangle,
        *,
        strict: bool | None = None,
        timeout: float | None = None,
        perf: PerfTracker | None = None,
    ) -> ResultStream:
        """Start a query and return its ordered chunk stream.

        Instantiation failures close the query's context before the error
        propagates, so no dataset handle outlives a failed query.
        """
        perf = perf if perf is not None else PerfTracker(enabled=False)
        options = QueryOptions(strict=strict, timeout=timeout)
        with perf.span("build"):
            operator = self.operator(workflow_id)
        with self._lock:
            self._queries += 1
            name = f"{workflow_id[:8]}-{self._queries}"
        context = self.create_context(strict=strict, name=name)
        try:
            with perf.span("instantiate"):
                processor = operator.instantiate(context)
            stream = processor.query(rect, options)
        except BaseException:
            context.close()
            raise
        stream.add_close_callback(context.close)
        LOGGER.debug("Started query %s over %s", name, rect.bbox.as_tuple())
        return stream

    def close(self) -> None:
        self.executor.shutdown(wait=True, cancel_futures=True)

    def __enter__(self) -> "QueryEngine":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
