"""Per-query execution context and the shared dataset handle cache."""

from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from contextlib import ExitStack
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence, Tuple, TypeVar

import numpy as np
import rasterio
from rasterio.enums import Resampling
from rasterio.windows import Window

from geoquery.engine.catalog import DatasetCatalog, DatasetInfo
from geoquery.engine.device import DeviceQueue
from geoquery.engine.stream import ResultStream
from geoquery.engine.tiling import TilingSpecification
from geoquery.errors import DatasetOpenError, InstantiationError

T = TypeVar("T")

DEFAULT_FEATURE_BATCH_SIZE = 1024
DEFAULT_HIGH_WATER_MARK = 8

LOGGER = logging.getLogger(__name__)


class DatasetHandle:
    """An open raster dataset shared between queries.

    Reads are serialized per handle because a single GDAL dataset handle is
    not safe for concurrent use.
    """

    def __init__(self, dataset_id: str, dataset: Any, *, key: Tuple[str, str]) -> None:
        self.dataset_id = dataset_id
        self.key = key
        self._dataset = dataset
        self._lock = threading.Lock()
        self.closed = False

    @property
    def crs(self) -> Any:
        return self._dataset.crs

    @property
    def transform(self) -> Any:
        return self._dataset.transform

    @property
    def nodata(self) -> float | None:
        return self._dataset.nodata

    @property
    def count(self) -> int:
        return int(self._dataset.count)

    @property
    def dtype(self) -> str:
        return str(self._dataset.dtypes[0])

    @property
    def shape(self) -> tuple[int, int]:
        return (int(self._dataset.height), int(self._dataset.width))

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        left, bottom, right, top = self._dataset.bounds
        return (left, bottom, right, top)

    def read(
        self,
        band: int,
        *,
        window: Window,
        out_shape: tuple[int, int],
        resampling: Resampling = Resampling.nearest,
    ) -> np.ndarray:
        """Read a (possibly fractional) window of one band into ``out_shape``."""
        with self._lock:
            if self.closed:
                raise OSError(f"Dataset handle {self.dataset_id} is closed")
            return self._dataset.read(
                band,
                window=window,
                out_shape=out_shape,
                resampling=resampling,
            )

    def close(self) -> None:
        with self._lock:
            if not self.closed:
                self._dataset.close()
                self.closed = True


CacheKey = Tuple[str, str]


def cache_key(info: DatasetInfo) -> CacheKey:
    """Key a dataset by id and resolved location.

    Catalogs may map the same id to different files, so the id alone does
    not identify an open handle.
    """
    return (info.dataset_id, str(Path(info.location).expanduser().resolve()))


def _open_rasterio(info: DatasetInfo) -> Any:
    return rasterio.open(info.location)


@dataclass
class _CacheEntry:
    future: Future
    refcount: int = 0
    handle: DatasetHandle | None = None


class DatasetHandleCache:
    """Process-wide cache of open dataset handles.

    Concurrent acquisitions of the same dataset share one open; the handle
    is closed when the last holder releases it.
    """

    def __init__(self, opener: Callable[[DatasetInfo], Any] | None = None) -> None:
        self._opener = opener if opener is not None else _open_rasterio
        self._entries: dict[CacheKey, _CacheEntry] = {}
        self._lock = threading.Lock()
        self.opens = 0

    def acquire(self, info: DatasetInfo) -> DatasetHandle:
        """Return an open handle for ``info`` and take a reference to it."""
        key = cache_key(info)
        with self._lock:
            entry = self._entries.get(key)
            owner = entry is None
            if entry is None:
                entry = _CacheEntry(Future())
                self._entries[key] = entry
            entry.refcount += 1

        if owner:
            try:
                dataset = self._opener(info)
            except Exception as exc:
                with self._lock:
                    if self._entries.get(key) is entry:
                        del self._entries[key]
                entry.future.set_exception(exc)
            else:
                handle = DatasetHandle(info.dataset_id, dataset, key=key)
                with self._lock:
                    self.opens += 1
                    entry.handle = handle
                LOGGER.debug("Opened dataset %s from %s", info.dataset_id, info.location)
                entry.future.set_result(handle)

        try:
            return entry.future.result()
        except Exception as exc:
            raise DatasetOpenError(
                f"Failed to open dataset: {exc}", dataset_id=info.dataset_id
            ) from exc

    def release(self, handle: DatasetHandle) -> None:
        """Drop one reference; close the handle when none remain."""
        with self._lock:
            entry = self._entries.get(handle.key)
            if entry is None or entry.handle is not handle:
                LOGGER.warning("Release of dataset %s without a held handle", handle.dataset_id)
                return
            entry.refcount -= 1
            if entry.refcount > 0:
                return
            del self._entries[handle.key]
        handle.close()
        LOGGER.debug("Closed dataset %s", handle.dataset_id)

    def refcount(self, dataset_id: str) -> int:
        """Total references held on every location opened under ``dataset_id``."""
        with self._lock:
            return sum(
                entry.refcount for key, entry in self._entries.items() if key[0] == dataset_id
            )

    def open_ids(self) -> list[str]:
        with self._lock:
            return sorted({key[0] for key in self._entries})

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


@lru_cache(maxsize=1)
def shared_dataset_cache() -> DatasetHandleCache:
    """Return the process-wide dataset handle cache."""
    return DatasetHandleCache()


@lru_cache(maxsize=1)
def shared_task_pool() -> ThreadPoolExecutor:
    """Return a process-wide task pool for contexts created without one."""
    return ThreadPoolExecutor(max_workers=os.cpu_count() or 1, thread_name_prefix="geoquery")


class ExecutionContext:
    """Resources bound to one query: datasets, task pool, device queue.

    Everything acquired through the context is released by :meth:`close`,
    which runs when the query's stream finishes or is closed.
    """

    def __init__(
        self,
        catalog: DatasetCatalog,
        *,
        executor: Executor | None = None,
        dataset_cache: DatasetHandleCache | None = None,
        tiling: TilingSpecification | None = None,
        feature_batch_size: int = DEFAULT_FEATURE_BATCH_SIZE,
        high_water_mark: int = DEFAULT_HIGH_WATER_MARK,
        strict: bool = False,
        timeout: float | None = None,
        device: str = "cpu",
        name: str = "query",
    ) -> None:
        if feature_batch_size <= 0:
            raise ValueError("feature_batch_size must be > 0")
        self.catalog = catalog
        self.executor = executor if executor is not None else shared_task_pool()
        self.dataset_cache = dataset_cache if dataset_cache is not None else shared_dataset_cache()
        self.tiling = tiling if tiling is not None else TilingSpecification()
        self.feature_batch_size = feature_batch_size
        self.high_water_mark = high_water_mark
        self.strict = strict
        self.timeout = timeout
        self.device = device
        self.name = name
        self._stack = ExitStack()
        self._lock = threading.Lock()
        self._device_queue: DeviceQueue | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def dataset_info(self, dataset_id: str) -> DatasetInfo:
        return self.catalog.resolve(dataset_id)

    def resolve_dataset(self, dataset_id: str) -> DatasetHandle:
        """Open (or share) a dataset for the lifetime of this context."""
        info = self.catalog.resolve(dataset_id)
        handle = self.dataset_cache.acquire(info)
        with self._lock:
            if not self._closed:
                self._stack.callback(self.dataset_cache.release, handle)
                return handle
        self.dataset_cache.release(handle)
        raise InstantiationError("Execution context is closed", dataset_id=dataset_id)

    def acquire_device_queue(self) -> DeviceQueue:
        """Return this context's serialized device queue, creating it on first use."""
        with self._lock:
            if self._closed:
                raise InstantiationError("Execution context is closed")
            if self._device_queue is None:
                self._device_queue = DeviceQueue(self.device, name=f"{self.name}-device")
                self._stack.callback(self._device_queue.close)
            return self._device_queue

    def stream_from_tasks(
        self,
        tasks: Sequence[Callable[[], T]],
        *,
        label: str,
        strict: bool | None = None,
        timeout: float | None = None,
        high_water_mark: int | None = None,
    ) -> ResultStream[T]:
        return ResultStream.from_tasks(
            tasks,
            executor=self.executor,
            high_water_mark=high_water_mark or self.high_water_mark,
            strict=self.strict if strict is None else strict,
            timeout=timeout if timeout is not None else self.timeout,
            label=label,
        )

    def stream_from_iterable(
        self,
        factory: Callable[[], Iterable[T]],
        *,
        label: str,
        strict: bool | None = None,
        timeout: float | None = None,
        high_water_mark: int | None = None,
    ) -> ResultStream[T]:
        return ResultStream.from_iterable(
            factory,
            executor=self.executor,
            high_water_mark=high_water_mark or self.high_water_mark,
            strict=self.strict if strict is None else strict,
            timeout=timeout if timeout is not None else self.timeout,
            label=label,
        )

    def close(self) -> None:
        """Release every dataset and device queue acquired by this context."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._stack.close()
        LOGGER.debug("Closed execution context %s", self.name)

    def __enter__(self) -> "ExecutionContext":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
