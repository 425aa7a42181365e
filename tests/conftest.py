from __future__ import annotations

import os
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path


def _venv_python(root: Path) -> Path | None:
    if os.name == "nt":
        candidate = root / ".venv" / "Scripts" / "python.exe"
    else:
        candidate = root / ".venv" / "bin" / "python"
    return candidate if candidate.exists() else None


def _reexec_in_venv() -> None:
    if os.environ.get("GEOQUERY_SKIP_VENV_REEXEC") == "1":
        return
    root = Path(__file__).resolve().parents[1]
    venv_python = _venv_python(root)
    if not venv_python:
        return
    if Path(sys.executable).resolve() == venv_python.resolve():
        return
    os.environ["GEOQUERY_SKIP_VENV_REEXEC"] = "1"
    os.execv(
        str(venv_python),
        [str(venv_python), "-m", "pytest", *sys.argv[1:]],
    )


_reexec_in_venv()

ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = ROOT / "src"
for entry in (SRC_ROOT, ROOT):
    if str(entry) not in sys.path:
        sys.path.insert(0, str(entry))

import numpy as np  # noqa: E402
import pytest  # noqa: E402

from geoquery import config as engine_config  # noqa: E402
from geoquery import perf  # noqa: E402
from geoquery.config import EngineConfig  # noqa: E402
from geoquery.engine.catalog import DatasetCatalog  # noqa: E402
from geoquery.engine.context import DatasetHandleCache, ExecutionContext  # noqa: E402
from geoquery.engine.tiling import TilingSpecification  # noqa: E402
from geoquery.registry import builtin_registry  # noqa: E402
from geoquery.service import QueryEngine  # noqa: E402
from tests.utils import write_raster  # noqa: E402


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch) -> None:
    """Prevent local engine configs and profile dirs from bleeding into tests."""
    monkeypatch.delenv(engine_config.ENV_CONFIG_PATH, raising=False)
    monkeypatch.delenv(perf.ENV_PROFILE_DIR, raising=False)


@pytest.fixture
def executor():
    pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="geoquery-test")
    yield pool
    pool.shutdown(wait=True, cancel_futures=True)


@pytest.fixture
def dataset_cache() -> DatasetHandleCache:
    return DatasetHandleCache()


@pytest.fixture
def registry():
    return builtin_registry()


@pytest.fixture
def dem_catalog(tmp_path) -> DatasetCatalog:
    """Catalog with a 4x4 float DEM over [0, 4] x [0, 4] and a hole at (0, 0)."""
    data = np.arange(16, dtype=np.float32).reshape(4, 4)
    data[0, 0] = -9999.0
    write_raster(tmp_path / "dem.tif", data, bounds=(0.0, 0.0, 4.0, 4.0), nodata=-9999.0)
    return DatasetCatalog.from_files({"dem": tmp_path / "dem.tif"})


@pytest.fixture
def make_context(executor, dataset_cache):
    contexts: list[ExecutionContext] = []

    def _make(catalog: DatasetCatalog | None = None, **kwargs) -> ExecutionContext:
        kwargs.setdefault("tiling", TilingSpecification(tile_shape=(2, 2)))
        kwargs.setdefault("dataset_cache", dataset_cache)
        context = ExecutionContext(
            catalog if catalog is not None else DatasetCatalog(),
            executor=executor,
            **kwargs,
        )
        contexts.append(context)
        return context

    yield _make
    for context in contexts:
        context.close()


@pytest.fixture
def make_engine(registry, dataset_cache):
    engines: list[QueryEngine] = []

    def _make(catalog: DatasetCatalog | None = None, **config) -> QueryEngine:
        config.setdefault("max_workers", 4)
        config.setdefault("tile_size", (2, 2))
        engine = QueryEngine(
            registry=registry,
            catalog=catalog,
            config=EngineConfig(**config),
            dataset_cache=dataset_cache,
        )
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.close()
