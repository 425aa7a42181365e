from __future__ import annotations

import json
import time
from pathlib import Path

from geoquery.perf import PerfTracker, resolve_metrics_path, write_metrics


def test_perf_tracker_records_spans() -> None:
    perf = PerfTracker(enabled=True, track_memory=True)
    perf.start()
    with perf.span("stream"):
        time.sleep(0.001)
    perf.count("tiles", 4)
    perf.count("tiles")
    perf.stop()

    summary = perf.summary()
    assert summary["total_seconds"] >= 0
    assert summary["spans"]["stream"]["count"] == 1
    assert summary["counters"] == {"tiles": 5}
    assert "peak_memory_mb" in summary


def test_perf_tracker_disabled_is_empty() -> None:
    perf = PerfTracker(enabled=False, track_memory=True)
    perf.start()
    with perf.span("noop"):
        pass
    perf.count("tiles")
    perf.stop()
    assert perf.summary() == {}


def test_resolve_metrics_path_from_env(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("GEOQUERY_PROFILE_DIR", str(tmp_path))
    resolved = resolve_metrics_path(None)
    assert resolved == tmp_path / "query_metrics.json"


def test_resolve_metrics_path_from_arg(tmp_path: Path) -> None:
    path = tmp_path / "metrics.json"
    assert resolve_metrics_path(str(path)) == path


def test_resolve_metrics_path_default_none() -> None:
    assert resolve_metrics_path(None) is None


def test_write_metrics_creates_parent(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "metrics.json"
    write_metrics(path, {"total_seconds": 1.5})
    assert json.loads(path.read_text(encoding="utf-8")) == {"total_seconds": 1.5}
