"""Serialized compute-device queues."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, TypeVar

from geoquery.errors import DeviceError

R = TypeVar("R")

SUPPORTED_DEVICES = ("cpu",)

LOGGER = logging.getLogger(__name__)


class DeviceQueue:
    """Runs kernels one at a time on a dedicated worker.

    Submissions from many query tasks are serialized; only the submitting
    task waits for its kernel, other tasks keep running.
    """

    def __init__(self, device: str = "cpu", *, name: str = "device") -> None:
        if device not in SUPPORTED_DEVICES:
            raise DeviceError(
                f"Unsupported compute device '{device}'; available: {', '.join(SUPPORTED_DEVICES)}"
            )
        self.device = device
        self.name = name
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"geoquery-{name}")
        self._lock = threading.Lock()
        self._closed = False
        self._submitted = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def submitted(self) -> int:
        """Number of kernels run on this queue."""
        return self._submitted

    def submit(self, kernel: Callable[..., R], *args: Any, **kwargs: Any) -> R:
        """Run ``kernel`` on the device and return its result."""
        with self._lock:
            if self._closed:
                raise DeviceError(f"Device queue '{self.name}' is closed")
            try:
                future = self._executor.submit(kernel, *args, **kwargs)
            except RuntimeError as exc:
                raise DeviceError(f"Device queue '{self.name}' is closed") from exc
            self._submitted += 1
        try:
            return future.result()
        except DeviceError:
            raise
        except Exception as exc:
            name = getattr(kernel, "__name__", repr(kernel))
            raise DeviceError(f"Kernel '{name}' failed on {self.device}: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._executor.shutdown(wait=True)
        LOGGER.debug("Closed device queue %s after %d kernel(s)", self.name, self._submitted)

    def __enter__(self) -> "DeviceQueue":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
