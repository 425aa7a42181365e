"""In-memory store of registered workflows keyed by content-derived id."""

from __future__ import annotations

import logging
import threading
from typing import Iterator

from geoquery.engine.descriptor import Workflow
from geoquery.errors import WorkflowNotFoundError

LOGGER = logging.getLogger(__name__)


class WorkflowStore:
    """Thread-safe id-to-workflow map; registering is idempotent."""

    def __init__(self) -> None:
        self._workflows: dict[str, Workflow] = {}
        self._lock = threading.Lock()

    def register(self, workflow: Workflow) -> str:
        workflow_id = workflow.workflow_id
        with self._lock:
            if workflow_id not in self._workflows:
                self._workflows[workflow_id] = workflow
                LOGGER.info("Registered %s workflow %s", workflow.output_type, workflow_id)
        return workflow_id

    def load(self, workflow_id: str) -> Workflow:
        with self._lock:
            try:
                return self._workflows[workflow_id]
            except KeyError as exc:
                raise WorkflowNotFoundError(f"Workflow not found: {workflow_id}") from exc

    def __contains__(self, workflow_id: object) -> bool:
        with self._lock:
            return workflow_id in self._workflows

    def __len__(self) -> int:
        with self._lock:
            return len(self._workflows)

    def __iter__(self) -> Iterator[str]:
        with self._lock:
            return iter(sorted(self._workflows))
