"""Error taxonomy for workflow validation and query execution."""

from __future__ import annotations


class GeoQueryError(Exception):
    """Base error carrying optional operator, tile, and dataset context."""

    def __init__(
        self,
        message: str,
        *,
        operator_path: str | None = None,
        tile_index: int | None = None,
        dataset_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.operator_path = operator_path
        self.tile_index = tile_index
        self.dataset_id = dataset_id

    def context(self) -> dict[str, object]:
        """Return the diagnostic context that is set on this error."""
        payload: dict[str, object] = {}
        if self.operator_path is not None:
            payload["operator"] = self.operator_path
        if self.tile_index is not None:
            payload["tile"] = self.tile_index
        if self.dataset_id is not None:
            payload["dataset"] = self.dataset_id
        return payload

    def __str__(self) -> str:
        details = self.context()
        if not details:
            return self.message
        suffix = ", ".join(f"{key}={value}" for key, value in details.items())
        return f"{self.message} ({suffix})"


class WorkflowError(GeoQueryError):
    """Raised when a workflow cannot be parsed, resolved, or type-checked."""


class ParseError(WorkflowError):
    """Malformed descriptor structure."""


class UnknownOperatorError(WorkflowError):
    """Descriptor tag has no registered operator."""

    def __init__(self, tag: str, *, operator_path: str | None = None) -> None:
        super().__init__(f"Unknown operator: {tag}", operator_path=operator_path)
        self.tag = tag


class ArityError(WorkflowError):
    """Operator received the wrong number of children."""

    def __init__(
        self,
        tag: str,
        expected: int,
        actual: int,
        *,
        operator_path: str | None = None,
    ) -> None:
        super().__init__(
            f"Operator '{tag}' expects {expected} source(s), got {actual}",
            operator_path=operator_path,
        )
        self.tag = tag
        self.expected = expected
        self.actual = actual


class ParameterError(WorkflowError):
    """Operator parameters failed schema validation."""

    def __init__(
        self,
        tag: str,
        field: str,
        reason: str,
        *,
        operator_path: str | None = None,
    ) -> None:
        super().__init__(
            f"Invalid parameter '{field}' for operator '{tag}': {reason}",
            operator_path=operator_path,
        )
        self.tag = tag
        self.field = field
        self.reason = reason


class TypeMismatchError(WorkflowError):
    """A child's output type differs from the declared requirement."""

    def __init__(
        self,
        tag: str,
        child_index: int,
        expected: object,
        actual: object,
        *,
        operator_path: str | None = None,
    ) -> None:
        super().__init__(
            f"Operator '{tag}' source {child_index} must be {expected}, got {actual}",
            operator_path=operator_path,
        )
        self.tag = tag
        self.child_index = child_index
        self.expected = expected
        self.actual = actual


class WorkflowTypeError(WorkflowError):
    """Root output type differs from the declared workflow type."""

    def __init__(self, expected: object, actual: object, *, operator_path: str | None = None) -> None:
        super().__init__(
            f"Workflow declares {expected} output but operator produces {actual}",
            operator_path=operator_path,
        )
        self.expected = expected
        self.actual = actual


class QueryError(GeoQueryError):
    """Raised when a query cannot be executed."""


class InvalidQueryError(QueryError, ValueError):
    """Query rectangle or query options are invalid."""


class WorkflowNotFoundError(QueryError, LookupError):
    """No workflow is registered under the requested id."""


class DatasetNotFoundError(QueryError, LookupError):
    """Dataset id is not present in the catalog."""


class InstantiationError(QueryError):
    """Operator tree could not be bound to execution resources."""


class DatasetOpenError(InstantiationError):
    """Native dataset could not be opened."""


class PartialReadError(QueryError):
    """Reading a single chunk failed; siblings are unaffected."""


class QueryTimeoutError(QueryError, TimeoutError):
    """Query exceeded its caller-supplied deadline."""


class QueryCancelledError(QueryError):
    """Result stream was cancelled before the chunk became available."""


class DeviceError(QueryError):
    """Compute device queue is unavailable or a kernel failed."""
