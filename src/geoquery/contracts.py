"""Schema validation helpers for workflows, engine config, and dataset catalogs."""

from __future__ import annotations

import json
from functools import lru_cache
from importlib import resources
from typing import Any, Mapping

import jsonschema

SCHEMA_VERSION = "1"


@lru_cache(maxsize=None)
def _load_schema(name: str) -> dict[str, Any]:
    """Load a JSON schema bundled in the package."""
    with resources.files("geoquery.schemas").joinpath(name).open("r", encoding="utf-8") as handle:
        return json.load(handle)


def validate_workflow(payload: Mapping[str, Any]) -> None:
    """Validate a workflow document against the schema."""
    jsonschema.validate(payload, _load_schema("workflow.schema.json"))


def validate_engine_config(payload: Mapping[str, Any]) -> None:
    """Validate an engine config payload against the schema."""
    jsonschema.validate(payload, _load_schema("engine_config.schema.json"))


def validate_dataset_catalog(payload: Mapping[str, Any]) -> None:
    """Validate a dataset catalog payload against the schema."""
    jsonschema.validate(payload, _load_schema("dataset_catalog.schema.json"))


def validate_params(payload: Mapping[str, Any], schema: Mapping[str, Any]) -> None:
    """Validate operator params against an operator's params schema."""
    validator_cls = jsonschema.validators.validator_for(schema)
    validator = validator_cls(schema)
    error = jsonschema.exceptions.best_match(validator.iter_errors(payload))
    if error is not None:
        raise error


def error_field(error: jsonschema.ValidationError) -> str:
    """Return the dotted field name a validation error refers to."""
    parts = [str(part) for part in error.absolute_path]
    instance = error.instance
    if error.validator == "required" and isinstance(instance, Mapping):
        missing = [name for name in error.validator_value if name not in instance]
        if missing:
            parts.append(str(missing[0]))
    elif error.validator == "additionalProperties" and isinstance(instance, Mapping):
        allowed = set(error.schema.get("properties", {}))
        extra = sorted(str(name) for name in instance if name not in allowed)
        if extra:
            parts.append(extra[0])
    return ".".join(parts) or "<params>"
