"""JSON Schema validation infrastructure.

Transaction data and ledger snapshots are validated against the schemas
shipped in ``sealkit/whitelist/schemas``. Schemas ``$ref`` each other through
a ``referencing`` registry built once per process.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, List

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from sealkit.whitelist.core import load_json


SCHEMAS_DIR = Path(__file__).resolve().parent / "schemas"

TRANSACTION_SCHEMA = "transaction.schema.json"
LEDGER_STATE_SCHEMA = "ledger-state.schema.json"


class SchemaValidationError(ValueError):
    """A document does not conform to its schema."""

    def __init__(self, schema_name: str, errors: List[str]):
        self.schema_name = schema_name
        self.errors = errors
        super().__init__(f"{schema_name}: " + "; ".join(errors))


@lru_cache(maxsize=1)
def _schema_registry(schemas_dir: Path = SCHEMAS_DIR) -> Registry:
    """Build a registry of all packaged schemas keyed by ``$id``."""
    resources = []
    for schema_path in sorted(schemas_dir.glob("*.schema.json")):
        schema = load_json(schema_path)
        schema_id = schema.get("$id") or f"https://schemas.sealkit.dev/whitelist/{schema_path.name}"
        resources.append((schema_id, Resource.from_contents(schema, default_specification=DRAFT202012)))
    return Registry().with_resources(resources)


@lru_cache(maxsize=None)
def schema_validator(schema_name: str) -> Draft202012Validator:
    """Return a cached validator for a packaged schema file."""
    schema = load_json(SCHEMAS_DIR / schema_name)
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema, registry=_schema_registry())


def validate_against_schema(obj: Any, schema_name: str) -> List[str]:
    """Validate an object, returning error messages (empty if valid)."""
    validator = schema_validator(schema_name)
    return [
        f"{error.json_path}: {error.message}"
        for error in sorted(validator.iter_errors(obj), key=lambda e: e.json_path)
    ]


def require_valid(obj: Any, schema_name: str) -> None:
    errors = validate_against_schema(obj, schema_name)
    if errors:
        raise SchemaValidationError(schema_name, errors)
