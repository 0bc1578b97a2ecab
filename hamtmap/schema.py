"""JSON Schema validation infrastructure.

Provides schema validation for node documents and configuration files:
- Automatic schema resolution via $ref
- Cross-reference registry for all bundled schemas
- Cached validators for performance
- Clear error reporting
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, List

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from hamtmap.core import PACKAGE_ROOT, load_json

SCHEMAS_DIR = PACKAGE_ROOT / "schemas"
SCHEMA_BASE_URI = "https://schemas.hamtmap.org/v1/"

NODE_SCHEMA = "hamt-node.schema.json"
CONFIG_SCHEMA = "hamtmap-config.schema.json"
HEAD_SCHEMA = "hamtmap-head.schema.json"


@lru_cache(maxsize=1)
def _schema_registry(schemas_dir: Path = SCHEMAS_DIR) -> Registry:
    """Build a schema registry for all bundled schemas.

    This enables $ref resolution across the schema files.
    """
    resources = []
    for schema_path in sorted(schemas_dir.glob("*.schema.json")):
        schema = load_json(schema_path)
        if not isinstance(schema, dict):
            continue
        schema_id = schema.get("$id") or f"{SCHEMA_BASE_URI}{schema_path.name}"
        resource = Resource.from_contents(schema, default_specification=DRAFT202012)
        resources.append((schema_id, resource))

    return Registry().with_resources(resources)


@lru_cache(maxsize=None)
def schema_validator(schema_name: str, schemas_dir: Path = SCHEMAS_DIR) -> Draft202012Validator:
    """Create (and cache) a validator for a bundled schema file.

    Args:
        schema_name: File name under the schemas directory
        schemas_dir: Directory holding the schema corpus

    Returns:
        A configured Draft202012Validator
    """
    schema_path = schemas_dir / schema_name
    if not schema_path.exists():
        raise FileNotFoundError(f"schema not found: {schema_path}")
    schema = load_json(schema_path)
    return Draft202012Validator(schema, registry=_schema_registry(schemas_dir))


def validate_with_schema(obj: Any, schema_name: str) -> List[str]:
    """Validate an object against a bundled schema.

    Returns:
        List of validation error messages (empty if valid)
    """
    validator = schema_validator(schema_name)
    return [
        f"{error.json_path}: {error.message}"
        for error in sorted(validator.iter_errors(obj), key=lambda e: e.json_path)
    ]


def is_valid(obj: Any, schema_name: str) -> bool:
    """Fast boolean check; avoids building error messages."""
    return schema_validator(schema_name).is_valid(obj)
