from functools import lru_cache
from pathlib import Path
import json
import jsonschema

from services.classification.fields import resolve_title

REPO_ROOT = Path(__file__).resolve().parents[2]
SCHEMA_DIR = REPO_ROOT / "config" / "schemas"


@lru_cache(maxsize=8)
def _load_schema(name: str) -> dict:
    schema_path = SCHEMA_DIR / f"{name}.schema.json"
    if not schema_path.exists():
        raise FileNotFoundError(f"Schema not found: {schema_path}")
    return json.loads(schema_path.read_text(encoding="utf-8"))


def validate_with_schema(data: dict, name: str):
    try:
        schema = _load_schema(name)
    except Exception as e:
        return False, str(e)

    try:
        jsonschema.validate(instance=data, schema=schema)
        return True, "Valid"
    except jsonschema.exceptions.ValidationError as e:
        return False, e.message


def validate_classification(result: dict):
    """
    Structural check against classification.schema.json plus the rule the
    schema cannot express: a non-empty title at top level or nested.
    """
    ok, msg = validate_with_schema(result, "classification")
    if not ok:
        return False, msg
    if not resolve_title(result):
        return False, "Missing title"
    return True, "Valid"
