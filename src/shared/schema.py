"""JSON Schema helpers for tool arguments."""

from typing import Any

from jsonschema import Draft7Validator

_TYPE_ALIASES = {
    "str": "string",
    "int": "integer",
    "float": "number",
    "bool": "boolean",
    "list": "array",
    "dict": "object",
}


def validate_schema(data: Any, schema: dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Validate data against a JSON Schema (Draft 7).

    Returns:
        Tuple of (is_valid, list of error messages)
    """
    if not schema:
        return True, []

    errors = sorted(Draft7Validator(schema).iter_errors(data), key=lambda e: list(e.path))
    if not errors:
        return True, []

    return False, [
        f"{'.'.join(str(p) for p in e.path)}: {e.message}" if e.path else e.message
        for e in errors
    ]


def build_parameters_schema(parameters: list[dict[str, Any]]) -> dict[str, Any]:
    """
    Build an object schema from short parameter declarations.

    Each declaration has a name, a type (JSON Schema or Python spelling) and
    optionally description, enum, default and required. Parameters without
    a default are required unless they say otherwise.
    """
    properties: dict[str, Any] = {}
    required = []

    for param in parameters:
        param_type = param.get("type", "string")
        prop: dict[str, Any] = {"type": _TYPE_ALIASES.get(param_type, param_type)}
        for key in ("description", "enum", "default", "items"):
            if key in param:
                prop[key] = param[key]
        properties[param["name"]] = prop

        if param.get("required", "default" not in param):
            required.append(param["name"])

    return {"type": "object", "properties": properties, "required": required}
