from typing import Dict, Any, List, Union
import copy

import jsonschema


def _is_object_type(schema_type: Union[str, List[str], None]) -> bool:
    if isinstance(schema_type, list):
        return "object" in schema_type
    return schema_type == "object"


def _is_array_type(schema_type: Union[str, List[str], None]) -> bool:
    if isinstance(schema_type, list):
        return "array" in schema_type
    return schema_type == "array"


def normalize_schema(schema: Any) -> Any:
    """Rewrite a parameter schema for strict function calling

    Every object forbids additional properties and lists all of its declared
    properties as required. Applying it twice yields the same schema.
    """

    if not isinstance(schema, dict):
        return schema

    fixed = copy.deepcopy(schema)
    schema_type = fixed.get("type")

    if _is_object_type(schema_type):
        fixed["additionalProperties"] = False
        properties = fixed.get("properties")
        if properties:
            fixed["required"] = list(properties.keys())
            fixed["properties"] = {
                key: normalize_schema(value) for key, value in properties.items()
            }

    if _is_array_type(schema_type) and "items" in fixed:
        fixed["items"] = normalize_schema(fixed["items"])

    for combinator in ("anyOf", "oneOf", "allOf"):
        if isinstance(fixed.get(combinator), list):
            fixed[combinator] = [normalize_schema(option) for option in fixed[combinator]]

    for definitions in ("$defs", "definitions"):
        if isinstance(fixed.get(definitions), dict):
            fixed[definitions] = {
                key: normalize_schema(value) for key, value in fixed[definitions].items()
            }

    return fixed


class ToolParameterValidator:
    """Validates decoded tool arguments against the tool's normalized schema"""

    @staticmethod
    def validate_arguments(schema: Dict[str, Any], arguments: Dict[str, Any]) -> List[str]:
        """Return a list of validation errors, empty when the arguments are valid"""

        if not schema:
            return []
        validator = jsonschema.Draft202012Validator(schema)
        return [error.message for error in sorted(validator.iter_errors(arguments), key=str)]
