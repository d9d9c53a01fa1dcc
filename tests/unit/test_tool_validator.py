from streamchat.domain.tool.tool_validator import ToolParameterValidator, normalize_schema


NESTED_SCHEMA = {
    "type": "object",
    "properties": {
        "query": {
            "type": "object",
            "properties": {
                "city": {"type": "string"},
                "days": {"type": ["number", "null"]},
            },
        },
        "tags": {
            "type": "array",
            "items": {"type": "object", "properties": {"name": {"type": "string"}}},
        },
        "mode": {"anyOf": [{"type": "object", "properties": {"x": {"type": "number"}}}, {"type": "null"}]},
    },
    "required": ["query"],
}


def test_every_object_is_closed_and_fully_required():
    fixed = normalize_schema(NESTED_SCHEMA)

    assert fixed["additionalProperties"] is False
    assert fixed["required"] == ["query", "tags", "mode"]

    query = fixed["properties"]["query"]
    assert query["additionalProperties"] is False
    assert query["required"] == ["city", "days"]

    item = fixed["properties"]["tags"]["items"]
    assert item["additionalProperties"] is False
    assert item["required"] == ["name"]

    option = fixed["properties"]["mode"]["anyOf"][0]
    assert option["additionalProperties"] is False
    assert option["required"] == ["x"]


def test_normalization_is_idempotent_and_does_not_mutate_input():
    original = {"type": "object", "properties": {"a": {"type": "string"}}}
    once = normalize_schema(original)
    twice = normalize_schema(once)

    assert once == twice
    assert "additionalProperties" not in original


def test_defs_are_normalized():
    schema = {
        "type": "object",
        "properties": {"item": {"$ref": "#/$defs/Item"}},
        "$defs": {"Item": {"type": "object", "properties": {"id": {"type": "string"}}}},
    }

    fixed = normalize_schema(schema)

    assert fixed["$defs"]["Item"]["additionalProperties"] is False
    assert fixed["$defs"]["Item"]["required"] == ["id"]


def test_object_without_properties_still_forbids_extras():
    fixed = normalize_schema({"type": "object"})

    assert fixed == {"type": "object", "additionalProperties": False}


def test_validate_arguments_reports_missing_and_extra_fields():
    schema = normalize_schema({"type": "object", "properties": {"prompt": {"type": "string"}}})

    assert ToolParameterValidator.validate_arguments(schema, {"prompt": "cat"}) == []
    errors = ToolParameterValidator.validate_arguments(schema, {"other": 1})
    assert len(errors) == 2
