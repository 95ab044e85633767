from __future__ import annotations

from patchscript.app.dsl.params_schema import infer_kind, process_module_schema, process_schemas, resolve_and_merge
from patchscript.app.models.schema import ModuleSchema, ParamKind
from patchscript.app.services.schema_service import SIGNAL_DEFS, SchemaService


def _processed(name: str):
    schemas = {schema.name: schema for schema in process_schemas(SchemaService().list_schemas())}
    return schemas[name]


def _schema(properties: dict, required: list[str] | None = None, defs: dict | None = None) -> ModuleSchema:
    params_schema = {"type": "object", "properties": properties, "required": required or []}
    if defs is not None:
        params_schema["$defs"] = defs
    return ModuleSchema(name="subject", params_schema=params_schema)


def test_builtin_signal_parameters_are_classified() -> None:
    sine = _processed("sine")
    assert sine.params_by_name["freq"].kind == ParamKind.POLY_SIGNAL
    assert sine.params_by_name["freq"].is_signal_like

    clock = _processed("clock")
    assert clock.params_by_name["tempo"].kind == ParamKind.SIGNAL

    mix = _processed("mix")
    assert mix.params_by_name["inputs"].kind == ParamKind.SIGNAL_ARRAY
    assert mix.params_by_name["inputs"].optional is False


def test_scalar_and_enum_parameters() -> None:
    noise = _processed("noise")
    assert noise.params_by_name["color"].kind == ParamKind.ENUM
    assert noise.params_by_name["color"].enum_values == ["white", "pink", "brown"]
    assert noise.params_by_name["channels"].kind == ParamKind.NUMBER

    seq = _processed("seq")
    assert seq.params_by_name["pattern"].kind == ParamKind.STRING
    assert seq.params_by_name["pattern"].optional is False
    assert seq.params_by_name["clock"].optional is True


def test_params_keep_declaration_order() -> None:
    remap = _processed("remap")
    assert [param.name for param in remap.params] == ["input", "inMin", "inMax", "outMin", "outMax"]


def test_union_missing_a_signal_tag_is_not_a_signal() -> None:
    branches = [
        {"type": "object", "properties": {"type": {"type": "string", "const": tag}}}
        for tag in ("constant", "cable", "disconnected")
    ]
    processed = process_module_schema(_schema({"almost": {"oneOf": branches}}))
    assert processed.params_by_name["almost"].kind == ParamKind.UNKNOWN


def test_signal_tag_from_enum_discriminant() -> None:
    branches = [
        {"type": "object", "properties": {"type": {"type": "string", "enum": [tag]}}}
        for tag in ("constant", "cable", "track", "disconnected")
    ]
    processed = process_module_schema(_schema({"input": {"anyOf": branches}}))
    assert processed.params_by_name["input"].kind == ParamKind.SIGNAL


def test_poly_signal_detected_structurally_without_title() -> None:
    union = {"anyOf": [{"$ref": "#/$defs/Signal"}, {"type": "array", "items": {"$ref": "#/$defs/Signal"}}]}
    processed = process_module_schema(_schema({"input": union}, defs={"Signal": SIGNAL_DEFS["Signal"]}))
    assert processed.params_by_name["input"].kind == ParamKind.POLY_SIGNAL


def test_cyclic_and_missing_refs_are_unknown() -> None:
    defs = {"A": {"$ref": "#/$defs/B"}, "B": {"$ref": "#/$defs/A"}}
    processed = process_module_schema(
        _schema({"cyclic": {"$ref": "#/$defs/A"}, "missing": {"$ref": "#/$defs/Nope"}}, defs=defs)
    )
    assert processed.params_by_name["cyclic"].kind == ParamKind.UNKNOWN
    assert processed.params_by_name["missing"].kind == ParamKind.UNKNOWN


def test_all_of_branches_are_merged() -> None:
    schema = ModuleSchema(
        name="merged",
        params_schema={
            "allOf": [
                {"type": "object", "properties": {"a": {"type": "number"}}, "required": ["a"]},
                {"properties": {"b": {"type": "boolean", "description": "Flag"}}},
            ]
        },
    )
    processed = process_module_schema(schema)

    assert [param.name for param in processed.params] == ["a", "b"]
    assert processed.params_by_name["a"].optional is False
    assert processed.params_by_name["b"].kind == ParamKind.BOOLEAN
    assert processed.params_by_name["b"].description == "Flag"


def test_one_of_string_consts_is_an_enum() -> None:
    union = {"oneOf": [{"type": "string", "const": "up"}, {"type": "string", "const": "down"}]}
    processed = process_module_schema(_schema({"direction": union}))
    assert processed.params_by_name["direction"].kind == ParamKind.ENUM
    assert processed.params_by_name["direction"].enum_values == ["up", "down"]


def test_json_pointer_escapes() -> None:
    root = {"$defs": {"a/b": {"type": "integer"}}}
    assert resolve_and_merge(root, {"$ref": "#/$defs/a~1b"}) == {"type": "integer"}
    assert infer_kind(root, {"$ref": "#/$defs/a~1b"}) == ParamKind.NUMBER


def test_non_object_root_has_no_params() -> None:
    processed = process_module_schema(ModuleSchema(name="odd", params_schema={"type": "array"}))
    assert processed.params == []


def test_reprocessing_a_processed_schema_is_stable() -> None:
    once = _processed("sine")
    twice = process_module_schema(once)
    assert [param.name for param in twice.params] == [param.name for param in once.params]


def test_union_with_an_extra_tag_is_not_a_signal() -> None:
    branches = [
        {"type": "object", "properties": {"type": {"type": "string", "const": tag}}}
        for tag in ("constant", "cable", "track", "disconnected", "midi")
    ]
    processed = process_module_schema(_schema({"wide": {"oneOf": branches}}))
    assert processed.params_by_name["wide"].kind == ParamKind.UNKNOWN


def test_tuple_form_signal_arrays() -> None:
    signal = {"$ref": "#/$defs/Signal"}
    processed = process_module_schema(
        _schema(
            {
                "pair": {"type": "array", "prefixItems": [signal, signal]},
                "legacy": {"type": "array", "items": [signal]},
                "mixed": {"type": "array", "prefixItems": [signal, {"type": "number"}]},
            },
            defs=SIGNAL_DEFS,
        )
    )
    assert processed.params_by_name["pair"].kind == ParamKind.SIGNAL_ARRAY
    assert processed.params_by_name["legacy"].kind == ParamKind.SIGNAL_ARRAY
    assert processed.params_by_name["mixed"].kind == ParamKind.UNKNOWN
