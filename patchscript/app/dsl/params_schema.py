"""Classification of module parameter schemas.

Engine schemas are JSON schemas as emitted by ``schemars``. Only a small,
pragmatic subset is interpreted here; shapes that cannot be recognized degrade
to ``ParamKind.UNKNOWN`` and strict validation is left to the engine.
"""

from __future__ import annotations

from typing import Any, Iterable

from patchscript.app.models.schema import (
    ModuleSchema,
    ParamDescriptor,
    ParamKind,
    ProcessedModuleSchema,
)

JsonSchema = dict[str, Any]

SIGNAL_TAGS = frozenset({"constant", "cable", "track", "disconnected"})
POLY_SIGNAL_TITLE = "PolySignal"


def _as_schema(value: object) -> JsonSchema | None:
    if isinstance(value, bool):
        return {"const": value}
    if isinstance(value, dict):
        return value
    return None


def _lookup_pointer(root: JsonSchema, pointer: str) -> JsonSchema | None:
    # Only local refs are supported.
    if not pointer.startswith("#/"):
        return None
    current: object = root
    for raw_part in pointer[2:].split("/"):
        part = raw_part.replace("~1", "/").replace("~0", "~")
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return _as_schema(current)


def _deref(root: JsonSchema, schema: JsonSchema, seen: frozenset[str]) -> tuple[JsonSchema, frozenset[str]] | None:
    while True:
        ref = schema.get("$ref")
        if not isinstance(ref, str):
            return schema, seen
        if ref in seen:
            return None
        resolved = _lookup_pointer(root, ref)
        if resolved is None:
            return None
        seen = seen | {ref}
        schema = resolved


def _merge_objects(left: JsonSchema, right: JsonSchema) -> JsonSchema:
    merged = {**left, **right}
    if "properties" in left or "properties" in right:
        merged["properties"] = {**left.get("properties", {}), **right.get("properties", {})}
    if "required" in left or "required" in right:
        merged["required"] = list(dict.fromkeys([*left.get("required", []), *right.get("required", [])]))
    if not merged.get("description"):
        description = left.get("description") or right.get("description")
        if description:
            merged["description"] = description
    return merged


def resolve_and_merge(root: JsonSchema, schema: JsonSchema, seen: frozenset[str] = frozenset()) -> JsonSchema:
    """Follow local ``$ref`` chains and fold ``allOf`` branches into one object.

    Unresolvable or cyclic references resolve to an empty schema.
    """
    dereferenced = _deref(root, schema, seen)
    if dereferenced is None:
        return {}
    resolved, seen = dereferenced

    branches = resolved.get("allOf")
    if isinstance(branches, list) and branches:
        merged = {key: value for key, value in resolved.items() if key != "allOf"}
        for branch in branches:
            branch_schema = _as_schema(branch)
            if branch_schema is None:
                continue
            merged = _merge_objects(merged, resolve_and_merge(root, branch_schema, seen))
        return merged

    return resolved


def _union_branches(schema: JsonSchema) -> list[JsonSchema] | None:
    union = schema.get("oneOf", schema.get("anyOf"))
    if not isinstance(union, list):
        return None
    return [branch for branch in (_as_schema(item) for item in union) if branch is not None]


def _type_tag(schema: JsonSchema) -> str | None:
    const = schema.get("const")
    if isinstance(const, str):
        return const
    enum = schema.get("enum")
    if isinstance(enum, list):
        return next((value for value in enum if isinstance(value, str)), None)
    return None


def _is_signal(root: JsonSchema, schema: JsonSchema) -> bool:
    resolved = resolve_and_merge(root, schema)
    branches = _union_branches(resolved)
    if not branches:
        return False

    tags: set[str] = set()
    for branch in branches:
        tagged = resolve_and_merge(root, branch)
        properties = tagged.get("properties")
        if tagged.get("type") != "object" or not isinstance(properties, dict):
            return False
        discriminant = _as_schema(properties.get("type"))
        if discriminant is None:
            return False
        tag = _type_tag(resolve_and_merge(root, discriminant))
        if tag is None:
            return False
        tags.add(tag)

    return tags == SIGNAL_TAGS


def _is_signal_array(root: JsonSchema, schema: JsonSchema) -> bool:
    resolved = resolve_and_merge(root, schema)
    if resolved.get("type") != "array":
        return False

    items = resolved.get("items", resolved.get("prefixItems"))
    if isinstance(items, list):
        # Tuple validation; a signal array only if every entry is a signal.
        entries = [_as_schema(item) for item in items]
        return bool(entries) and all(entry is not None and _is_signal(root, entry) for entry in entries)

    item_schema = _as_schema(items)
    return item_schema is not None and _is_signal(root, item_schema)


def _is_poly_signal(root: JsonSchema, schema: JsonSchema) -> bool:
    ref = schema.get("$ref")
    if isinstance(ref, str) and ref.rsplit("/", 1)[-1] == POLY_SIGNAL_TITLE:
        return True

    resolved = resolve_and_merge(root, schema)
    if resolved.get("title") == POLY_SIGNAL_TITLE:
        return True

    branches = _union_branches(resolved)
    if not branches or len(branches) < 2:
        return False

    has_signal = False
    has_signal_array = False
    for branch in branches:
        if _is_signal(root, branch):
            has_signal = True
        elif _is_signal_array(root, branch):
            has_signal_array = True
    return has_signal and has_signal_array


def _string_enum(schema: JsonSchema) -> list[str] | None:
    enum = schema.get("enum")
    if isinstance(enum, list) and enum and all(isinstance(value, str) for value in enum):
        return list(enum)

    # serde `rename_all` enums are emitted as oneOf string consts.
    branches = _union_branches(schema)
    if branches:
        values = [
            branch["const"]
            for branch in branches
            if branch.get("type") == "string" and isinstance(branch.get("const"), str)
        ]
        if len(values) == len(branches):
            return values
    return None


def infer_kind(root: JsonSchema, schema: JsonSchema) -> ParamKind:
    # PolySignal first, it is a union that contains Signal.
    if _is_poly_signal(root, schema):
        return ParamKind.POLY_SIGNAL
    if _is_signal(root, schema):
        return ParamKind.SIGNAL
    if _is_signal_array(root, schema):
        return ParamKind.SIGNAL_ARRAY

    resolved = resolve_and_merge(root, schema)
    schema_type = resolved.get("type")
    if schema_type in {"number", "integer"}:
        return ParamKind.NUMBER
    if schema_type == "boolean":
        return ParamKind.BOOLEAN
    if schema_type == "string":
        return ParamKind.ENUM if _string_enum(resolved) else ParamKind.STRING
    if schema_type is None and _string_enum(resolved):
        return ParamKind.ENUM
    return ParamKind.UNKNOWN


def process_module_schema(schema: ModuleSchema) -> ProcessedModuleSchema:
    root = _as_schema(schema.params_schema) or {}
    root_resolved = resolve_and_merge(root, root)

    is_object = root_resolved.get("type") == "object"
    properties = root_resolved.get("properties", {}) if is_object else {}
    required = set(root_resolved.get("required", [])) if is_object else set()

    params: list[ParamDescriptor] = []
    for name, raw in properties.items():
        param_schema = _as_schema(raw) or {}
        resolved = resolve_and_merge(root, param_schema)
        params.append(
            ParamDescriptor(
                name=name,
                kind=infer_kind(root, param_schema),
                description=resolved.get("description"),
                optional=name not in required,
                enum_values=_string_enum(resolved),
            )
        )

    return ProcessedModuleSchema(
        **schema.model_dump(exclude={"params", "params_by_name"}),
        params=params,
        params_by_name={param.name: param for param in params},
    )


def process_schemas(schemas: Iterable[ModuleSchema]) -> list[ProcessedModuleSchema]:
    return [process_module_schema(schema) for schema in schemas]
