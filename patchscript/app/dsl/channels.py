from __future__ import annotations

from typing import Any, Iterable, Protocol

from patchscript.app.models.schema import ParamKind, ProcessedModuleSchema

PORT_MAX_CHANNELS = 16


class ChannelCountDeriver(Protocol):
    def __call__(self, module_type: str, params: dict[str, Any]) -> int | None: ...


def clamp_channels(count: int) -> int:
    return max(1, min(int(count), PORT_MAX_CHANNELS))


def signal_width(value: Any) -> int:
    """Channel width carried by a parameter value."""
    if value is None:
        return 0
    if isinstance(value, dict):
        return 0 if value.get("type") == "disconnected" else 1
    if isinstance(value, (list, tuple)):
        return len(value)
    if isinstance(value, (str, bytes)):
        return 1
    try:
        return len(value)
    except TypeError:
        return 1


class EngineChannelCounter:
    """Default channel derivation when the native engine is not linked in.

    Mirrors the engine's rules: a fixed ``channels`` count wins, then the
    ``channels_param`` value (or its default), then the widest polyphonic
    input. Modules without polyphonic inputs report ``None``.
    """

    def __init__(self, schemas: Iterable[ProcessedModuleSchema]) -> None:
        self._schemas = {schema.name: schema for schema in schemas}

    def __call__(self, module_type: str, params: dict[str, Any]) -> int | None:
        schema = self._schemas.get(module_type)
        if schema is None:
            return None

        if schema.channels is not None:
            return clamp_channels(schema.channels)

        if schema.channels_param:
            value = params.get(schema.channels_param)
            if isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 1:
                return clamp_channels(value)
            if schema.channels_param_default is not None:
                return clamp_channels(schema.channels_param_default)

        poly_params = [param.name for param in schema.params if param.kind == ParamKind.POLY_SIGNAL]
        if not poly_params:
            return None

        widest = max((signal_width(params.get(name)) for name in poly_params), default=0)
        return clamp_channels(widest) if widest else None
