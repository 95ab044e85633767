from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import TypeAdapter

from patchscript.app.models.schema import ModuleSchema, OutputSchema, PositionalArg

logger = logging.getLogger(__name__)

SIGNAL_REF = {"$ref": "#/$defs/Signal"}
POLY_SIGNAL_REF = {"$ref": "#/$defs/PolySignal"}

SIGNAL_DEFS: dict[str, Any] = {
    "Signal": {
        "oneOf": [
            {
                "type": "object",
                "properties": {"type": {"type": "string", "const": "constant"}, "value": {"type": "number"}},
                "required": ["type", "value"],
            },
            {
                "type": "object",
                "properties": {
                    "type": {"type": "string", "const": "cable"},
                    "module": {"type": "string"},
                    "port": {"type": "string"},
                    "channel": {"type": "integer", "minimum": 0},
                },
                "required": ["type", "module", "port"],
            },
            {
                "type": "object",
                "properties": {"type": {"type": "string", "const": "track"}, "track": {"type": "string"}},
                "required": ["type", "track"],
            },
            {
                "type": "object",
                "properties": {"type": {"type": "string", "const": "disconnected"}},
                "required": ["type"],
            },
        ]
    },
    "PolySignal": {
        "title": "PolySignal",
        "anyOf": [SIGNAL_REF, {"type": "array", "items": SIGNAL_REF}],
    },
}

_module_schema_list = TypeAdapter(list[ModuleSchema])


def _param(schema: dict[str, Any], description: str) -> dict[str, Any]:
    return {**schema, "description": description}


def _params(properties: dict[str, dict[str, Any]], required: list[str] | None = None) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": properties,
        "required": required or [],
        "$defs": SIGNAL_DEFS,
    }


def load_schemas_file(path: Path) -> list[ModuleSchema]:
    """Load an engine schema export: either a JSON list or ``{"schemas": [...]}``."""
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(payload, dict):
        payload = payload.get("schemas", [])
    return _module_schema_list.validate_python(payload)


class SchemaService:
    def __init__(self, schemas_file: Path | None = None) -> None:
        if schemas_file is not None:
            schemas = load_schemas_file(schemas_file)
            logger.info("Loaded %d module schemas from %s", len(schemas), schemas_file)
        else:
            schemas = self._load_builtin_schemas()
        self._schemas = {schema.name: schema for schema in schemas}

    def list_schemas(self) -> list[ModuleSchema]:
        return sorted(self._schemas.values(), key=lambda schema: schema.name)

    def get_schema(self, name: str) -> ModuleSchema | None:
        return self._schemas.get(name)

    def _load_builtin_schemas(self) -> list[ModuleSchema]:
        return [
            ModuleSchema(
                name="signal",
                description="Pass-through signal holder, also used for the root input and output.",
                params_schema=_params({"source": _param(POLY_SIGNAL_REF, "Signal to pass through.")}),
                outputs=[OutputSchema(name="output", default=True, polyphonic=True)],
                positional_args=[PositionalArg(name="source", optional=True)],
            ),
            ModuleSchema(
                name="mix",
                description="Sum a list of signals into one channel.",
                params_schema=_params(
                    {"inputs": _param({"type": "array", "items": SIGNAL_REF}, "Signals to sum.")},
                    required=["inputs"],
                ),
                outputs=[OutputSchema(name="output", default=True)],
                positional_args=[PositionalArg(name="inputs")],
            ),
            ModuleSchema(
                name="clock",
                description="Master clock producing beat and bar triggers.",
                params_schema=_params(
                    {
                        "tempo": _param(SIGNAL_REF, "Tempo in V/oct, 0V is 60 BPM."),
                        "run": _param(SIGNAL_REF, "Gate; the clock runs while high."),
                        "reset": _param(SIGNAL_REF, "Trigger restarting the bar."),
                    }
                ),
                outputs=[
                    OutputSchema(name="beatTrigger", default=True, description="One trigger per beat."),
                    OutputSchema(name="barTrigger", description="One trigger per bar."),
                    OutputSchema(name="ramp", min_value=0.0, max_value=5.0, description="Bar phase ramp."),
                ],
                positional_args=[PositionalArg(name="tempo", optional=True)],
            ),
            ModuleSchema(
                name="sine",
                description="Sine oscillator.",
                params_schema=_params(
                    {
                        "freq": _param(POLY_SIGNAL_REF, "Pitch in V/oct."),
                        "phase": _param(POLY_SIGNAL_REF, "Phase offset."),
                    }
                ),
                outputs=[OutputSchema(name="output", default=True, polyphonic=True, min_value=-5.0, max_value=5.0)],
                positional_args=[PositionalArg(name="freq", optional=True)],
            ),
            ModuleSchema(
                name="saw",
                description="Sawtooth oscillator.",
                params_schema=_params(
                    {
                        "freq": _param(POLY_SIGNAL_REF, "Pitch in V/oct."),
                        "shape": _param(POLY_SIGNAL_REF, "Morph between ramp and triangle."),
                    }
                ),
                outputs=[OutputSchema(name="output", default=True, polyphonic=True, min_value=-5.0, max_value=5.0)],
                positional_args=[PositionalArg(name="freq", optional=True)],
            ),
            ModuleSchema(
                name="pulse",
                description="Pulse oscillator.",
                params_schema=_params(
                    {
                        "freq": _param(POLY_SIGNAL_REF, "Pitch in V/oct."),
                        "width": _param(POLY_SIGNAL_REF, "Pulse width."),
                    }
                ),
                outputs=[OutputSchema(name="output", default=True, polyphonic=True, min_value=-5.0, max_value=5.0)],
                positional_args=[PositionalArg(name="freq", optional=True), PositionalArg(name="width", optional=True)],
            ),
            ModuleSchema(
                name="noise",
                description="Noise source.",
                params_schema=_params(
                    {
                        "color": _param({"type": "string", "enum": ["white", "pink", "brown"]}, "Noise color."),
                        "channels": _param({"type": "integer", "minimum": 1, "maximum": 16}, "Channel count."),
                    }
                ),
                outputs=[OutputSchema(name="output", default=True, polyphonic=True)],
                positional_args=[PositionalArg(name="color", optional=True)],
                channels_param="channels",
                channels_param_default=1,
            ),
            ModuleSchema(
                name="scaleAndShift",
                description="Multiply a signal by scale, then add shift.",
                params_schema=_params(
                    {
                        "input": _param(POLY_SIGNAL_REF, "Signal to transform."),
                        "scale": _param(POLY_SIGNAL_REF, "Gain factor."),
                        "shift": _param(POLY_SIGNAL_REF, "Offset added after scaling."),
                    }
                ),
                outputs=[OutputSchema(name="output", default=True, polyphonic=True)],
                positional_args=[
                    PositionalArg(name="input"),
                    PositionalArg(name="scale", optional=True),
                    PositionalArg(name="shift", optional=True),
                ],
            ),
            ModuleSchema(
                name="remap",
                description="Linearly map a signal from one range to another.",
                params_schema=_params(
                    {
                        "input": _param(POLY_SIGNAL_REF, "Signal to remap."),
                        "inMin": _param(POLY_SIGNAL_REF, "Input range minimum."),
                        "inMax": _param(POLY_SIGNAL_REF, "Input range maximum."),
                        "outMin": _param(POLY_SIGNAL_REF, "Output range minimum."),
                        "outMax": _param(POLY_SIGNAL_REF, "Output range maximum."),
                    }
                ),
                outputs=[OutputSchema(name="output", default=True, polyphonic=True)],
                positional_args=[
                    PositionalArg(name="input"),
                    PositionalArg(name="inMin"),
                    PositionalArg(name="inMax"),
                    PositionalArg(name="outMin"),
                    PositionalArg(name="outMax"),
                ],
            ),
            ModuleSchema(
                name="clamp",
                description="Constrain a signal between a minimum and maximum value.",
                params_schema=_params(
                    {
                        "input": _param(POLY_SIGNAL_REF, "Signal to clamp."),
                        "min": _param(POLY_SIGNAL_REF, "Lower bound; unclamped below when disconnected."),
                        "max": _param(POLY_SIGNAL_REF, "Upper bound; unclamped above when disconnected."),
                    }
                ),
                outputs=[OutputSchema(name="output", default=True, polyphonic=True)],
                positional_args=[
                    PositionalArg(name="input"),
                    PositionalArg(name="min", optional=True),
                    PositionalArg(name="max", optional=True),
                ],
            ),
            ModuleSchema(
                name="seq",
                description="Step sequencer driven by a pattern string.",
                params_schema=_params(
                    {
                        "pattern": _param({"type": "string"}, "Space separated note names."),
                        "clock": _param(SIGNAL_REF, "Step trigger."),
                    },
                    required=["pattern"],
                ),
                outputs=[
                    OutputSchema(name="cv", default=True, description="Pitch of the current step."),
                    OutputSchema(name="gate", description="High while a step plays."),
                    OutputSchema(name="trig", description="Trigger at each step."),
                    OutputSchema(name="endOfCycle", description="Trigger when the pattern wraps."),
                ],
                positional_args=[PositionalArg(name="pattern")],
            ),
            ModuleSchema(
                name="filters.lowpass",
                description="Resonant lowpass filter.",
                params_schema=_params(
                    {
                        "input": _param(POLY_SIGNAL_REF, "Signal to filter."),
                        "cutoff": _param(POLY_SIGNAL_REF, "Cutoff in V/oct."),
                        "resonance": _param(POLY_SIGNAL_REF, "Resonance."),
                    }
                ),
                outputs=[OutputSchema(name="output", default=True, polyphonic=True)],
                positional_args=[PositionalArg(name="input"), PositionalArg(name="cutoff", optional=True)],
            ),
        ]
