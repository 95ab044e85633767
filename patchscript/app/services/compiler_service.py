from __future__ import annotations

import ast
import builtins
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Iterable

from patchscript.app.dsl.channels import PORT_MAX_CHANNELS, ChannelCountDeriver, EngineChannelCounter
from patchscript.app.dsl.conversions import bpm, hz, note
from patchscript.app.dsl.errors import MissingBuiltinModuleError, ScriptExecutionError
from patchscript.app.dsl.factories import CompilationContext, build_factories, build_namespace_tree
from patchscript.app.dsl.graph_builder import (
    ROOT_CLOCK_ID,
    SIGNAL_MODULE,
    DeferredCollection,
    DeferredOutput,
    GraphBuilder,
    cable,
    collection,
    range_collection,
)
from patchscript.app.dsl.params_schema import process_schemas
from patchscript.app.dsl.source_spans import CalleeResolver, SourceText, analyze_source_spans, call_site_key
from patchscript.app.models.patch import PatchGraph, SliderDefinition, SourceLocation
from patchscript.app.models.schema import ModuleSchema
from patchscript.app.models.spans import InterpolationResolutionMap

logger = logging.getLogger(__name__)

CLOCK_MODULE = "clock"
ROOT_INPUT_ID = "ROOT_INPUT"
HIDDEN_AUDIO_IN = "HIDDEN_AUDIO_IN"
AUDIO_INPUT_PORT = "input"
SCRIPT_FILENAME = "<patch>"
SCRIPT_MODULE_NAME = "__patch__"
CALL_SITE_HOOK = "__call_site__"
SLIDER_ID_PREFIX = "__slider_"

_SLIDER_LABEL_INVALID = re.compile(r"[^a-zA-Z0-9_]")

# Builtins visible to patch scripts. None of them can reach the host process.
SCRIPT_BUILTINS = frozenset(
    {
        "__build_class__",
        "abs",
        "all",
        "any",
        "bool",
        "dict",
        "divmod",
        "enumerate",
        "filter",
        "float",
        "int",
        "isinstance",
        "len",
        "list",
        "map",
        "max",
        "min",
        "object",
        "pow",
        "range",
        "repr",
        "reversed",
        "round",
        "set",
        "slice",
        "sorted",
        "str",
        "sum",
        "super",
        "tuple",
        "zip",
        "ArithmeticError",
        "AttributeError",
        "Exception",
        "IndexError",
        "KeyError",
        "LookupError",
        "RuntimeError",
        "TypeError",
        "ValueError",
        "ZeroDivisionError",
    }
)


@dataclass(slots=True)
class ExecutionResult:
    patch: PatchGraph
    source_location_map: dict[str, SourceLocation]
    interpolation_resolutions: InterpolationResolutionMap
    sliders: list[SliderDefinition]


class _CallSiteInstrumenter(ast.NodeTransformer):
    """Rewrites ``ctor(...)`` into ``__call_site__("line:col", ctor)(...)``."""

    def __init__(self, text: SourceText, resolver: CalleeResolver) -> None:
        self._text = text
        self._resolver = resolver

    def visit_Call(self, node: ast.Call) -> ast.Call:
        self.generic_visit(node)
        if self._resolver.resolve(node.func) is None:
            return node

        key = call_site_key(self._text, node.func)
        hook = ast.Call(
            func=ast.Name(id=CALL_SITE_HOOK, ctx=ast.Load()),
            args=[ast.Constant(value=key), node.func],
            keywords=[],
        )
        node.func = ast.copy_location(hook, node.func)
        return node

    def visit_Attribute(self, node: ast.Attribute) -> ast.Attribute:
        if node.attr.startswith("__") and node.attr.endswith("__"):
            raise SyntaxError(f"line {node.lineno}: attribute '{node.attr}' is not accessible from patch scripts")
        self.generic_visit(node)
        return node


def _is_finite_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


class CompilerService:
    def __init__(
        self,
        schemas: Iterable[ModuleSchema],
        default_tempo_bpm: float = 120.0,
        derive_channel_count: ChannelCountDeriver | None = None,
    ) -> None:
        self._schemas = process_schemas(schemas)
        self._factories = build_factories(self._schemas)
        # Fail on namespace collisions when the session starts, not per script.
        build_namespace_tree(self._factories)
        self._resolver = CalleeResolver(self._schemas)
        self._default_tempo_bpm = default_tempo_bpm
        self._derive_channel_count = derive_channel_count or EngineChannelCounter(self._schemas)

    @property
    def schemas(self) -> list[ModuleSchema]:
        return list(self._schemas)

    def with_schemas(self, schemas: Iterable[ModuleSchema]) -> CompilerService:
        return CompilerService(schemas, default_tempo_bpm=self._default_tempo_bpm)

    def execute_patch_script(self, source: str) -> ExecutionResult:
        for required in (CLOCK_MODULE, SIGNAL_MODULE):
            if required not in self._factories:
                raise MissingBuiltinModuleError(required)

        analysis = analyze_source_spans(source, self._schemas)
        context = CompilationContext(
            builder=GraphBuilder(self._schemas, self._derive_channel_count),
            factories=self._factories,
            spans=analysis.spans,
        )
        try:
            environment = self._build_environment(context)
            code = compile(self._instrument(source), SCRIPT_FILENAME, "exec")
            exec(code, environment)
            result = ExecutionResult(
                patch=context.builder.to_patch(),
                source_location_map=dict(context.source_locations),
                interpolation_resolutions=analysis.interpolations,
                sliders=list(context.sliders),
            )
        except KeyboardInterrupt:
            raise
        except BaseException as exc:
            logger.debug("Patch script failed", exc_info=True)
            raise ScriptExecutionError(str(exc) or type(exc).__name__) from exc

        logger.info(
            "Compiled patch with %d modules (%d located)",
            len(result.patch.modules),
            len(result.source_location_map),
        )
        return result

    def _instrument(self, source: str) -> ast.Module:
        tree = ast.parse(source, filename=SCRIPT_FILENAME)
        tree = _CallSiteInstrumenter(SourceText(source), self._resolver).visit(tree)
        return ast.fix_missing_locations(tree)

    def _build_environment(self, context: CompilationContext) -> dict[str, Any]:
        builder = context.builder
        clock = context.constructors[CLOCK_MODULE]
        signal = context.constructors[SIGNAL_MODULE]

        builder.set_tempo(bpm(self._default_tempo_bpm))
        root_clock = clock(bpm(self._default_tempo_bpm), id=ROOT_CLOCK_ID)
        root_input = signal(
            [cable(HIDDEN_AUDIO_IN, AUDIO_INPUT_PORT, channel) for channel in range(PORT_MAX_CHANNELS)],
            id=ROOT_INPUT_ID,
        )

        def deferred(channels: int = 1) -> DeferredCollection:
            if not isinstance(channels, int) or not 1 <= channels <= PORT_MAX_CHANNELS:
                raise ValueError(f"deferred() channels must be between 1 and {PORT_MAX_CHANNELS}, got {channels}")
            return DeferredCollection(*[DeferredOutput(builder) for _ in range(channels)])

        def slider(label: str, value: float, min: float, max: float) -> Any:
            if not isinstance(label, str):
                raise TypeError("slider() label must be a string")
            if not _is_finite_number(value):
                raise ValueError("slider() value must be a finite number")
            if not _is_finite_number(min) or not _is_finite_number(max):
                raise ValueError("slider() min and max must be finite numbers")
            if min >= max:
                raise ValueError(f"slider() min ({min}) must be less than max ({max})")

            module_id = f"{SLIDER_ID_PREFIX}{_SLIDER_LABEL_INVALID.sub('_', label)}"
            output = signal(value, id=module_id)
            context.sliders.append(SliderDefinition(module_id=module_id, label=label, value=value, min=min, max=max))
            return output

        return {
            "__builtins__": {name: getattr(builtins, name) for name in SCRIPT_BUILTINS},
            "__name__": SCRIPT_MODULE_NAME,
            **context.namespace,
            "hz": hz,
            "note": note,
            "bpm": bpm,
            "collection": collection,
            "range_collection": range_collection,
            "deferred": deferred,
            "slider": slider,
            "set_tempo": builder.set_tempo,
            "set_output_gain": builder.set_output_gain,
            "root_clock": root_clock,
            "input": root_input,
            CALL_SITE_HOOK: context.call_site,
        }
