"""Mutable patch graph accumulated while a script runs.

A :class:`GraphBuilder` lives for exactly one script execution. Module
constructors add nodes and parameters to it; :meth:`GraphBuilder.to_patch`
then resolves deferred signals and freezes the result into a
:class:`~patchscript.app.models.patch.PatchGraph`.
"""

from __future__ import annotations

import copy
import logging
import re
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from patchscript.app.dsl.channels import PORT_MAX_CHANNELS, ChannelCountDeriver, signal_width
from patchscript.app.dsl.conversions import bpm
from patchscript.app.dsl.errors import (
    DuplicateModuleIdError,
    MissingBuiltinModuleError,
    ModuleIdNotFoundError,
    UnknownModuleTypeError,
)
from patchscript.app.models.patch import ModuleState, PatchGraph, Scope, ScopeItem
from patchscript.app.models.schema import ParamKind, ProcessedModuleSchema

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_PORT = "output"
DEFAULT_SCOPE_MS_PER_FRAME = 500
DEFAULT_SCOPE_RANGE = (-5.0, 5.0)
TRIGGER_THRESHOLD_SCALE = 1000
DEFAULT_TEMPO = bpm(120)

ROOT_OUTPUT_ID = "ROOT_OUTPUT"
ROOT_CLOCK_ID = "ROOT_CLOCK"
SIGNAL_MODULE = "signal"
MIX_MODULE = "mix"
SCALE_AND_SHIFT_MODULE = "scaleAndShift"
REMAP_MODULE = "remap"
CLAMP_MODULE = "clamp"
DEFERRED_ID_PREFIX = "DEFERRED-"
DEFAULT_PIPE_MIX = 2.5
MIX_LEVEL_RANGE = (0, 5)

_PLACEHOLDER_PATTERN = re.compile(r"module\(([^:()]+):([^:()]+):(\d+)\)")

ModuleFactoryFunction = Callable[..., Any]


def cable(module_id: str, port_name: str, channel: int = 0) -> dict[str, Any]:
    return {"type": "cable", "module": module_id, "port": port_name, "channel": channel}


def disconnected() -> dict[str, Any]:
    return {"type": "disconnected"}


def _is_cable(value: Any) -> bool:
    return isinstance(value, dict) and value.get("type") == "cable" and isinstance(value.get("module"), str)


class _NamedOutputs:
    """Extra module outputs reachable as attributes on a handle or collection."""

    _named_outputs: dict[str, Any]

    def attach_outputs(self, outputs: Mapping[str, Any]) -> None:
        self._named_outputs.update(outputs)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("__") and name.endswith("__"):
            raise AttributeError(name)
        named = self.__dict__.get("_named_outputs") or {}
        if name in named:
            return named[name]
        raise AttributeError(f"{type(self).__name__} has no attribute {name!r}")


def _crossfade(builder: GraphBuilder, dry: Any, fn: Callable[[Any], Any], mix: Any) -> Any:
    """Blend ``dry`` with ``fn(dry)``; ``mix`` runs from 0 (dry only) to 5 (wet only)."""
    clamp = builder.require_factory(CLAMP_MODULE)
    remap = builder.require_factory(REMAP_MODULE)
    scale_and_shift = builder.require_factory(SCALE_AND_SHIFT_MODULE)

    wet = fn(dry)
    if not isinstance(wet, (ModuleOutput, BaseCollection)):
        raise TypeError(f"pipe_mix() expects the function to return module outputs, got {type(wet).__name__}")

    low, high = MIX_LEVEL_RANGE
    wet_level = clamp(mix, low, high)
    dry_level = clamp(remap(mix, low, high, high, low), low, high)
    return scale_and_shift(list(_flatten_outputs(dry)), dry_level, wet.gain(wet_level))


class ModuleOutput(_NamedOutputs):
    def __init__(self, builder: GraphBuilder, module_id: str, port_name: str, channel: int = 0) -> None:
        self.builder = builder
        self.module_id = module_id
        self.port_name = port_name
        self.channel = channel
        self._named_outputs = {}

    def to_cable(self) -> dict[str, Any]:
        return cable(self.module_id, self.port_name, self.channel)

    def gain(self, factor: Any) -> Any:
        return self.builder.require_factory(SCALE_AND_SHIFT_MODULE)(self, factor)

    def shift(self, offset: Any) -> Any:
        return self.builder.require_factory(SCALE_AND_SHIFT_MODULE)(self, None, offset)

    def scope(
        self,
        ms_per_frame: int = DEFAULT_SCOPE_MS_PER_FRAME,
        trigger_threshold: float | None = None,
        range: tuple[float, float] = DEFAULT_SCOPE_RANGE,
    ) -> ModuleOutput:
        self.builder.add_scope(self, ms_per_frame=ms_per_frame, trigger_threshold=trigger_threshold, range=range)
        return self

    def out(self, channel: int = 0, gain: Any = None) -> ModuleOutput:
        self.builder.add_out(self, channel=channel, gain=gain)
        return self

    def pipe(self, fn: Callable[[Any], Any]) -> Any:
        return fn(self)

    def pipe_mix(self, fn: Callable[[Any], Any], mix: Any = DEFAULT_PIPE_MIX) -> Any:
        return _crossfade(self.builder, self, fn, mix)

    def __str__(self) -> str:
        return f"module({self.module_id}:{self.port_name}:{self.channel})"

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self})"


class ModuleOutputWithRange(ModuleOutput):
    def __init__(
        self,
        builder: GraphBuilder,
        module_id: str,
        port_name: str,
        channel: int = 0,
        *,
        min_value: float,
        max_value: float,
    ) -> None:
        super().__init__(builder, module_id, port_name, channel)
        self.min_value = min_value
        self.max_value = max_value

    def range(self, out_min: Any, out_max: Any) -> Any:
        """Remap from this output's known range to ``[out_min, out_max]``."""
        remap = self.builder.require_factory(REMAP_MODULE)
        return remap(self, self.min_value, self.max_value, out_min, out_max)


class BaseCollection(_NamedOutputs, Sequence):
    def __init__(self, *items: ModuleOutput) -> None:
        self.items: list[ModuleOutput] = list(items)
        self._named_outputs = {}

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self) -> Iterator[ModuleOutput]:
        return iter(self.items)

    def __getitem__(self, index: int | slice) -> Any:
        if isinstance(index, slice):
            return type(self)(*self.items[index])
        return self.items[index]

    def _builder(self) -> GraphBuilder | None:
        return self.items[0].builder if self.items else None

    def _scale_and_shift(self, *args: Any) -> Any:
        builder = self._builder()
        if builder is None:
            return Collection()
        return builder.require_factory(SCALE_AND_SHIFT_MODULE)(list(self.items), *args)

    def gain(self, factor: Any) -> Any:
        return self._scale_and_shift(factor)

    def shift(self, offset: Any) -> Any:
        return self._scale_and_shift(None, offset)

    def scope(
        self,
        ms_per_frame: int = DEFAULT_SCOPE_MS_PER_FRAME,
        trigger_threshold: float | None = None,
        range: tuple[float, float] = DEFAULT_SCOPE_RANGE,
    ) -> BaseCollection:
        builder = self._builder()
        if builder is not None:
            builder.add_scope(self, ms_per_frame=ms_per_frame, trigger_threshold=trigger_threshold, range=range)
        return self

    def out(self, channel: int = 0, gain: Any = None) -> BaseCollection:
        builder = self._builder()
        if builder is not None:
            builder.add_out(self, channel=channel, gain=gain)
        return self

    def pipe(self, fn: Callable[[Any], Any]) -> Any:
        return fn(self)

    def pipe_mix(self, fn: Callable[[Any], Any], mix: Any = DEFAULT_PIPE_MIX) -> Any:
        builder = self._builder()
        if builder is None:
            return Collection()
        return _crossfade(builder, self, fn, mix)

    def __str__(self) -> str:
        return " ".join(str(item) for item in self.items)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({', '.join(repr(item) for item in self.items)})"


class Collection(BaseCollection):
    def range(self, in_min: Any, in_max: Any, out_min: Any, out_max: Any) -> Any:
        builder = self._builder()
        if builder is None:
            return Collection()
        return builder.require_factory(REMAP_MODULE)(list(self.items), in_min, in_max, out_min, out_max)


class CollectionWithRange(BaseCollection):
    items: list[ModuleOutputWithRange]

    def range(self, out_min: Any, out_max: Any) -> Any:
        builder = self._builder()
        if builder is None:
            return Collection()
        remap = builder.require_factory(REMAP_MODULE)
        return remap(
            list(self.items),
            [item.min_value for item in self.items],
            [item.max_value for item in self.items],
            out_min,
            out_max,
        )


class DeferredOutput(ModuleOutput):
    """Placeholder signal that can be wired before its source exists."""

    def __init__(self, builder: GraphBuilder) -> None:
        super().__init__(builder, builder.next_deferred_id(), DEFAULT_OUTPUT_PORT, 0)
        self.target: ModuleOutput | None = None
        builder.register_deferred(self)

    def set(self, value: Any) -> None:
        if isinstance(value, BaseCollection):
            value = value.items[0] if value.items else None
        if value is not None and not isinstance(value, ModuleOutput):
            raise TypeError(f"deferred outputs can only be set to module outputs, got {type(value).__name__}")
        self.target = value

    def resolve(self) -> ModuleOutput | None:
        """Follow the chain of deferred targets to a concrete output."""
        seen: set[str] = set()
        current: ModuleOutput | None = self
        while isinstance(current, DeferredOutput):
            if current.module_id in seen:
                raise ValueError(f"Circular deferred output reference at {current.module_id}")
            seen.add(current.module_id)
            current = current.target
        return current


class DeferredCollection(BaseCollection):
    items: list[DeferredOutput]

    def set(self, values: Any) -> None:
        """Distribute ``values`` across the placeholders, cycling when shorter."""
        if isinstance(values, ModuleOutput):
            sources: list[Any] = [values]
        elif values is None:
            sources = []
        else:
            sources = list(_flatten_outputs(values))
        for index, deferred in enumerate(self.items):
            deferred.set(sources[index % len(sources)] if sources else None)


def _flatten_outputs(value: Any) -> Iterator[ModuleOutput]:
    if isinstance(value, ModuleOutput):
        yield value
        return
    if isinstance(value, (BaseCollection, list, tuple)):
        for item in value:
            yield from _flatten_outputs(item)
        return
    raise TypeError(f"expected module outputs, got {type(value).__name__}")


def collection(*args: Any) -> Collection:
    return Collection(*_flatten_outputs(list(args)))


def range_collection(*args: Any) -> CollectionWithRange:
    items = list(_flatten_outputs(list(args)))
    for item in items:
        if not isinstance(item, ModuleOutputWithRange):
            raise TypeError(f"{item} has no known output range")
    return CollectionWithRange(*items)


def normalize_value(value: Any) -> Any:
    """Convert script values into JSON-compatible parameter values."""
    if value is None:
        return None
    if isinstance(value, ModuleOutput):
        return value.to_cable()
    if isinstance(value, BaseCollection):
        return [item.to_cable() for item in value]
    if isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (list, tuple)):
        return [disconnected() if item is None else normalize_value(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): normalize_value(item) for key, item in value.items()}
    raise TypeError(f"Unsupported parameter value of type {type(value).__name__}")


@dataclass(slots=True)
class _OutGroup:
    outputs: list[ModuleOutput]
    gain: Any = None


@dataclass(slots=True)
class _ModuleRecord:
    id: str
    module_type: str
    id_is_explicit: bool
    params: dict[str, Any] = field(default_factory=dict)


class ModuleNode:
    """A module added to the graph, as seen by its constructor."""

    def __init__(self, builder: GraphBuilder, module_id: str, schema: ProcessedModuleSchema) -> None:
        self.builder = builder
        self.id = module_id
        self.schema = schema

    @property
    def module_type(self) -> str:
        return self.schema.name

    @property
    def channel_count(self) -> int:
        return self.builder.channel_count(self.id)

    def set_param(self, name: str, value: Any) -> None:
        self.builder.set_param(self.id, name, value)

    def params_snapshot(self) -> dict[str, Any]:
        return self.builder.params_snapshot(self.id)

    def output(self, port_name: str, polyphonic: bool = False) -> ModuleOutput | BaseCollection:
        output_schema = next((output for output in self.schema.outputs if output.name == port_name), None)
        if output_schema is None:
            raise ValueError(f"Module {self.module_type} has no output '{port_name}'")

        def handle(channel: int) -> ModuleOutput:
            if output_schema.has_range:
                return ModuleOutputWithRange(
                    self.builder,
                    self.id,
                    port_name,
                    channel,
                    min_value=output_schema.min_value,
                    max_value=output_schema.max_value,
                )
            return ModuleOutput(self.builder, self.id, port_name, channel)

        if not polyphonic:
            return handle(0)
        handles = [handle(channel) for channel in range(self.channel_count)]
        if output_schema.has_range:
            return CollectionWithRange(*handles)
        return Collection(*handles)


class GraphBuilder:
    def __init__(
        self,
        schemas: Iterable[ProcessedModuleSchema],
        derive_channel_count: ChannelCountDeriver | None = None,
    ) -> None:
        self._schemas = {schema.name: schema for schema in schemas}
        self._derive_channel_count = derive_channel_count
        self._modules: dict[str, _ModuleRecord] = {}
        self._channel_counts: dict[str, int] = {}
        self._id_counters: dict[str, int] = {}
        self._out_groups: dict[int, list[_OutGroup]] = {}
        self._scopes: list[Scope] = []
        self._deferred: dict[str, DeferredOutput] = {}
        self._deferred_counter = 0
        self._factories: dict[str, ModuleFactoryFunction] = {}
        self._tempo: Any = DEFAULT_TEMPO
        self._output_gain: Any = None
        self._clock_run: Any = None
        self._clock_reset: Any = None
        self._finalized = False

    # Schemas and factories

    def get_schema(self, module_type: str) -> ProcessedModuleSchema | None:
        return self._schemas.get(module_type)

    def set_factory_registry(self, factories: Mapping[str, ModuleFactoryFunction]) -> None:
        self._factories = dict(factories)

    def get_factory(self, module_type: str) -> ModuleFactoryFunction | None:
        return self._factories.get(module_type)

    def require_factory(self, module_type: str) -> ModuleFactoryFunction:
        factory = self._factories.get(module_type)
        if factory is None:
            raise MissingBuiltinModuleError(module_type)
        return factory

    # Modules and parameters

    def _generate_id(self, module_type: str) -> str:
        counter = self._id_counters.get(module_type, 0) + 1
        while f"{module_type}-{counter}" in self._modules:
            counter += 1
        self._id_counters[module_type] = counter
        return f"{module_type}-{counter}"

    def add_module(self, module_type: str, explicit_id: str | None = None) -> ModuleNode:
        schema = self._schemas.get(module_type)
        if schema is None:
            raise UnknownModuleTypeError(module_type)

        module_id = explicit_id if explicit_id else self._generate_id(module_type)
        if module_id in self._modules:
            raise DuplicateModuleIdError(module_id)

        record = _ModuleRecord(id=module_id, module_type=module_type, id_is_explicit=bool(explicit_id))
        for param in schema.params:
            if param.is_signal_like:
                record.params[param.name] = disconnected()
            elif param.kind == ParamKind.SIGNAL_ARRAY and not param.optional:
                record.params[param.name] = []

        self._modules[module_id] = record
        self._channel_counts[module_id] = 1
        return ModuleNode(self, module_id, schema)

    def _record(self, module_id: str) -> _ModuleRecord:
        record = self._modules.get(module_id)
        if record is None:
            raise ModuleIdNotFoundError(module_id)
        return record

    def set_param(self, module_id: str, name: str, value: Any) -> None:
        record = self._record(module_id)
        descriptor = self._schemas[record.module_type].params_by_name.get(name)

        if descriptor is not None and descriptor.kind == ParamKind.POLY_SIGNAL:
            self.record_channel_count(module_id, signal_width(value))

        normalized = normalize_value(value)
        if normalized is None:
            if descriptor is not None and descriptor.is_signal_like:
                record.params[name] = disconnected()
            else:
                record.params.pop(name, None)
            return
        record.params[name] = normalized

    def params_snapshot(self, module_id: str) -> dict[str, Any]:
        return copy.deepcopy(self._record(module_id).params)

    def channel_count(self, module_id: str) -> int:
        self._record(module_id)
        return self._channel_counts.get(module_id, 1)

    def record_channel_count(self, module_id: str, count: int | None) -> None:
        if count is None:
            return
        current = self._channel_counts.get(module_id, 1)
        self._channel_counts[module_id] = max(current, min(int(count), PORT_MAX_CHANNELS))

    def derive_channel_count(self, module_id: str) -> None:
        if self._derive_channel_count is None:
            return
        record = self._record(module_id)
        self.record_channel_count(module_id, self._derive_channel_count(record.module_type, self.params_snapshot(module_id)))

    # Outputs, scopes and global settings

    def add_out(self, value: Any, channel: int = 0, gain: Any = None) -> None:
        """Route ``value`` to output ``channel``, optionally through its own gain stage."""
        if isinstance(channel, bool) or not isinstance(channel, int) or not 0 <= channel < PORT_MAX_CHANNELS:
            raise ValueError(f"output channel must be 0-{PORT_MAX_CHANNELS - 1}, got {channel!r}")
        outputs = list(_flatten_outputs(value))
        if outputs:
            self._out_groups.setdefault(channel, []).append(_OutGroup(outputs=outputs, gain=gain))

    def add_scope(
        self,
        value: Any,
        ms_per_frame: int = DEFAULT_SCOPE_MS_PER_FRAME,
        trigger_threshold: float | None = None,
        range: tuple[float, float] = DEFAULT_SCOPE_RANGE,
    ) -> None:
        first = next(_flatten_outputs(value), None)
        if first is None:
            return
        threshold = None if trigger_threshold is None else int(round(trigger_threshold * TRIGGER_THRESHOLD_SCALE))
        self._scopes.append(
            Scope(
                item=ScopeItem(module_id=first.module_id, port_name=first.port_name, channel=first.channel),
                ms_per_frame=ms_per_frame,
                trigger_threshold=threshold,
                range=(float(range[0]), float(range[1])),
            )
        )

    def set_tempo(self, tempo: Any) -> None:
        self._tempo = tempo

    def set_output_gain(self, gain: Any) -> None:
        self._output_gain = gain

    def set_clock_run(self, run: Any) -> None:
        self._clock_run = run

    def set_clock_reset(self, reset: Any) -> None:
        self._clock_reset = reset

    def next_deferred_id(self) -> str:
        self._deferred_counter += 1
        return f"{DEFERRED_ID_PREFIX}{self._deferred_counter}"

    def register_deferred(self, deferred: DeferredOutput) -> None:
        self._deferred[deferred.module_id] = deferred

    # Finalization

    def to_patch(self) -> PatchGraph:
        if self._finalized:
            raise RuntimeError("Patch graph has already been built")
        self._finalized = True

        signal = self.require_factory(SIGNAL_MODULE)
        if self._out_groups:
            aggregated = self._aggregate_outputs()
            if self._output_gain is not None:
                aggregated = self.require_factory(SCALE_AND_SHIFT_MODULE)(aggregated, self._output_gain)
            signal(aggregated, id=ROOT_OUTPUT_ID)
        else:
            signal(id=ROOT_OUTPUT_ID)

        if ROOT_CLOCK_ID in self._modules:
            self.set_param(ROOT_CLOCK_ID, "tempo", self._tempo)
            if self._clock_run is not None:
                self.set_param(ROOT_CLOCK_ID, "run", self._clock_run)
            if self._clock_reset is not None:
                self.set_param(ROOT_CLOCK_ID, "reset", self._clock_reset)

        resolved = {deferred_id: deferred.resolve() for deferred_id, deferred in self._deferred.items()}
        modules = [
            ModuleState(
                id=record.id,
                module_type=record.module_type,
                id_is_explicit=record.id_is_explicit,
                params=self._finalize_value(record.params, resolved),
            )
            for record in self._modules.values()
        ]

        scopes: list[Scope] = []
        for scope in self._scopes:
            if scope.item.module_id not in resolved:
                scopes.append(scope)
                continue
            target = resolved[scope.item.module_id]
            if target is None:
                continue
            item = ScopeItem(module_id=target.module_id, port_name=target.port_name, channel=target.channel)
            scopes.append(scope.model_copy(update={"item": item}))

        logger.debug("Built patch graph with %d modules and %d scopes", len(modules), len(scopes))
        return PatchGraph(modules=modules, scopes=scopes)

    def _aggregate_outputs(self) -> Any:
        """One ``mix`` per used output channel; a single channel 0 yields a plain handle."""
        mix = self.require_factory(MIX_MODULE)
        channels: dict[int, Any] = {}
        for channel in sorted(self._out_groups):
            inputs: list[ModuleOutput] = []
            for group in self._out_groups[channel]:
                if group.gain is None:
                    inputs.extend(group.outputs)
                    continue
                scaled = self.require_factory(SCALE_AND_SHIFT_MODULE)(mix(group.outputs), group.gain)
                inputs.extend(_flatten_outputs(scaled))
            channels[channel] = mix(inputs)

        if list(channels) == [0]:
            return channels[0]
        return [channels.get(channel) for channel in range(max(channels) + 1)]

    def _finalize_value(self, value: Any, resolved: dict[str, ModuleOutput | None]) -> Any:
        if isinstance(value, DeferredOutput):
            target = resolved.get(value.module_id)
            return target.to_cable() if target is not None else disconnected()
        if isinstance(value, ModuleOutput):
            return value.to_cable()
        if isinstance(value, BaseCollection):
            return [self._finalize_value(item, resolved) for item in value]
        if _is_cable(value) and value["module"] in resolved:
            target = resolved[value["module"]]
            return target.to_cable() if target is not None else disconnected()
        if isinstance(value, Mapping):
            finalized = {}
            for key, item in value.items():
                item_value = self._finalize_value(item, resolved)
                if item_value is not None:
                    finalized[key] = item_value
            return finalized
        if isinstance(value, (list, tuple)):
            return [disconnected() if item is None else self._finalize_value(item, resolved) for item in value]
        if isinstance(value, str):
            return self._rewrite_placeholders(value, resolved)
        return value

    @staticmethod
    def _rewrite_placeholders(text: str, resolved: dict[str, ModuleOutput | None]) -> str:
        def replace(match: re.Match[str]) -> str:
            module_id = match.group(1)
            if module_id not in resolved:
                return match.group(0)
            target = resolved[module_id]
            if target is None:
                raise ValueError(f"Deferred output {module_id} was used in {text!r} but never set")
            return str(target)

        return _PLACEHOLDER_PATTERN.sub(replace, text)
