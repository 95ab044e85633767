"""Module constructors exposed to patch scripts.

Every schema gets one :class:`ModuleFactory`, built once per compiler
session. A :class:`CompilationContext` binds those factories to a fresh
:class:`GraphBuilder` for a single script run and arranges the resulting
:class:`ModuleConstructor` objects into a namespace tree following the dotted
schema names (``filters.lowpass`` becomes ``filters.lowpass(...)``).
"""

from __future__ import annotations

import functools
import keyword
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from patchscript.app.dsl.errors import NamespaceCollisionError
from patchscript.app.dsl.graph_builder import BaseCollection, Collection, GraphBuilder, ModuleOutput
from patchscript.app.models.patch import ARGUMENT_SPANS_KEY, SliderDefinition, SourceLocation
from patchscript.app.models.schema import OutputSchema, ProcessedModuleSchema
from patchscript.app.models.spans import SpanRegistry

RESERVED_OUTPUT_NAMES = frozenset(
    {
        "attach_outputs",
        "builder",
        "channel",
        "gain",
        "items",
        "max_value",
        "min_value",
        "module_id",
        "out",
        "pipe",
        "pipe_mix",
        "port_name",
        "range",
        "resolve",
        "scope",
        "set",
        "shift",
        "target",
        "to_cable",
    }
)

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])([A-Z])")
_INVALID_IDENTIFIER_CHARS = re.compile(r"\W")


def to_snake_case(name: str) -> str:
    return _CAMEL_BOUNDARY.sub(r"_\1", name).lower()


def safe_output_name(name: str) -> str:
    attribute = _INVALID_IDENTIFIER_CHARS.sub("_", to_snake_case(name))
    if not attribute or attribute[0].isdigit():
        attribute = f"_{attribute}"
    if attribute in RESERVED_OUTPUT_NAMES or keyword.iskeyword(attribute):
        attribute = f"{attribute}_"
    return attribute


def parse_call_site(call_site: str) -> tuple[int, int]:
    line, column = call_site.split(":", 1)
    return int(line), int(column)


class ModuleFactory:
    def __init__(self, schema: ProcessedModuleSchema) -> None:
        self.schema = schema
        self.positional_names = [arg.name for arg in schema.positional_args]
        self.default_output = schema.default_output
        self.output_table: dict[str, OutputSchema] = {
            safe_output_name(output.name): output
            for output in schema.outputs
            if self.default_output is not None and output.name != self.default_output.name
        }

    @property
    def module_type(self) -> str:
        return self.schema.name

    def _split_arguments(
        self,
        args: tuple[Any, ...],
        kwargs: Mapping[str, Any],
    ) -> tuple[list[Any], dict[str, Any]]:
        positional = list(args)
        config: dict[str, Any] = {}
        limit = len(self.positional_names)

        if len(positional) > limit + 1:
            raise TypeError(
                f"{self.module_type}() takes at most {limit + 1} positional arguments ({len(positional)} given)"
            )
        if len(positional) == limit + 1:
            trailing = positional.pop()
            if isinstance(trailing, str):
                config["id"] = trailing
            elif isinstance(trailing, Mapping):
                config.update(trailing)
            elif trailing is not None:
                raise TypeError(
                    f"{self.module_type}() configuration must be an id string or a dict, "
                    f"not {type(trailing).__name__}"
                )

        config.update(kwargs)
        return positional, config

    def create(
        self,
        context: CompilationContext,
        args: tuple[Any, ...],
        kwargs: Mapping[str, Any],
        call_site: str | None = None,
    ) -> Any:
        positional, config = self._split_arguments(args, kwargs)
        explicit_id = config.pop("id", None)
        if explicit_id is not None and not isinstance(explicit_id, str):
            raise TypeError(f"{self.module_type}() id must be a string, not {type(explicit_id).__name__}")

        node = context.builder.add_module(self.module_type, explicit_id)

        if call_site is not None:
            line, column = parse_call_site(call_site)
            context.source_locations[node.id] = SourceLocation(
                line=line,
                column=column + 1,
                id_is_explicit=bool(explicit_id),
            )
            spans = context.spans.get(call_site)
            if spans is not None and spans.module_type == self.module_type and spans.args:
                node.set_param(
                    ARGUMENT_SPANS_KEY,
                    {name: {"start": span.start, "end": span.end} for name, span in spans.args.items()},
                )

        for name, value in zip(self.positional_names, positional):
            if value is not None:
                node.set_param(name, value)
        for name, value in config.items():
            node.set_param(name, value)

        context.builder.derive_channel_count(node.id)

        if self.default_output is None:
            return Collection()
        result = node.output(self.default_output.name, self.default_output.polyphonic)
        if self.output_table:
            result.attach_outputs(
                {
                    attribute: node.output(output.name, output.polyphonic)
                    for attribute, output in self.output_table.items()
                }
            )
        return result


class ModuleConstructor:
    """Script-facing callable bound to one compilation."""

    def __init__(self, factory: ModuleFactory, context: CompilationContext) -> None:
        self.factory = factory
        self.context = context

    @property
    def module_type(self) -> str:
        return self.factory.module_type

    def __call__(self, *args: Any, **kwargs: Any) -> ModuleOutput | BaseCollection:
        return self.factory.create(self.context, args, kwargs)

    def _create_at(self, call_site: str, *args: Any, **kwargs: Any) -> ModuleOutput | BaseCollection:
        return self.factory.create(self.context, args, kwargs, call_site=call_site)

    def at(self, call_site: str) -> functools.partial:
        return functools.partial(self._create_at, call_site)

    def __repr__(self) -> str:
        return f"<module constructor {self.module_type}>"


class Namespace:
    def __init__(self, path: str) -> None:
        self.path = path
        self.children: dict[str, Any] = {}

    def __getattr__(self, name: str) -> Any:
        if name.startswith("__") and name.endswith("__"):
            raise AttributeError(name)
        children = self.__dict__.get("children") or {}
        if name in children:
            return children[name]
        raise AttributeError(f"namespace '{self.path}' has no member '{name}'")

    def __dir__(self) -> list[str]:
        return sorted(self.children)

    def __repr__(self) -> str:
        return f"<namespace {self.path}>"


def build_namespace_tree(entries: Mapping[str, Any]) -> dict[str, Any]:
    """Nest values keyed by dotted name into a tree of :class:`Namespace` objects."""
    tree: dict[str, Any] = {}
    for name, entry in entries.items():
        segments = [part for part in name.strip().split(".") if part]
        if not segments:
            continue

        level = tree
        path: list[str] = []
        for segment in segments[:-1]:
            path.append(segment)
            existing = level.get(segment)
            if existing is None:
                existing = Namespace(".".join(path))
                level[segment] = existing
            elif not isinstance(existing, Namespace):
                raise NamespaceCollisionError(f"'{'.'.join(path)}' is both a module and a namespace")
            level = existing.children

        leaf = segments[-1]
        if isinstance(level.get(leaf), Namespace):
            raise NamespaceCollisionError(f"'{'.'.join(segments)}' is both a module and a namespace")
        level[leaf] = entry
    return tree


def build_factories(schemas: Iterable[ProcessedModuleSchema]) -> dict[str, ModuleFactory]:
    return {schema.name: ModuleFactory(schema) for schema in schemas}


@dataclass(slots=True)
class CompilationContext:
    """Everything one script run writes to."""

    builder: GraphBuilder
    factories: Mapping[str, ModuleFactory]
    spans: SpanRegistry = field(default_factory=dict)
    source_locations: dict[str, SourceLocation] = field(default_factory=dict)
    sliders: list[SliderDefinition] = field(default_factory=list)
    constructors: dict[str, ModuleConstructor] = field(init=False)
    namespace: dict[str, Any] = field(init=False)

    def __post_init__(self) -> None:
        self.constructors = {name: ModuleConstructor(factory, self) for name, factory in self.factories.items()}
        self.namespace = build_namespace_tree(self.constructors)
        self.builder.set_factory_registry(self.constructors)

    def call_site(self, call_site: str, func: Any) -> Any:
        if isinstance(func, ModuleConstructor) and func.context is self:
            return func.at(call_site)
        return func
