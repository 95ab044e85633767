"""Static mapping from module arguments back to their literals in the script.

The analysis never executes the script. It finds module-level constants
bound to literals, then records, for every call to a known module
constructor, where each literal (or constant) argument lives in the source.
Template (f-string) arguments additionally get a breakdown of which ranges
of the evaluated text came from which constant.
"""

from __future__ import annotations

import ast
import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable

from patchscript.app.models.schema import ModuleSchema
from patchscript.app.models.spans import (
    CallSiteSpans,
    InterpolationResolution,
    InterpolationResolutionMap,
    SourceSpan,
    SpanRegistry,
)

logger = logging.getLogger(__name__)

_LINE_BREAK = re.compile(r"\r\n|\r|\n")
_STR_CONVERSIONS = frozenset({-1, ord("s")})
CONFIG_ID_KEY = "id"


class SourceText:
    """Converts ``ast`` positions (UTF-8 byte columns) into character offsets."""

    def __init__(self, source: str) -> None:
        self.source = source
        self.line_starts = [0]
        self.lines: list[str] = []
        position = 0
        for match in _LINE_BREAK.finditer(source):
            self.lines.append(source[position : match.start()])
            position = match.end()
            self.line_starts.append(position)
        self.lines.append(source[position:])

    def char_column(self, lineno: int, byte_column: int) -> int:
        text = self.lines[lineno - 1] if 0 < lineno <= len(self.lines) else ""
        return len(text.encode("utf-8")[:byte_column].decode("utf-8", errors="ignore"))

    def offset(self, lineno: int, byte_column: int) -> int:
        return self.line_starts[lineno - 1] + self.char_column(lineno, byte_column)

    def span(self, node: ast.expr) -> SourceSpan:
        return SourceSpan(
            start=self.offset(node.lineno, node.col_offset),
            end=self.offset(node.end_lineno or node.lineno, node.end_col_offset or node.col_offset),
        )


def call_site_key(
    text: SourceText,
    callee: ast.expr,
    line_offset: int = 0,
    first_line_column_offset: int = 0,
) -> str:
    """``line:column`` of the constructor name token of a call."""
    if isinstance(callee, ast.Attribute):
        line = callee.end_lineno or callee.lineno
        column = text.char_column(line, callee.end_col_offset or 0) - len(callee.attr)
    else:
        line = callee.lineno
        column = text.char_column(line, callee.col_offset)
    if line == 1:
        column += first_line_column_offset
    return f"{line + line_offset}:{column}"


def _dotted_name(node: ast.expr) -> str | None:
    parts: list[str] = []
    while isinstance(node, ast.Attribute):
        parts.append(node.attr)
        node = node.value
    if not isinstance(node, ast.Name):
        return None
    parts.append(node.id)
    return ".".join(reversed(parts))


class CalleeResolver:
    def __init__(self, schemas: Iterable[ModuleSchema]) -> None:
        self.schemas = {schema.name: schema for schema in schemas}
        by_last_segment: dict[str, list[str]] = {}
        for name, schema in self.schemas.items():
            segments = schema.segments
            if segments:
                by_last_segment.setdefault(segments[-1], []).append(name)
        self._unique_by_last_segment = {
            segment: names[0] for segment, names in by_last_segment.items() if len(names) == 1
        }

    def resolve(self, callee: ast.expr) -> ModuleSchema | None:
        if isinstance(callee, ast.Name):
            schema = self.schemas.get(callee.id)
            if schema is not None and len(schema.segments) == 1:
                return schema
            name = self._unique_by_last_segment.get(callee.id)
            return self.schemas[name] if name else None

        if isinstance(callee, ast.Attribute):
            dotted = _dotted_name(callee)
            if dotted and dotted in self.schemas:
                return self.schemas[dotted]
            name = self._unique_by_last_segment.get(callee.attr)
            return self.schemas[name] if name else None

        return None


def _is_number(node: ast.expr) -> bool:
    return (
        isinstance(node, ast.Constant)
        and isinstance(node.value, (int, float))
        and not isinstance(node.value, bool)
    )


def is_literal(node: ast.expr) -> bool:
    if isinstance(node, ast.Constant):
        return isinstance(node.value, str) or _is_number(node)
    if isinstance(node, ast.JoinedStr):
        return True
    if isinstance(node, ast.UnaryOp):
        return isinstance(node.op, (ast.USub, ast.UAdd)) and _is_number(node.operand)
    if isinstance(node, (ast.List, ast.Tuple)):
        return all(is_literal(element) for element in node.elts)
    if isinstance(node, ast.Dict):
        return all(key is not None and is_literal(key) for key in node.keys) and all(
            is_literal(value) for value in node.values
        )
    return False


class _BindingCounter(ast.NodeVisitor):
    """Counts module-level bindings; function and class bodies are separate scopes."""

    def __init__(self) -> None:
        self.counts: Counter[str] = Counter()
        self.declared_global: set[str] = set()

    def _collect_globals(self, node: ast.AST) -> None:
        for child in ast.walk(node):
            if isinstance(child, ast.Global):
                self.declared_global.update(child.names)

    def visit_Name(self, node: ast.Name) -> None:
        if isinstance(node.ctx, (ast.Store, ast.Del)):
            self.counts[node.id] += 1

    def visit_FunctionDef(self, node: ast.FunctionDef | ast.AsyncFunctionDef) -> None:
        self.counts[node.name] += 1
        self._collect_globals(node)

    visit_AsyncFunctionDef = visit_FunctionDef

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        self.counts[node.name] += 1
        self._collect_globals(node)

    def _skip_scope(self, node: ast.AST) -> None:
        return None

    visit_Lambda = _skip_scope
    visit_ListComp = _skip_scope
    visit_SetComp = _skip_scope
    visit_DictComp = _skip_scope
    visit_GeneratorExp = _skip_scope

    def visit_Import(self, node: ast.Import | ast.ImportFrom) -> None:
        for alias in node.names:
            self.counts[(alias.asname or alias.name).split(".")[0]] += 1

    visit_ImportFrom = visit_Import


@dataclass(slots=True)
class _Const:
    name: str
    node: ast.expr
    span: SourceSpan


def collect_consts(tree: ast.Module, text: SourceText) -> dict[str, _Const]:
    counter = _BindingCounter()
    counter.visit(tree)

    consts: dict[str, _Const] = {}
    for statement in tree.body:
        if isinstance(statement, ast.Assign) and len(statement.targets) == 1:
            target, value = statement.targets[0], statement.value
        elif isinstance(statement, ast.AnnAssign) and statement.value is not None:
            target, value = statement.target, statement.value
        else:
            continue
        if not isinstance(target, ast.Name) or not is_literal(value):
            continue
        if counter.counts[target.id] != 1 or target.id in counter.declared_global:
            continue
        consts[target.id] = _Const(name=target.id, node=value, span=text.span(value))
    return consts


@dataclass(slots=True)
class SpanAnalysis:
    spans: SpanRegistry = field(default_factory=dict)
    interpolations: InterpolationResolutionMap = field(default_factory=dict)


class _Analyzer:
    def __init__(self, text: SourceText, consts: dict[str, _Const]) -> None:
        self.text = text
        self.consts = consts

    def _field_const(self, value: ast.FormattedValue, visited: frozenset[str]) -> _Const | None:
        if value.conversion not in _STR_CONVERSIONS or value.format_spec is not None:
            return None
        inner = value.value
        if not isinstance(inner, ast.Name) or inner.id in visited:
            return None
        return self.consts.get(inner.id)

    def evaluate(self, node: ast.expr, visited: frozenset[str]) -> str | None:
        """Text the literal produces when interpolated, or ``None``."""
        if isinstance(node, ast.JoinedStr):
            parts: list[str] = []
            for value in node.values:
                if isinstance(value, ast.Constant) and isinstance(value.value, str):
                    parts.append(value.value)
                    continue
                if not isinstance(value, ast.FormattedValue):
                    return None
                const = self._field_const(value, visited)
                if const is None:
                    return None
                evaluated = self.evaluate(const.node, visited | {const.name})
                if evaluated is None:
                    return None
                parts.append(evaluated)
            return "".join(parts)
        try:
            return str(ast.literal_eval(node))
        except (ValueError, TypeError, SyntaxError, MemoryError, RecursionError):
            return None

    def resolve_template(self, node: ast.JoinedStr, visited: frozenset[str]) -> list[InterpolationResolution]:
        resolutions: list[InterpolationResolution] = []
        position = 0
        for value in node.values:
            if isinstance(value, ast.Constant) and isinstance(value.value, str):
                position += len(value.value)
                continue
            if not isinstance(value, ast.FormattedValue):
                break
            const = self._field_const(value, visited)
            if const is None:
                break
            inner_visited = visited | {const.name}
            evaluated = self.evaluate(const.node, inner_visited)
            if evaluated is None:
                break
            nested = None
            if isinstance(const.node, ast.JoinedStr):
                nested = self.resolve_template(const.node, inner_visited) or None
            resolutions.append(
                InterpolationResolution(
                    evaluated_start=position,
                    evaluated_length=len(evaluated),
                    const_literal_span=const.span,
                    nested_resolutions=nested,
                )
            )
            position += len(evaluated)
        return resolutions

    def track(self, node: ast.expr, analysis: SpanAnalysis) -> SourceSpan | None:
        visited: frozenset[str] = frozenset()
        if is_literal(node):
            literal, span = node, self.text.span(node)
        elif isinstance(node, ast.Name) and node.id in self.consts:
            const = self.consts[node.id]
            literal, span, visited = const.node, const.span, frozenset({const.name})
        else:
            return None

        if isinstance(literal, ast.JoinedStr):
            resolutions = self.resolve_template(literal, visited)
            if resolutions:
                analysis.interpolations[span.key] = resolutions
        return span


def _argument_nodes(call: ast.Call, schema: ModuleSchema) -> dict[str, ast.expr]:
    positional_names = [arg.name for arg in schema.positional_args]
    nodes: dict[str, ast.expr] = {}

    args = list(call.args)
    if any(isinstance(arg, ast.Starred) for arg in args):
        args = []

    for name, arg in zip(positional_names, args):
        nodes[name] = arg

    if len(args) == len(positional_names) + 1 and isinstance(args[-1], ast.Dict):
        config = args[-1]
        for key, value in zip(config.keys, config.values):
            if isinstance(key, ast.Constant) and isinstance(key.value, str) and key.value != CONFIG_ID_KEY:
                nodes[key.value] = value

    for keyword_arg in call.keywords:
        if keyword_arg.arg is not None and keyword_arg.arg != CONFIG_ID_KEY:
            nodes[keyword_arg.arg] = keyword_arg.value
    return nodes


def analyze_source_spans(
    source: str,
    schemas: Iterable[ModuleSchema],
    line_offset: int = 0,
    first_line_column_offset: int = 0,
) -> SpanAnalysis:
    analysis = SpanAnalysis()
    try:
        tree = ast.parse(source)
    except (SyntaxError, ValueError) as exc:
        logger.debug("Skipping source span analysis, script does not parse: %s", exc)
        return analysis

    text = SourceText(source)
    resolver = CalleeResolver(schemas)
    analyzer = _Analyzer(text, collect_consts(tree, text))

    for node in ast.walk(tree):
        if not isinstance(node, ast.Call):
            continue
        schema = resolver.resolve(node.func)
        if schema is None:
            continue

        args: dict[str, SourceSpan] = {}
        for name, argument in _argument_nodes(node, schema).items():
            span = analyzer.track(argument, analysis)
            if span is not None:
                args[name] = span
        if not args:
            continue

        key = call_site_key(text, node.func, line_offset, first_line_column_offset)
        analysis.spans[key] = CallSiteSpans(args=args, module_type=schema.name)

    logger.debug("Source span analysis tracked %d call sites", len(analysis.spans))
    return analysis
