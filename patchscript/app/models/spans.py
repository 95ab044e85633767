from __future__ import annotations

from pydantic import Field

from patchscript.app.models.schema import CamelModel


class SourceSpan(CamelModel):
    start: int = Field(ge=0)
    end: int = Field(ge=0)

    @property
    def key(self) -> str:
        return f"{self.start}:{self.end}"


class CallSiteSpans(CamelModel):
    args: dict[str, SourceSpan] = Field(default_factory=dict)
    module_type: str


class InterpolationResolution(CamelModel):
    evaluated_start: int = Field(ge=0)
    evaluated_length: int = Field(ge=0)
    const_literal_span: SourceSpan
    nested_resolutions: list[InterpolationResolution] | None = None


SpanRegistry = dict[str, CallSiteSpans]
InterpolationResolutionMap = dict[str, list[InterpolationResolution]]
