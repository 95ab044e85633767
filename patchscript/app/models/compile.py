from __future__ import annotations

from pydantic import Field

from patchscript.app.models.patch import PatchGraph, SliderDefinition, SourceLocation
from patchscript.app.models.schema import CamelModel, ModuleSchema
from patchscript.app.models.spans import InterpolationResolution


class CompileRequest(CamelModel):
    source: str = Field(max_length=262_144)
    schemas: list[ModuleSchema] | None = None


class CompileResponse(CamelModel):
    patch: PatchGraph
    source_locations: dict[str, SourceLocation] = Field(default_factory=dict)
    interpolation_resolutions: dict[str, list[InterpolationResolution]] = Field(default_factory=dict)
    sliders: list[SliderDefinition] = Field(default_factory=list)
