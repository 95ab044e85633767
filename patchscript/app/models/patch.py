from __future__ import annotations

from typing import Any

from pydantic import ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from patchscript.app.models.schema import CamelModel

ARGUMENT_SPANS_KEY = "__argument_spans"


class FrozenCamelModel(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class ModuleState(FrozenCamelModel):
    id: str = Field(min_length=1)
    module_type: str = Field(min_length=1)
    id_is_explicit: bool = False
    params: dict[str, Any] = Field(default_factory=dict)


class ScopeItem(FrozenCamelModel):
    module_id: str = Field(min_length=1)
    port_name: str = Field(min_length=1)
    channel: int = Field(default=0, ge=0)


class Scope(FrozenCamelModel):
    item: ScopeItem
    ms_per_frame: int = Field(default=500, ge=1)
    trigger_threshold: int | None = None
    range: tuple[float, float] = (-5.0, 5.0)


class PatchGraph(FrozenCamelModel):
    modules: list[ModuleState] = Field(default_factory=list)
    scopes: list[Scope] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_unique_module_ids(self) -> "PatchGraph":
        ids = [module.id for module in self.modules]
        if len(ids) != len(set(ids)):
            raise ValueError("Module IDs must be unique")
        return self

    def get_module(self, module_id: str) -> ModuleState | None:
        return next((module for module in self.modules if module.id == module_id), None)

    def modules_of_type(self, module_type: str) -> list[ModuleState]:
        return [module for module in self.modules if module.module_type == module_type]


class SourceLocation(FrozenCamelModel):
    line: int = Field(ge=1)
    column: int = Field(ge=1)
    id_is_explicit: bool = False


class SliderDefinition(FrozenCamelModel):
    module_id: str
    label: str
    value: float
    min: float
    max: float
