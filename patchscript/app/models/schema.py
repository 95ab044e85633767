from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ParamKind(StrEnum):
    SIGNAL = "signal"
    SIGNAL_ARRAY = "signalArray"
    POLY_SIGNAL = "polySignal"
    NUMBER = "number"
    STRING = "string"
    BOOLEAN = "boolean"
    ENUM = "enum"
    UNKNOWN = "unknown"


class OutputSchema(CamelModel):
    name: str = Field(min_length=1)
    description: str = ""
    default: bool = False
    polyphonic: bool = False
    min_value: float | None = None
    max_value: float | None = None

    @property
    def has_range(self) -> bool:
        return self.min_value is not None and self.max_value is not None


class PositionalArg(CamelModel):
    name: str = Field(min_length=1)
    optional: bool = False


class ModuleSchema(CamelModel):
    name: str = Field(min_length=1)
    description: str = ""
    params_schema: dict[str, Any] = Field(default_factory=dict)
    outputs: list[OutputSchema] = Field(default_factory=list)
    positional_args: list[PositionalArg] = Field(default_factory=list)
    channels: int | None = Field(default=None, ge=1)
    channels_param: str | None = None
    channels_param_default: int | None = Field(default=None, ge=1)

    @property
    def segments(self) -> list[str]:
        return [part for part in self.name.strip().split(".") if part]

    @property
    def default_output(self) -> OutputSchema | None:
        if not self.outputs:
            return None
        return next((output for output in self.outputs if output.default), self.outputs[0])


class ParamDescriptor(CamelModel):
    name: str
    kind: ParamKind
    description: str | None = None
    optional: bool = True
    enum_values: list[str] | None = None

    @property
    def is_signal_like(self) -> bool:
        return self.kind in {ParamKind.SIGNAL, ParamKind.POLY_SIGNAL}


class ProcessedModuleSchema(ModuleSchema):
    params: list[ParamDescriptor] = Field(default_factory=list)
    params_by_name: dict[str, ParamDescriptor] = Field(default_factory=dict)
