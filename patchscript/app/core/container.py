from __future__ import annotations

from dataclasses import dataclass

from patchscript.app.core.config import Settings
from patchscript.app.services.compiler_service import CompilerService
from patchscript.app.services.schema_service import SchemaService


@dataclass(slots=True)
class AppContainer:
    settings: Settings
    schema_service: SchemaService
    compiler_service: CompilerService
