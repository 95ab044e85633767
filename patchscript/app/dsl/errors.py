from __future__ import annotations


class PatchScriptError(Exception):
    """Base class for errors that abort a patch compilation."""

    @property
    def diagnostics(self) -> list[str]:
        return [str(self)]


class UnknownModuleTypeError(PatchScriptError):
    def __init__(self, module_type: str):
        self.module_type = module_type
        super().__init__(f"Unknown module type: {module_type}")


class DuplicateModuleIdError(PatchScriptError):
    def __init__(self, module_id: str):
        self.module_id = module_id
        super().__init__(f"Duplicate module id: {module_id}")


class ModuleIdNotFoundError(PatchScriptError):
    def __init__(self, module_id: str):
        self.module_id = module_id
        super().__init__(f"Module not found: {module_id}")


class MissingBuiltinModuleError(PatchScriptError):
    def __init__(self, module_type: str):
        self.module_type = module_type
        super().__init__(f'"{module_type}" module not found in schemas')


class NamespaceCollisionError(PatchScriptError):
    pass


class ScriptExecutionError(PatchScriptError):
    PREFIX = "Patch execution error"

    def __init__(self, message: str):
        super().__init__(f"{self.PREFIX}: {message}")
