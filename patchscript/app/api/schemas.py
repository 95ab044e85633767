from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from patchscript.app.api.deps import get_container
from patchscript.app.core.container import AppContainer
from patchscript.app.models.schema import ModuleSchema

router = APIRouter(prefix="/schemas", tags=["schemas"])


@router.get("", response_model=list[ModuleSchema])
async def list_schemas(container: AppContainer = Depends(get_container)) -> list[ModuleSchema]:
    return container.schema_service.list_schemas()


@router.get("/{schema_name}", response_model=ModuleSchema)
async def get_schema(schema_name: str, container: AppContainer = Depends(get_container)) -> ModuleSchema:
    schema = container.schema_service.get_schema(schema_name)
    if not schema:
        raise HTTPException(status_code=404, detail=f"Module schema '{schema_name}' not found")
    return schema
