from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from patchscript.app.api.deps import get_container
from patchscript.app.core.container import AppContainer
from patchscript.app.dsl.errors import PatchScriptError
from patchscript.app.models.compile import CompileRequest, CompileResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/compile", tags=["compile"])


@router.post("", response_model=CompileResponse)
def compile_script(request: CompileRequest, container: AppContainer = Depends(get_container)) -> CompileResponse:
    try:
        compiler = container.compiler_service
        if request.schemas is not None:
            compiler = compiler.with_schemas(request.schemas)
        result = compiler.execute_patch_script(request.source)
    except PatchScriptError as exc:
        logger.info("Patch compilation failed: %s", exc)
        raise HTTPException(status_code=422, detail={"diagnostics": exc.diagnostics}) from exc

    return CompileResponse(
        patch=result.patch,
        source_locations=result.source_location_map,
        interpolation_resolutions=result.interpolation_resolutions,
        sliders=result.sliders,
    )
