from __future__ import annotations

import argparse
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from patchscript.app.api import compiler, schemas
from patchscript.app.core.config import Settings, get_settings
from patchscript.app.core.container import AppContainer
from patchscript.app.core.logging import configure_logging
from patchscript.app.services.compiler_service import CompilerService
from patchscript.app.services.schema_service import SchemaService


def _build_container(settings: Settings) -> AppContainer:
    schema_service = SchemaService(schemas_file=settings.schemas_file)
    compiler_service = CompilerService(
        schema_service.list_schemas(),
        default_tempo_bpm=settings.default_tempo_bpm,
    )
    return AppContainer(
        settings=settings,
        schema_service=schema_service,
        compiler_service=compiler_service,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.debug, settings.compiler_log_level)
    app.state.container = _build_container(settings)
    yield


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(schemas.router, prefix=settings.api_prefix)
    app.include_router(compiler.router, prefix=settings.api_prefix)

    @app.get("/api/health")
    async def health() -> dict[str, str | int]:
        container: AppContainer = app.state.container
        return {
            "status": "ok",
            "version": settings.app_version,
            "module_schemas": len(container.schema_service.list_schemas()),
        }

    return app


app = create_app()


def run() -> None:
    parser = argparse.ArgumentParser(description="Run the Patchscript compiler API")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--log-level", default="info")
    parser.add_argument("--reload", action=argparse.BooleanOptionalAction, default=False)
    parser.add_argument("--access-log", action=argparse.BooleanOptionalAction, default=True)
    parser.add_argument("--debug", action=argparse.BooleanOptionalAction, default=None)
    parser.add_argument("--schemas-file", default=None, help="Engine-exported module schema JSON.")
    parser.add_argument(
        "--compiler-log-level",
        choices=["debug", "info", "warning", "error", "critical"],
        default=None,
        help="Level for per-script compiler logs.",
    )
    args = parser.parse_args()

    if args.debug is True:
        os.environ["PATCHSCRIPT_DEBUG"] = "1"
    elif args.debug is False:
        os.environ["PATCHSCRIPT_DEBUG"] = "0"
    if args.schemas_file:
        os.environ["PATCHSCRIPT_SCHEMAS_FILE"] = args.schemas_file
    if args.compiler_log_level:
        os.environ["PATCHSCRIPT_COMPILER_LOG_LEVEL"] = args.compiler_log_level

    get_settings.cache_clear()
    globals()["app"] = create_app()

    uvicorn.run(
        "patchscript.app.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level,
        access_log=args.access_log,
    )


if __name__ == "__main__":
    run()
