from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Loggers that emit one or more records per compiled script.
COMPILER_LOGGERS = (
    "patchscript.app.services.compiler_service",
    "patchscript.app.dsl",
)


def configure_logging(debug: bool = False, compiler_level: str | None = None) -> None:
    level = logging.DEBUG if debug else logging.INFO
    root_logger = logging.getLogger()

    # Uvicorn may install handlers before the lifespan runs; basicConfig() is then a no-op.
    if not root_logger.handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)

    root_logger.setLevel(level)
    logging.getLogger("patchscript").setLevel(level)

    for name in COMPILER_LOGGERS:
        compiler_logger = logging.getLogger(name)
        if compiler_level is None:
            compiler_logger.setLevel(logging.NOTSET)
        else:
            compiler_logger.setLevel(compiler_level.upper())
