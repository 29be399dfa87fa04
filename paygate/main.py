import logging
import os
import re
import time
from contextlib import asynccontextmanager
from typing import List, Optional, Tuple

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load env from the project root .env
project_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(project_dir, ".env"))

from paygate.core.config import settings, validate_config  # noqa: E402
from paygate.core.logging import configure_logging  # noqa: E402
from paygate.core.middleware.metrics import MetricsMiddleware  # noqa: E402
from paygate.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from paygate.core.ratelimit import build_rate_limiter_from_settings  # noqa: E402
from paygate.core.validation import validate_env  # noqa: E402
from paygate.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_error_handler,
    unhandled_exception_handler,
)
from paygate.api import health, payments  # noqa: E402


def cors_options(origins: List[str]) -> Tuple[List[str], Optional[str]]:
    """Split configured origins into exact matches and a regex for wildcard entries."""
    if "*" in origins:
        return ["*"], None
    exact = [o for o in origins if "*" not in o]
    patterns = [re.escape(o).replace(r"\*", "[^/]+") for o in origins if "*" in o]
    regex = "^(" + "|".join(patterns) + ")$" if patterns else None
    return exact, regex


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("paygate")
    logger.info("Starting paygate...")
    app.state.startup_time = time.time()
    try:
        yield
    finally:
        logging.getLogger("paygate").info("Stopping paygate...")


def create_app() -> FastAPI:
    configure_logging(settings.ENV)
    validate_env()
    validate_config(strict=getattr(settings, "CONFIG_STRICT", False))

    app = FastAPI(title="paygate", lifespan=lifespan)
    # One limiter per application instance, never shared through a module global
    app.state.rate_limiter = build_rate_limiter_from_settings(settings)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    allow_origins, allow_origin_regex = cors_options(settings.allowed_origins())
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_origin_regex=allow_origin_regex,
        allow_credentials="*" not in allow_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(health.router, tags=["health"])
    app.include_router(payments.router, prefix="/api", tags=["payments"])
    return app


app = create_app()
