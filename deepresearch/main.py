from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from loguru import logger

from deepresearch.api.deps import build_rate_limiter
from deepresearch.api.routes import auth, models, research
from deepresearch.config import Settings, get_settings, parse_model_catalog
from deepresearch.errors import AuthenticationError
from deepresearch.services.logger import setup_logging
from deepresearch.services.result_store import ResultStore

STATIC_DIR = Path(__file__).resolve().parent / "static"


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        setup_logging(settings.app_log_level, settings.noisy_log_level)
        settings.results_dir.mkdir(parents=True, exist_ok=True)
        settings.usage_dir.mkdir(parents=True, exist_ok=True)
        catalog = app.state.catalog
        logger.info(
            f"Deep Research listening on {settings.server_ip}:{settings.port} "
            f"({len(catalog.models)} models, default {catalog.default.id})"
        )
        if not settings.google_api_key or not settings.google_cx:
            logger.warning("GOOGLE_API_KEY or GOOGLE_CX missing; searches will return no results")
        if not settings.openrouter_api_key:
            logger.warning("OPENROUTER_API_KEY missing; answer generation will fail")
        yield
        # Shutdown

    app = FastAPI(
        title="Deep Research",
        description="Web search, source extraction and streamed, cited LLM answers",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.catalog = parse_model_catalog(settings.available_models, settings.default_model)
    app.state.result_store = ResultStore(settings.results_dir)
    app.state.rate_limiter = build_rate_limiter(settings)

    @app.exception_handler(AuthenticationError)
    async def unauthorized(request: Request, exc: AuthenticationError):
        return JSONResponse(status_code=401, content={"error": str(exc)})

    # Routes
    app.include_router(auth.router)
    app.include_router(models.router)
    app.include_router(research.router)

    if STATIC_DIR.is_dir():
        app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "service": "deepresearch"}

    return app
