import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .config import Settings, settings as default_settings
from .errors import SegscribeError
from .orchestrator import Orchestrator
from .routes import v1
from .submission import TranscriptionProvider


logger = logging.getLogger(__name__)


def configure_logging(level: str):
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def create_app(settings: Settings | None = None, provider: TranscriptionProvider | None = None) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Segscribe ready (provider %s, api key %s, public url %s)",
            settings.provider_url,
            "configured" if settings.elevenlabs_api_key else "missing",
            settings.public_base_url,
        )
        yield

    app = FastAPI(
        title="Segscribe",
        version="0.1.0",
        lifespan=lifespan
    )
    app.state.orchestrator = Orchestrator(settings, provider=provider)
    app.include_router(v1.router)

    @app.exception_handler(SegscribeError)
    async def segscribe_error(request: Request, exc: SegscribeError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "hasApiKey": bool(settings.elevenlabs_api_key),
            "publicBaseUrl": settings.public_base_url,
        }

    @app.get("/ready")
    async def ready():
        return {"ready": True}

    return app


configure_logging(default_settings.log_level)
app = create_app()
