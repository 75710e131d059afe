import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(name)s: %(message)s")

from .config import Settings, load_settings, read_settings
from .errors import install_error_handlers
from .routes import health_router, router
from history.comparables import ComparablesLookup
from history.database import Database
from models.analyzer import DrawingAnalyzer
from models.capability import ModelCapability
from models.gemini import GeminiClient
from models.ollama import OllamaClient
from pipeline.orchestrator import UploadPipeline
from pipeline.preprocess import ImagePreprocessor

logger = logging.getLogger(__name__)


def build_capability(settings: Settings) -> ModelCapability:
    """The configured model provider. Credentials come only from settings."""
    if settings.model_provider == "ollama":
        return OllamaClient(
            base_url=settings.ollama_host,
            model=settings.ollama_model,
            timeout=settings.remote_timeout_s,
        )
    return GeminiClient(
        api_key=settings.gemini_api_key,
        model=settings.model_name,
        base_url=settings.gemini_base_url,
        timeout=settings.remote_timeout_s,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # --- Startup ---
    settings = getattr(app.state, "settings", None) or load_settings()
    app.state.settings = settings
    app.state.debug = settings.debug

    analyzer = DrawingAnalyzer(
        build_capability(settings),
        structured_output=settings.structured_output,
        max_retries=settings.max_retries,
        retry_base_delay=settings.retry_base_delay_s,
    )
    app.state.analyzer = analyzer
    logger.info("Model provider: %s (%s)", analyzer.provider, analyzer.model)

    try:
        db = await Database.connect(settings.history_db_path)
        app.state.db = db
        app.state.comparables = ComparablesLookup(db)
        logger.info("Quote history loaded from %s", settings.history_db_path)
    except FileNotFoundError as e:
        logger.warning("%s Estimating without comparables.", e)
        app.state.db = None
        app.state.comparables = None

    app.state.pipeline = UploadPipeline(
        analyzer,
        ImagePreprocessor(
            allowed_mime_types=settings.mime_types,
            max_bytes=settings.max_upload_bytes,
            max_dimension=settings.max_image_dimension_px,
            max_pixels=settings.max_image_pixels,
            quality=settings.jpeg_quality,
        ),
        comparables=app.state.comparables,
        archive_dir=settings.uploads_dir,
        request_timeout=settings.request_timeout_s,
    )

    yield

    # --- Shutdown ---
    await analyzer.close()
    if getattr(app.state, "db", None):
        await app.state.db.close()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the app. Without explicit settings they are loaded (and checked) at startup."""
    app = FastAPI(
        title="Quotation AI",
        description="Drawing analysis and cost estimation for manufacturing quotes",
        version="0.1.0",
        lifespan=lifespan,
    )
    if settings is not None:
        app.state.settings = settings
    cors_settings = settings or read_settings()
    app.state.debug = cors_settings.debug

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_settings.origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_error_handlers(app)

    app.include_router(health_router)
    app.include_router(router, prefix="/api")
    return app


app = create_app()
