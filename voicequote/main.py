from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from voicequote.config import get_settings
from voicequote.dependencies.services import get_media_client_cached
from voicequote.health import router as health_router
from voicequote.tools.quotes import router as quotes_router
from voicequote.tools.webhook import router as webhook_router


def configure_logging() -> None:
    """Ensure application logs use the INFO level by default."""
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        )
    else:
        root_logger.setLevel(logging.INFO)

# Configure logging as soon as the module is loaded
configure_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manages application startup and shutdown events.
    """
    # --- Startup Logic ---
    settings = get_settings()

    settings_snapshot = settings.model_dump(
        exclude={"google_api_key", "media_auth_password"},
    )
    logger.info("Application settings on startup: %s", settings_snapshot)
    if not settings.llm_enabled:
        logger.info("No Google API key configured, using keyword parser and extractor.")

    media_client = get_media_client_cached()
    logger.info("Application startup complete.")

    try:
        yield  # The application is now running
    finally:
        # --- Shutdown Logic ---
        logger.info("Closing media download client.")
        await media_client.close()
        logger.info("Application shutdown complete.")


# --- Application Setup ---

settings = get_settings()
app = FastAPI(
    title=settings.app_name,
    lifespan=lifespan,
    redirect_slashes=False
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Include Routers ---

app.include_router(webhook_router, prefix="/webhooks")
app.include_router(quotes_router, prefix="/quotes")
app.include_router(health_router)
