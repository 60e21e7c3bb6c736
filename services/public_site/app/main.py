# services/public_site/app/main.py
from fastapi import FastAPI, Request
from contextlib import asynccontextmanager
from core.config import settings
from core.data_client import DataAccessClient
from core.mailer import ContactMailer, ContactRateLimiter
from core.models import ApiResponse
import logging

logger = logging.getLogger("PCMS_Core").getChild("PublicSite")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: read-only (anon key) client for page data, mailer for the contact form
    logger.info("Public site lifespan startup: Initializing data-access client and mailer.")
    try:
        app.state.db = await DataAccessClient.connect(settings, use_service_key=False)
        logger.info("Data-access client initialized and stored in app.state.")
    except (ValueError, RuntimeError) as e:
        logger.error(f"Failed to initialize data-access client during startup: {e}", exc_info=True)
        app.state.db = None

    app.state.mailer = ContactMailer(settings)
    problems = app.state.mailer.validate()
    if problems:
        logger.warning(f"Contact mail is not fully configured: {'; '.join(problems)}")
    app.state.contact_limiter = ContactRateLimiter(settings.CONTACT_RATE_LIMIT, settings.CONTACT_RATE_PERIOD)

    yield

    logger.info("Public site lifespan shutdown.")
    app.state.db = None


app = FastAPI(
    title="Portfolio Public Site API",
    description="Read-only page data and the contact form for the public portfolio site",
    version="1.0.0",
    lifespan=lifespan
)


@app.get("/health", response_model=ApiResponse, tags=["Meta"])
async def health_check(request: Request):
    db_status = "initialized" if getattr(request.app.state, 'db', None) else "NOT initialized"
    return ApiResponse(status="success", message=f"Public site API is running (Data client: {db_status})")

# Import routers AFTER app is defined
from .routers import contact, pages

app.include_router(pages.router, prefix="/api", tags=["Pages"])
app.include_router(contact.router, prefix="/api/contact", tags=["Contact"])
