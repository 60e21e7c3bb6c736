# services/admin_api/app/main.py
from fastapi import FastAPI, Request
from contextlib import asynccontextmanager
from core.config import settings
from core.data_client import DataAccessClient
from core.models import ApiResponse
import logging

# Use logger configured in core.config
logger = logging.getLogger("PCMS_Core").getChild("AdminAPI")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: connect the backend client and store it in app.state
    logger.info("Admin API lifespan startup: Initializing data-access client.")
    try:
        app.state.db = await DataAccessClient.connect(settings, use_service_key=True)
        logger.info("Data-access client initialized and stored in app.state.")
    except (ValueError, RuntimeError) as e:
        logger.error(f"Failed to initialize data-access client during startup: {e}", exc_info=True)
        # Let the app start; requests will answer 503 until configuration is fixed
        app.state.db = None

    # One edit ledger per resource so concurrent requests to the same row are serialized
    app.state.ledgers = {}

    yield # Application runs here

    logger.info("Admin API lifespan shutdown: Releasing data-access client.")
    app.state.db = None


# --- FastAPI App ---
app = FastAPI(
    title="Portfolio Admin API",
    description="Authenticated content management for the portfolio site",
    version="1.0.0",
    lifespan=lifespan
)

# --- Health Check ---
@app.get("/health", response_model=ApiResponse, tags=["Meta"])
async def health_check(request: Request):
    db_status = "initialized" if getattr(request.app.state, 'db', None) else "NOT initialized"
    return ApiResponse(status="success", message=f"Admin API is running (Data client: {db_status})")

# --- Routing ---
# Import routers AFTER app is defined
from .routers import resources, uploads

app.include_router(uploads.router, prefix="/admin/uploads", tags=["Uploads"])
app.include_router(resources.router, prefix="/admin", tags=["Resources"])
