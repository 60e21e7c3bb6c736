# core/config.py
import os
from pydantic_settings import BaseSettings
from dotenv import load_dotenv
import logging

# Load variables from .env file located in the project root directory
dotenv_path = os.path.join(os.path.dirname(os.path.dirname(__file__)), '.env')
if os.path.exists(dotenv_path):
    load_dotenv(dotenv_path=dotenv_path)
else:
    load_dotenv() # Fallback

# Documented request timeout window for backend calls (seconds)
MIN_REQUEST_TIMEOUT = 5.0
MAX_REQUEST_TIMEOUT = 8.0

class Settings(BaseSettings):
    """Loads configuration settings from environment variables and .env file."""

    # --- Supabase Configuration ---
    SUPABASE_URL: str | None = None
    SUPABASE_KEY: str | None = None # ANON key usually
    SUPABASE_SERVICE_KEY: str | None = None # SERVICE_ROLE key

    # --- Storage Configuration ---
    IMAGE_BUCKET: str = "site-images"
    MAX_UPLOAD_BYTES: int = 15 * 1024 * 1024
    HEIC_JPEG_QUALITY: int = 90

    # --- Data Access Policy ---
    DB_REQUEST_TIMEOUT: float = 6.0
    DB_RETRY_ATTEMPTS: int = 3
    DB_RETRY_BASE_DELAY: float = 0.25
    DB_RETRY_MAX_DELAY: float = 2.0

    # --- Contact Form Mail ---
    SMTP_HOST: str | None = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: str | None = None
    SMTP_PASSWORD: str | None = None
    SMTP_USE_TLS: bool = False # Implicit TLS (port 465)
    SMTP_START_TLS: bool = True
    CONTACT_FROM_EMAIL: str = "noreply@example.com"
    CONTACT_RECIPIENT: str | None = None
    CONTACT_RATE_LIMIT: int = 3
    CONTACT_RATE_PERIOD: int = 3600 # seconds

    # --- Admin Session ---
    SESSION_COOKIE_NAME: str = "pcms-access-token"
    SESSION_COOKIE_SECURE: bool = True

    # --- Service URLs ---
    ADMIN_API_URL: str = "http://localhost:8000"
    PUBLIC_SITE_URL: str = "http://localhost:8001"
    ADMIN_DASHBOARD_URL: str = "http://localhost:7860"

    class Config:
        env_file = '.env'
        env_file_encoding = 'utf-8'
        extra = 'ignore'

    @property
    def request_timeout(self) -> float:
        """DB_REQUEST_TIMEOUT clamped to the supported window."""
        return min(max(self.DB_REQUEST_TIMEOUT, MIN_REQUEST_TIMEOUT), MAX_REQUEST_TIMEOUT)

# Instantiate settings once for import
settings = Settings()

# --- Logging Setup ---
log_level_str = os.getenv("LOG_LEVEL", "INFO").upper(); log_level = getattr(logging, log_level_str, logging.INFO)
logging.basicConfig(level=log_level, format='%(asctime)s - %(name)s - [%(levelname)s] - %(message)s', datefmt='%Y-%m-%d %H:%M:%S')
logger = logging.getLogger("PCMS_Core")
logging.getLogger("httpx").setLevel(logging.WARNING); logging.getLogger("supabase").setLevel(logging.WARNING)
logging.getLogger("hpack").setLevel(logging.WARNING); logging.getLogger("aiosmtplib").setLevel(logging.WARNING)

# --- Configuration Validation Checks ---
logger.info(f"Core Settings loaded. Log Level: {log_level_str}")
if not settings.SUPABASE_URL or not settings.SUPABASE_KEY: logger.warning("Supabase URL/Key missing.")
if not settings.SUPABASE_SERVICE_KEY: logger.warning("Supabase Service Key missing. Admin writes and migrations will fail.")
if not settings.IMAGE_BUCKET: logger.warning("IMAGE_BUCKET missing, uploads will fail.")
else: logger.info(f"Using Supabase Storage Bucket: {settings.IMAGE_BUCKET}")
if settings.request_timeout != settings.DB_REQUEST_TIMEOUT:
    logger.warning(f"DB_REQUEST_TIMEOUT={settings.DB_REQUEST_TIMEOUT} outside {MIN_REQUEST_TIMEOUT}-{MAX_REQUEST_TIMEOUT}s, using {settings.request_timeout}s.")
if not settings.SMTP_HOST or not settings.CONTACT_RECIPIENT:
    logger.warning("SMTP_HOST/CONTACT_RECIPIENT not configured. Contact form submissions will fail.")

try: assert settings.DB_RETRY_ATTEMPTS > 0; logger.info(f"Data Access Config: Timeout={settings.request_timeout}s, Attempts={settings.DB_RETRY_ATTEMPTS}")
except AssertionError: logger.error(f"Invalid DB_RETRY_ATTEMPTS: {settings.DB_RETRY_ATTEMPTS}.")
logger.info(f"Upload Config: Max Size={settings.MAX_UPLOAD_BYTES} bytes, HEIC JPEG Quality={settings.HEIC_JPEG_QUALITY}")
