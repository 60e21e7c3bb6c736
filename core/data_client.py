# core/data_client.py
"""
Data-access client for the hosted backend (Supabase Postgres, Storage, Auth).

`DataAccessClient` is the context object every service, store and script is
handed explicitly. It owns the policy for talking to the backend:

- each call runs the synchronous supabase-py builder in a worker thread and is
  bounded by the configured request timeout;
- transient failures are retried with exponential backoff
  (``min(base * 2**(attempt-1), max)``) up to ``DB_RETRY_ATTEMPTS`` attempts;
- backend errors are translated into the `core.errors` taxonomy;
- independent reads can be fanned out with `gather_settled`, which reports
  every result individually instead of aborting on the first failure.
"""
import asyncio
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, TypeVar

import httpx
from supabase import create_client, PostgrestAPIError

from core.config import Settings, settings as default_settings, logger as core_logger
from core.errors import (
    AdminError, BackendError, NetworkError, NotFoundError, ReferentialError,
    RequestTimeoutError, ValidationFailed,
)

logger = core_logger.getChild("DataClient")

T = TypeVar("T")

# Define Table names here for consistency
SITE_SETTINGS_TABLE = "site_settings"
ABOUT_TABLE = "about"
CATEGORIES_TABLE = "portfolio_categories"
CLIENTS_TABLE = "clients"
CLIENT_IMAGES_TABLE = "client_images"
NAVBAR_LINKS_TABLE = "navbar_links"

# PostgREST could not reach or pool a database connection; the request was never executed
CONNECTION_ERROR_CODES = {"PGRST000", "PGRST001", "PGRST002", "PGRST003"}
VALIDATION_ERROR_CODES = {
    "23502": "A required value is missing.",
    "23505": "An entry with this value already exists.",
    "23514": "A value is outside the allowed range.",
    "22P02": "A value has the wrong format.",
}
FOREIGN_KEY_VIOLATION = "23503"
NO_ROWS = "PGRST116"


@dataclass
class Settled(Generic[T]):
    """Outcome of one request in a fan-out batch."""
    value: Optional[T] = None
    error: Optional[AdminError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """Delay before retry number `attempt` (1-based)."""
    return min(base * (2 ** (attempt - 1)), maximum)


def translate_error(exc: BaseException) -> AdminError:
    """Maps a raw exception from the client libraries onto the error taxonomy."""
    if isinstance(exc, AdminError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return RequestTimeoutError(f"Backend request timed out: {exc!r}")
    if isinstance(exc, httpx.TransportError):
        return NetworkError(f"Backend transport error: {exc}")
    if isinstance(exc, PostgrestAPIError):
        code = str(exc.code or "")
        detail = f"{exc.message} (Code: {code}, Details: {exc.details})"
        if code in CONNECTION_ERROR_CODES:
            return NetworkError(detail)
        if code == FOREIGN_KEY_VIOLATION:
            return ReferentialError(detail)
        if code in VALIDATION_ERROR_CODES:
            return ValidationFailed(detail, user_message=VALIDATION_ERROR_CODES[code])
        if code == NO_ROWS:
            return NotFoundError(detail)
        return BackendError(detail)
    return BackendError(f"Unexpected backend error: {exc}")


def _is_connection_failure(exc: BaseException) -> bool:
    if isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout)):
        return True
    return isinstance(exc, PostgrestAPIError) and str(exc.code or "") in CONNECTION_ERROR_CODES


class DataAccessClient:
    """Shared handle to the backend with timeout and retry policy."""

    def __init__(self, client: Any, settings: Settings = default_settings, timeout: Optional[float] = None):
        self.client = client
        self.settings = settings
        self.timeout = timeout if timeout is not None else settings.request_timeout
        self.attempts = max(1, settings.DB_RETRY_ATTEMPTS)

    @classmethod
    async def connect(cls, settings: Settings = default_settings, use_service_key: bool = False) -> "DataAccessClient":
        """Creates the Supabase client off the event loop and wraps it."""
        url = settings.SUPABASE_URL
        key = settings.SUPABASE_SERVICE_KEY if use_service_key else settings.SUPABASE_KEY
        key_type_str = 'service role' if use_service_key else 'anon'
        if not url or not key:
            logger.error(f"Supabase URL or {key_type_str} key not configured. Cannot create client.")
            raise ValueError(f"Supabase URL or {key_type_str} key not configured")

        logger.info(f"Initializing Supabase client with {key_type_str} key...")
        loop = asyncio.get_running_loop()
        try:
            client_instance = await loop.run_in_executor(None, partial(create_client, url, key))
        except Exception as e:
            logger.error(f"Failed to initialize Supabase client with {key_type_str} key: {e}", exc_info=True)
            raise RuntimeError(f"Failed to initialize Supabase client: {e}") from e
        logger.info(f"Supabase client with {key_type_str} key initialized successfully.")
        return cls(client_instance, settings)

    # --- Builders ---

    def table(self, name: str):
        return self.client.table(name)

    def storage(self, bucket: str):
        return self.client.storage.from_(bucket)

    @property
    def auth(self):
        return self.client.auth

    # --- Execution Policy ---

    def _should_retry(self, exc: BaseException, idempotent: bool) -> bool:
        if _is_connection_failure(exc):
            return True
        return idempotent and translate_error(exc).retryable

    async def execute(self, description: str, call: Callable[[], T], *, idempotent: bool = True) -> T:
        """
        Runs a synchronous backend call with timeout and retry.

        Args:
            description: Short label used in log lines, e.g. "[clients] insert".
            call: Zero-argument callable issuing the request (runs in a worker thread).
            idempotent: False for writes that must not be repeated once they may have
                reached the server; those retry only on connection failures.
        """
        for attempt in range(1, self.attempts + 1):
            try:
                return await asyncio.wait_for(asyncio.to_thread(call), timeout=self.timeout)
            except Exception as e:
                error = translate_error(e)
                if attempt < self.attempts and self._should_retry(e, idempotent):
                    delay = backoff_delay(attempt, self.settings.DB_RETRY_BASE_DELAY, self.settings.DB_RETRY_MAX_DELAY)
                    logger.warning(f"{description} failed (attempt {attempt}/{self.attempts}): {error}. Retrying in {delay:.2f}s.")
                    await asyncio.sleep(delay)
                    continue
                if error.retryable:
                    logger.error(f"{description} failed after {attempt} attempt(s): {error}")
                else:
                    logger.warning(f"{description} failed: {error}")
                raise error from e
        raise AssertionError("unreachable")

    async def gather_settled(self, *aws: Awaitable[Any]) -> List[Settled]:
        """Runs independent requests concurrently and settles each one individually."""
        results = await asyncio.gather(*aws, return_exceptions=True)
        settled: List[Settled] = []
        for result in results:
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                error = translate_error(result)
                logger.warning(f"Concurrent request failed: {error}")
                settled.append(Settled(error=error))
            else:
                settled.append(Settled(value=result))
        return settled


# Cache default clients by type for scripts and one-off tools
_data_clients: Dict[str, DataAccessClient] = {}
_init_lock = asyncio.Lock()

async def get_data_client(use_service_key: bool = False) -> DataAccessClient:
    """Returns the lazily-initialized process default client for the given key type."""
    client_type = "service" if use_service_key else "anon"
    if client_type not in _data_clients:
        async with _init_lock:
            # Double check after acquiring lock
            if client_type not in _data_clients:
                _data_clients[client_type] = await DataAccessClient.connect(default_settings, use_service_key=use_service_key)
    return _data_clients[client_type]
