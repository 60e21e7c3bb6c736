# core/errors.py
"""
Error taxonomy shared by the data-access client, the CRUD store, the image
uploader, the form layer and the HTTP services.

Every error carries a `retryable` flag and the HTTP status the services answer
with, so route handlers can translate them without per-type branching.
"""
from typing import Dict, Optional


class AdminError(Exception):
    """Base class for all errors surfaced to admin users or API callers."""
    status_code: int = 500
    retryable: bool = False
    default_message: str = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None, *, user_message: Optional[str] = None):
        super().__init__(message or self.default_message)
        self.user_message = user_message or message or self.default_message

    def to_dict(self) -> Dict[str, object]:
        return {
            "error": type(self).__name__,
            "message": self.user_message,
            "retryable": self.retryable,
        }


# --- Transient (retryable) ---

class NetworkError(AdminError):
    status_code = 503
    retryable = True
    default_message = "Could not reach the backend. Please try again."


class RequestTimeoutError(NetworkError):
    status_code = 504
    default_message = "The backend did not answer in time. Please try again."


# --- User-correctable ---

class ValidationFailed(AdminError):
    status_code = 422
    default_message = "Some fields are invalid."

    def __init__(self, message: Optional[str] = None, *, field_errors: Optional[Dict[str, str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.field_errors = dict(field_errors or {})

    def to_dict(self) -> Dict[str, object]:
        data = super().to_dict()
        data["field_errors"] = self.field_errors
        return data


class FormatConversionError(AdminError):
    status_code = 422
    default_message = "This image could not be converted. Please choose another file."


class UnsupportedFormatError(AdminError):
    status_code = 415
    default_message = "Unsupported image format. Use JPEG, PNG, WEBP, GIF or HEIC."


class SizeLimitExceeded(AdminError):
    status_code = 413
    default_message = "The image is larger than the upload limit."


class ReferentialError(AdminError):
    status_code = 409
    default_message = "This entry is still referenced by other entries and cannot be removed."


class NotFoundError(AdminError):
    status_code = 404
    default_message = "The requested entry does not exist."


class RateLimitExceeded(AdminError):
    status_code = 429
    default_message = "Too many messages. Please try again later."

    def __init__(self, message: Optional[str] = None, *, retry_after: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class AuthenticationError(AdminError):
    status_code = 401
    default_message = "Please sign in again."


# --- Non-retryable backend failures ---

class UploadError(AdminError):
    status_code = 502
    default_message = "The image could not be uploaded."


class BackendError(AdminError):
    status_code = 502
    default_message = "The backend rejected the request."


class StoreClosedError(AdminError):
    status_code = 409
    default_message = "This page was closed before the change finished."
