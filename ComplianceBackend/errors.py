from __future__ import annotations

from typing import Any, Optional


# Base error for everything the services raise on purpose; `app.py` renders these as JSON
class AppError(Exception):
    status_code = 500

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = int(status_code)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


# Missing or malformed required input (filename, text, query, documentId, ...)
class ValidationError(AppError):
    status_code = 400


class AuthenticationError(AppError):
    status_code = 401


class NotFoundError(AppError):
    status_code = 404


# Upload exceeds one of the configured ceilings
class PayloadTooLargeError(AppError):
    status_code = 413


class RateLimitedError(AppError):
    status_code = 429


# Relational or blob store operation failed; callers may retry the whole operation
class StorageError(AppError):
    status_code = 500
    store = "unknown"


class DatabaseStorageError(StorageError):
    store = "database"


class BlobStorageError(StorageError):
    status_code = 502
    store = "blob"


# External completion API failure
class UpstreamServiceError(AppError):
    status_code = 502
