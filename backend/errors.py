"""Error types raised by handlers and helpers.

Every subclass carries the HTTP status it maps to; the application factory
registers a single handler that turns them into the JSON envelope.
"""
from typing import Optional


class ApiError(Exception):
    status_code = 500
    default_message = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {"success": False, "message": self.message}


class ValidationError(ApiError):
    status_code = 400
    default_message = "The request could not be validated."


class AuthError(ApiError):
    status_code = 401
    default_message = "Please sign in to continue."


class ForbiddenError(ApiError):
    status_code = 403
    default_message = "You need additional permissions to perform this action."


class NotFoundError(ApiError):
    status_code = 404
    default_message = "The requested record was not found."


class StorageError(ApiError):
    status_code = 500
    default_message = "We could not store the uploaded image. Please try again."


class UnexpectedError(ApiError):
    status_code = 500
