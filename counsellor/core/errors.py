"""
Error taxonomy for the counsellor core.

Errors that describe an invalid or missing entity are raised to the caller
and mapped to HTTP responses by the API layer. UpstreamUnavailable and
ModelUnavailable are raised inside their engines and absorbed at the call
site with a safe default; they never reach a user.
"""

from typing import Optional


class CounsellorError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class UpstreamUnavailable(CounsellorError):
    status_code = 502
    default_message = "Upstream record provider unavailable"

    def __init__(self, url: str, reason: str = ""):
        self.url = url
        self.reason = reason
        super().__init__(f"{url}: {reason}" if reason else url)


class ValidationError(CounsellorError):
    status_code = 400
    default_message = "Invalid request"

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(message)


class AuthFailure(CounsellorError):
    status_code = 401
    default_message = "Authentication failed"


class NotFound(CounsellorError):
    status_code = 404
    default_message = "Student not found. Please login again."


class ModelUnavailable(CounsellorError):
    status_code = 503
    default_message = "Language model unavailable"


class SessionError(CounsellorError):
    status_code = 400
    default_message = "Session error"


class SessionNotFound(SessionError):
    status_code = 404
    default_message = "Session not found. Please login again."


class SessionExpired(SessionError):
    status_code = 410
    default_message = "Session expired. Please start a new chat."
