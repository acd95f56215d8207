"""
Domain errors raised by the engine and request helpers.
main.py maps them to JSON responses with the same shape as HTTPException.
"""


class AppError(Exception):
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFound(AppError):
    status_code = 404


class InvalidInput(AppError):
    status_code = 400


class Unauthorized(AppError):
    """Authenticated, but not allowed to touch this record."""
    status_code = 403


class Conflict(AppError):
    status_code = 409


class DependencyFailure(AppError):
    """Push/email dispatch failed. Logged and swallowed by callers."""
    status_code = 502
