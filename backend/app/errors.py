from __future__ import annotations


class FeedError(Exception):
    """Base for errors that map onto an HTTP status and an ``{"error": ...}`` body."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationFailed(FeedError):
    status_code = 400


class AuthenticationFailed(FeedError):
    status_code = 401


class Forbidden(FeedError):
    status_code = 403


class NotFound(FeedError):
    status_code = 404


class Conflict(FeedError):
    status_code = 409
