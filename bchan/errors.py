from typing import List, Optional


class BoardError(Exception):
    """Base class for errors that map onto an HTTP response"""
    status_code = 500

    def __init__(self, message: str, details: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or []

    def to_dict(self) -> dict:
        body = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(BoardError):
    """Malformed or missing fields, disallowed file type, oversized file"""
    status_code = 400


class NotFoundError(BoardError):
    status_code = 404


class AuthorizationError(BoardError):
    """Password does not match the stored tripcode"""
    status_code = 403


class StorageError(BoardError):
    """Object storage upload or delete failed"""
    status_code = 502


class PersistenceError(BoardError):
    """Database write failed after the file had already been stored"""
    status_code = 500
