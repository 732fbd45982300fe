# rehabplus/errors.py
from typing import List, Optional


class CRUDError(Exception):
    """Base error raised by the data layer; mapped to HTTP 400"""
    status_code = 400

    def __init__(self, message: str, required_fields: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.required_fields = required_fields

    def to_dict(self) -> dict:
        body = {"error": self.message}
        if self.required_fields:
            body["required_fields"] = self.required_fields
        return body


class NotFoundError(CRUDError):
    status_code = 404


class ConflictError(CRUDError):
    status_code = 409


class PermissionDeniedError(CRUDError):
    status_code = 403


class WorkflowError(CRUDError):
    """Invalid status transition or missing workflow input"""
    status_code = 400


class SequenceExhaustedError(CRUDError):
    """A yearly or monthly code sequence ran past 9999"""
    status_code = 400
