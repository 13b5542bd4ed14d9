"""Failure kinds surfaced to clients.

Every error carries a stable ``kind`` so that clients can branch on it without
parsing ``detail``.
"""

from typing import Dict, Optional


class ServiceError(Exception):
    kind = "internal"
    status_code = 500
    default_detail = "Internal server error"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)

    @property
    def headers(self) -> Optional[Dict[str, str]]:
        return None


class Unauthenticated(ServiceError):
    kind = "unauthenticated"
    status_code = 401
    default_detail = "Could not validate credentials"

    @property
    def headers(self) -> Optional[Dict[str, str]]:
        return {"WWW-Authenticate": "Bearer"}


class InvalidArgument(ServiceError):
    kind = "invalid_argument"
    status_code = 400
    default_detail = "Invalid request"


class NotFound(ServiceError):
    kind = "not_found"
    status_code = 404
    default_detail = "Not found"


class Conflict(ServiceError):
    kind = "conflict"
    status_code = 409
    default_detail = "Conflict"


class Internal(ServiceError):
    pass
