"""
Error taxonomy shared by the HTTP routes and the WebSocket relay.
"""


class ChillChatError(Exception):
    """Base error carrying the HTTP status and a short machine-readable code."""
    status_code = 500
    code = "internal_error"

    def __init__(self, detail: str = None):
        self.detail = detail or self.__class__.__name__
        super().__init__(self.detail)

    def to_event(self) -> dict:
        return {"type": "error", "code": self.code, "detail": self.detail}


class ValidationError(ChillChatError):
    status_code = 400
    code = "validation_error"


class Unauthorized(ChillChatError):
    status_code = 401
    code = "unauthorized"


class Forbidden(ChillChatError):
    status_code = 403
    code = "forbidden"


class NotFound(ChillChatError):
    status_code = 404
    code = "not_found"


class Expired(ChillChatError):
    status_code = 410
    code = "expired"


class LimitReached(ChillChatError):
    status_code = 410
    code = "limit_reached"


class StorageError(ChillChatError):
    status_code = 503
    code = "storage_error"


class CodeSpaceExhausted(ChillChatError):
    status_code = 503
    code = "code_space_exhausted"
