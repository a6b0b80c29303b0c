from typing import Optional


class PreOrderError(Exception):
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class Forbidden(PreOrderError):
    status_code = 403


class NotFound(PreOrderError):
    status_code = 404


class Conflict(PreOrderError):
    status_code = 400


class InvalidState(PreOrderError):
    status_code = 400


class InvalidInput(PreOrderError):
    status_code = 400


class GatewayError(PreOrderError):
    """Decline, invalid payment method, timeout or transport failure."""
    status_code = 402

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code or "gateway_error"
        self.message = message
