"""
Error taxonomy for the payment handlers.

Every failure that reaches an HTTP response is one of these. The handlers
in main.py turn them into JSON bodies with the matching status code.
"""
from typing import Any, Dict, Optional


class PaymentError(Exception):
    """Base class."""
    status_code = 500
    public_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message}


class ValidationError(PaymentError):
    status_code = 400
    public_message = "Invalid request"


class AuthenticationError(PaymentError):
    status_code = 401
    public_message = "Invalid signature"


class NotFoundError(PaymentError):
    status_code = 404
    public_message = "Not found"


class UpstreamError(PaymentError):
    """The gateway rejected a request or answered with something unusable"""
    status_code = 502
    public_message = "Create payment failed"

    def __init__(self, message: Optional[str] = None, code: Any = None, detail: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.detail = detail

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code, "detail": self.detail}


class GatewayTransportError(UpstreamError):
    """Timeout or network failure talking to the gateway"""
    status_code = 500
    public_message = "Internal server error"

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.public_message}


class InternalError(PaymentError):
    status_code = 500

    def to_dict(self) -> Dict[str, Any]:
        # internal detail stays in the logs
        return {"error": self.public_message}


class ConfigurationError(InternalError):
    pass
