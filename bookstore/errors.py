from typing import Any, Optional


class StoreError(Exception):
    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationFailed(StoreError):
    status_code = 400


class AuthenticationFailed(StoreError):
    status_code = 401


class NotFound(StoreError):
    status_code = 404


class Conflict(StoreError):
    status_code = 409


class OutOfStock(StoreError):
    status_code = 400


class StockChanged(Conflict):
    """Stock moved under a cart write; the client should refresh and retry."""

    def __init__(self, message: str = "Stock was updated by another user. Please refresh and try again."):
        super().__init__(message)


class ConfigurationError(StoreError):
    status_code = 500


class GatewayError(StoreError):
    status_code = 500

    def __init__(self, message: str, upstream_status: Optional[int] = None, details: Any = None):
        super().__init__(message)
        self.upstream_status = upstream_status
        self.details = details
